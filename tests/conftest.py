"""Test configuration for importing the package and building throwaway databases."""

from __future__ import annotations

import sys
from datetime import UTC, datetime
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from postcache.core.database import configure_engine, create_engine_for_url  # noqa: E402
from postcache.core.schema_version import ensure_schema  # noqa: E402
from postcache.ingestion.models import RecordIn  # noqa: E402


@pytest.fixture
def anyio_backend():
  return "asyncio"


@pytest.fixture
async def db_engine(tmp_path):
  # A file-backed SQLite database keeps pooled connections pointed at the same data.
  engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'postcache.db'}")
  await ensure_schema(engine)
  configure_engine(engine)
  yield engine
  configure_engine(None)
  await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
  return async_sessionmaker(bind=db_engine, expire_on_commit=False, class_=AsyncSession)


def make_record(record_id: int, **overrides: object) -> RecordIn:
  values: dict[str, object] = {
    "id": record_id,
    "md5": f"{record_id:032x}",
    "file_ext": "png",
    "rating": "s",
    "score": 10,
    "up_score": 12,
    "down_score": -2,
    "fav_count": 5,
    "created_at": datetime(2023, 6, 1, 12, 0, tzinfo=UTC),
    "updated_at": datetime(2024, 1, 1, 8, 30, tzinfo=UTC),
    "tags": ["canine", "solo"],
    "sources": ["https://example.com/art/1"],
  }
  values.update(overrides)
  return RecordIn(**values)  # type: ignore[arg-type]


@pytest.fixture
def record_factory():
  return make_record
