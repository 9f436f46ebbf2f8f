from __future__ import annotations

import pytest
from sqlalchemy import delete, inspect

from postcache.core.database import create_engine_for_url
from postcache.core.schema_version import CURRENT_SCHEMA_VERSION, ensure_schema, read_schema_version
from postcache.errors import PostcacheError, SchemaVersionError
from postcache.schema import SchemaVersion


@pytest.fixture
async def bare_engine(tmp_path):
  engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'bare.db'}")
  yield engine
  await engine.dispose()


async def _stored_version(engine) -> int | None:
  async with engine.connect() as connection:
    return await read_schema_version(connection)


async def _restamp(engine, version: int) -> None:
  async with engine.begin() as connection:
    await connection.execute(delete(SchemaVersion))
    await connection.execute(SchemaVersion.__table__.insert().values(version=version))


@pytest.mark.anyio
async def test_fresh_database_is_initialized_once(bare_engine):
  assert await _stored_version(bare_engine) is None

  assert await ensure_schema(bare_engine) == 0
  assert await _stored_version(bare_engine) == CURRENT_SCHEMA_VERSION
  assert await ensure_schema(bare_engine) == CURRENT_SCHEMA_VERSION


@pytest.mark.anyio
async def test_newer_schema_refuses_to_start(bare_engine):
  await ensure_schema(bare_engine)
  await _restamp(bare_engine, 99)

  with pytest.raises(SchemaVersionError) as excinfo:
    await ensure_schema(bare_engine)

  assert excinfo.value.found == 99
  assert excinfo.value.supported == CURRENT_SCHEMA_VERSION


@pytest.mark.anyio
async def test_version_one_is_upgraded_in_place(bare_engine):
  await ensure_schema(bare_engine)
  async with bare_engine.begin() as connection:
    await connection.exec_driver_sql("DROP INDEX ix_selectable_records_is_downloaded")
  await _restamp(bare_engine, 1)

  assert await ensure_schema(bare_engine) == 1
  assert await _stored_version(bare_engine) == CURRENT_SCHEMA_VERSION

  async with bare_engine.connect() as connection:
    indexes = await connection.run_sync(lambda sync_conn: inspect(sync_conn).get_indexes("selectable_records"))
  assert "ix_selectable_records_is_downloaded" in {index["name"] for index in indexes}


@pytest.mark.anyio
async def test_missing_upgrade_step_is_an_error(bare_engine):
  await ensure_schema(bare_engine)

  with pytest.raises(PostcacheError, match="No upgrade path"):
    await ensure_schema(bare_engine, target_version=CURRENT_SCHEMA_VERSION + 1)
