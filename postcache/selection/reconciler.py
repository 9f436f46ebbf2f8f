"""Recompute which records are worth caching and diff the selection table against it."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from typing import TypeVar

import msgspec
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from postcache.core.database import connection_scope, dialect_insert, get_session_factory
from postcache.schema import Record, SelectableRecord
from postcache.utils.db_retry import execute_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# asyncpg refuses statements with more bind parameters than this.
MAX_BIND_PARAMS = 32767
SELECTION_COLUMNS = ("record_id", "rating", "score", "fav_count", "is_downloaded")


class ReconcileResult(msgspec.Struct):
  scanned: int = 0
  added: int = 0
  removed: int = 0


def qualifies(score: int, fav_count: int, *, min_score: int, min_fav_count: int) -> bool:
  """A record is worth caching when either its score or its favorite count clears the bar."""
  return score >= min_score or fav_count >= min_fav_count


def _chunks(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
  for start in range(0, len(items), size):
    yield items[start : start + size]


class SelectionReconciler:
  """Full-table pass that adds newly qualifying records and drops ones that fell below the bar.

  The scan and both write phases share one transaction, so the writes act
  on the snapshot that was scanned. The downloaded flag of rows that stay
  selected is never touched here.
  """

  def __init__(self, *, min_score: int, min_fav_count: int, batch_size: int = 1000, session_factory: async_sessionmaker[AsyncSession] | None = None, max_attempts: int = 3) -> None:
    if batch_size < 1:
      raise ValueError("batch_size must be at least 1")
    self._min_score = min_score
    self._min_fav_count = min_fav_count
    self._batch_size = batch_size
    self.delete_chunk_size = min(batch_size, MAX_BIND_PARAMS)
    self.insert_chunk_size = min(batch_size, MAX_BIND_PARAMS // len(SELECTION_COLUMNS))
    self._session_factory = session_factory or get_session_factory()
    self._max_attempts = max_attempts

  async def reconcile(self) -> ReconcileResult:
    result = await execute_with_retry(operation_name="reconcile_selection", func=self._reconcile_once, max_attempts=self._max_attempts)
    logger.info("Selection reconciled: scanned=%d added=%d removed=%d", result.scanned, result.added, result.removed)
    return result

  async def _reconcile_once(self) -> ReconcileResult:
    result = ReconcileResult()
    to_add: list[dict[str, object]] = []
    to_remove: list[int] = []

    async with connection_scope(self._session_factory) as session:
      async with session.begin():
        stmt = (
          select(Record.id, Record.rating, Record.score, Record.fav_count, SelectableRecord.record_id.is_not(None).label("selected"))
          .outerjoin(SelectableRecord, SelectableRecord.record_id == Record.id)
          .order_by(Record.id)
          .execution_options(yield_per=self._batch_size)
        )
        rows = await session.stream(stmt)
        async for row in rows:
          result.scanned += 1
          wanted = qualifies(row.score, row.fav_count, min_score=self._min_score, min_fav_count=self._min_fav_count)
          if wanted and not row.selected:
            to_add.append(dict(zip(SELECTION_COLUMNS, (row.id, row.rating, row.score, row.fav_count, False), strict=True)))
          elif not wanted and row.selected:
            to_remove.append(row.id)

        for chunk in _chunks(to_remove, self.delete_chunk_size):
          await session.execute(delete(SelectableRecord).where(SelectableRecord.record_id.in_(chunk)))
        for chunk in _chunks(to_add, self.insert_chunk_size):
          stmt = dialect_insert(session, SelectableRecord).values(list(chunk))
          await session.execute(stmt.on_conflict_do_nothing(index_elements=["record_id"]))

    result.added = len(to_add)
    result.removed = len(to_remove)
    return result
