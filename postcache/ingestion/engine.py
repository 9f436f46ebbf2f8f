"""Idempotent upsert of export records with tag-set and source reconciliation."""

from __future__ import annotations

import logging
from collections.abc import Collection, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from postcache.core.database import connection_scope, dialect_insert, get_session_factory
from postcache.ingestion.models import IngestOutcome, IngestResult, RecordIn, RecordSnapshot
from postcache.ingestion.tag_cache import TagCache
from postcache.schema import Record, RecordSource, RecordTag
from postcache.utils.db_retry import DBErrorKind, classify_db_failure, execute_with_retry

logger = logging.getLogger(__name__)


def diff_tag_ids(wanted: Collection[int], stored: Collection[int]) -> tuple[set[int], set[int]]:
  """Return (additions, removals) that turn the stored tag set into the wanted one."""
  wanted_set = set(wanted)
  stored_set = set(stored)
  return wanted_set - stored_set, stored_set - wanted_set


class IngestionEngine:
  """Write export batches into the canonical tables.

  Each batch runs in one transaction. Every changed record gets its own
  savepoint so a record whose parent is not in the store yet can be
  rolled back alone and handed back to the caller with the parent cleared.
  """

  def __init__(self, *, session_factory: async_sessionmaker[AsyncSession] | None = None, tag_cache: TagCache | None = None, max_attempts: int = 3) -> None:
    self._session_factory = session_factory or get_session_factory()
    self._tags = tag_cache if tag_cache is not None else TagCache()
    self._max_attempts = max_attempts

  @property
  def tag_cache(self) -> TagCache:
    return self._tags

  async def ingest(self, batch: Sequence[RecordIn]) -> IngestResult:
    """Apply a batch and return per-record outcomes plus the deferred records."""
    result = IngestResult()
    if not batch:
      return result

    try:
      async with connection_scope(self._session_factory) as session:
        async with session.begin():
          snapshots = await self._load_snapshots(session, [record.id for record in batch])
          for record in batch:
            outcome = await self._ingest_record(session, record, snapshots.get(record.id))
            result.outcomes.append((record.id, outcome))
            if outcome is IngestOutcome.APPLIED:
              # A later row for the same id compares against what this row stored.
              snapshots[record.id] = RecordSnapshot.of(record)
            elif outcome is IngestOutcome.DEFERRED_MISSING_PARENT:
              result.deferred.append(record.without_parent())
    except BaseException:
      self._tags.rollback()
      raise

    self._tags.commit()
    logger.debug("Ingested batch of %d: applied=%d skipped=%d deferred=%d", len(batch), result.applied, result.skipped, len(result.deferred))
    return result

  async def ingest_with_retry(self, batch: Sequence[RecordIn]) -> IngestResult:
    """Ingest a batch, redoing the whole transaction if the connection drops."""
    return await execute_with_retry(operation_name="ingest_batch", func=lambda: self.ingest(batch), max_attempts=self._max_attempts)

  async def _load_snapshots(self, session: AsyncSession, record_ids: list[int]) -> dict[int, RecordSnapshot]:
    stmt = select(Record.id, Record.updated_at, Record.up_score, Record.down_score, Record.fav_count).where(Record.id.in_(record_ids))
    result = await session.execute(stmt)
    return {row.id: RecordSnapshot(updated_at=row.updated_at, up_score=row.up_score, down_score=row.down_score, fav_count=row.fav_count) for row in result}

  async def _ingest_record(self, session: AsyncSession, record: RecordIn, prior: RecordSnapshot | None) -> IngestOutcome:
    if prior is not None and prior.matches(RecordSnapshot.of(record)):
      return IngestOutcome.SKIPPED

    saved_tags = self._tags.savepoint()
    try:
      async with session.begin_nested():
        await self._upsert(session, record)
        await self._sync_tags(session, record)
        await self._replace_sources(session, record)
    except Exception as exc:
      self._tags.rollback_to(saved_tags)
      if classify_db_failure(exc).kind is not DBErrorKind.MISSING_REFERENCE:
        raise
      logger.info("Deferring record %s: parent %s not present yet", record.id, record.parent_id)
      return IngestOutcome.DEFERRED_MISSING_PARENT

    return IngestOutcome.APPLIED

  async def _upsert(self, session: AsyncSession, record: RecordIn) -> None:
    values = record.column_values()
    stmt = dialect_insert(session, Record).values(**values)
    stmt = stmt.on_conflict_do_update(index_elements=["id"], set_={column: stmt.excluded[column] for column in values if column != "id"})
    await session.execute(stmt)

  async def _sync_tags(self, session: AsyncSession, record: RecordIn) -> None:
    wanted: set[int] = set()
    if record.tags:
      wanted = set((await self._tags.resolve(session, record.tags)).values())

    stored_result = await session.execute(select(RecordTag.tag_id).where(RecordTag.record_id == record.id))
    additions, removals = diff_tag_ids(wanted, stored_result.scalars().all())

    if removals:
      await session.execute(delete(RecordTag).where(RecordTag.record_id == record.id, RecordTag.tag_id.in_(removals)))
    if additions:
      await session.execute(RecordTag.__table__.insert(), [{"record_id": record.id, "tag_id": tag_id} for tag_id in sorted(additions)])

  async def _replace_sources(self, session: AsyncSession, record: RecordIn) -> None:
    await session.execute(delete(RecordSource).where(RecordSource.record_id == record.id))
    if record.sources:
      await session.execute(RecordSource.__table__.insert(), [{"record_id": record.id, "position": position, "source": source} for position, source in enumerate(record.sources)])
