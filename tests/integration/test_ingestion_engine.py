from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from postcache.ingestion import IngestionEngine, IngestOutcome, IngestResult
from postcache.schema import Record, RecordSource, RecordTag, Tag


async def _tag_ids(session_factory, record_id: int) -> dict[str, int]:
  async with session_factory() as session:
    result = await session.execute(select(Tag.name, Tag.id).join(RecordTag, RecordTag.tag_id == Tag.id).where(RecordTag.record_id == record_id))
    return {name: tag_id for name, tag_id in result.all()}


async def _record(session_factory, record_id: int) -> Record | None:
  async with session_factory() as session:
    return await session.get(Record, record_id)


@pytest.mark.anyio
async def test_new_records_are_applied(session_factory, record_factory):
  engine = IngestionEngine(session_factory=session_factory)

  result = await engine.ingest([record_factory(1), record_factory(2, tags=["feline"])])

  assert result.outcomes == [(1, IngestOutcome.APPLIED), (2, IngestOutcome.APPLIED)]
  assert result.deferred == []
  assert set(await _tag_ids(session_factory, 1)) == {"canine", "solo"}
  assert set(await _tag_ids(session_factory, 2)) == {"feline"}


@pytest.mark.anyio
async def test_reingesting_unchanged_batch_writes_nothing(db_engine, session_factory, record_factory):
  engine = IngestionEngine(session_factory=session_factory)
  batch = [record_factory(record_id) for record_id in range(1, 6)]
  await engine.ingest(batch)

  writes: list[str] = []

  def _capture(conn, cursor, statement, parameters, context, executemany):
    if statement.lstrip().upper().startswith(("INSERT", "UPDATE", "DELETE")):
      writes.append(statement)

  event.listen(db_engine.sync_engine, "before_cursor_execute", _capture)
  try:
    result = await engine.ingest(batch)
  finally:
    event.remove(db_engine.sync_engine, "before_cursor_execute", _capture)

  assert writes == []
  assert result.skipped == len(batch)
  assert result.applied == 0


@pytest.mark.anyio
async def test_changed_record_reconciles_tag_set(session_factory, record_factory):
  engine = IngestionEngine(session_factory=session_factory)
  await engine.ingest([record_factory(1, tags=["canine", "solo", "outdoors"])])
  before = await _tag_ids(session_factory, 1)

  result = await engine.ingest([record_factory(1, fav_count=99, tags=["canine", "duo"])])

  assert result.outcomes == [(1, IngestOutcome.APPLIED)]
  after = await _tag_ids(session_factory, 1)
  assert set(after) == {"canine", "duo"}
  # Surrogate ids are stable across updates.
  assert after["canine"] == before["canine"]

  async with session_factory() as session:
    tag_count = await session.scalar(select(func.count()).select_from(Tag))
  # Tags that fall out of a record's set stay in the tag table.
  assert tag_count == 4


@pytest.mark.anyio
async def test_changed_record_replaces_sources(session_factory, record_factory):
  engine = IngestionEngine(session_factory=session_factory)
  await engine.ingest([record_factory(1, sources=["https://a.example", "https://b.example"])])
  await engine.ingest([record_factory(1, up_score=20, sources=["https://c.example"])])

  async with session_factory() as session:
    result = await session.execute(select(RecordSource.position, RecordSource.source).where(RecordSource.record_id == 1).order_by(RecordSource.position))
    assert result.all() == [(0, "https://c.example")]

  stored = await _record(session_factory, 1)
  assert stored is not None
  assert stored.up_score == 20


@pytest.mark.anyio
async def test_missing_parent_defers_record_without_aborting_batch(session_factory, record_factory):
  engine = IngestionEngine(session_factory=session_factory)

  result = await engine.ingest([record_factory(1), record_factory(2, parent_id=50, tags=["orphan"]), record_factory(3)])

  assert result.outcomes == [(1, IngestOutcome.APPLIED), (2, IngestOutcome.DEFERRED_MISSING_PARENT), (3, IngestOutcome.APPLIED)]
  assert [record.id for record in result.deferred] == [2]
  assert result.deferred[0].parent_id is None
  assert await _record(session_factory, 2) is None
  assert await _record(session_factory, 3) is not None
  # The tag created inside the rolled-back savepoint is not trusted later.
  assert engine.tag_cache.get("orphan") is None


@pytest.mark.anyio
async def test_deferred_record_converges_on_resubmission(session_factory, record_factory):
  engine = IngestionEngine(session_factory=session_factory)
  first = await engine.ingest([record_factory(2, parent_id=1)])

  await engine.ingest([record_factory(1)])
  second = await engine.ingest(first.deferred)

  assert second.outcomes == [(2, IngestOutcome.APPLIED)]
  child = await _record(session_factory, 2)
  assert child is not None
  assert child.parent_id is None


@pytest.mark.anyio
async def test_parent_in_store_is_kept(session_factory, record_factory):
  engine = IngestionEngine(session_factory=session_factory)
  result = await engine.ingest([record_factory(1), record_factory(2, parent_id=1)])

  assert result.deferred == []
  child = await _record(session_factory, 2)
  assert child is not None
  assert child.parent_id == 1


@pytest.mark.anyio
async def test_other_integrity_failures_abort_the_batch(session_factory, record_factory):
  engine = IngestionEngine(session_factory=session_factory)

  with pytest.raises(IntegrityError):
    await engine.ingest([record_factory(1, tags=["fresh"]), record_factory(2, md5=None)])

  async with session_factory() as session:
    assert await session.scalar(select(func.count()).select_from(Record)) == 0
    assert await session.scalar(select(func.count()).select_from(Tag)) == 0
  assert engine.tag_cache.get("fresh") is None

  result = await engine.ingest([record_factory(1, tags=["fresh"])])
  assert result.applied == 1
  assert set(await _tag_ids(session_factory, 1)) == {"fresh"}


@pytest.mark.anyio
async def test_tag_cache_learns_committed_ids(session_factory, record_factory):
  engine = IngestionEngine(session_factory=session_factory)
  await engine.ingest([record_factory(1)])

  ids = await _tag_ids(session_factory, 1)
  assert engine.tag_cache.get("canine") == ids["canine"]
  assert len(engine.tag_cache) == 2


@pytest.mark.anyio
async def test_ingest_with_retry_redoes_batch_after_dropped_connection(session_factory, record_factory, monkeypatch):
  engine = IngestionEngine(session_factory=session_factory, max_attempts=2)
  dropped = OperationalError("BEGIN", None, ConnectionResetError("Connection reset by peer"))
  ingest = AsyncMock(side_effect=[dropped, IngestResult(outcomes=[(1, IngestOutcome.APPLIED)])])
  monkeypatch.setattr(engine, "ingest", ingest)

  result = await engine.ingest_with_retry([record_factory(1)])

  assert result.applied == 1
  assert ingest.await_count == 2


@pytest.mark.anyio
async def test_repeated_id_in_unchanged_batch_counts_every_row_as_skipped(session_factory, record_factory):
  engine = IngestionEngine(session_factory=session_factory)
  batch = [record_factory(1), record_factory(1)]
  await engine.ingest(batch)

  result = await engine.ingest(batch)

  assert result.skipped == len(batch)
  assert result.outcomes == [(1, IngestOutcome.SKIPPED), (1, IngestOutcome.SKIPPED)]


@pytest.mark.anyio
async def test_repeated_id_keeps_the_last_row_of_the_batch(session_factory, record_factory):
  engine = IngestionEngine(session_factory=session_factory)
  await engine.ingest([record_factory(1, fav_count=5)])

  result = await engine.ingest([record_factory(1, fav_count=9, tags=["draft"]), record_factory(1, fav_count=5)])

  assert result.outcomes == [(1, IngestOutcome.APPLIED), (1, IngestOutcome.APPLIED)]
  stored = await _record(session_factory, 1)
  assert stored is not None
  assert stored.fav_count == 5
  assert set(await _tag_ids(session_factory, 1)) == {"canine", "solo"}
