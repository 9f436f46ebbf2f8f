"""Feed an export stream through the ingestion engine with bounded buffering."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from itertools import islice

from postcache.ingestion.engine import IngestionEngine
from postcache.ingestion.models import IngestStats, RecordIn
from postcache.jobs.task_queue import TaskQueue

logger = logging.getLogger(__name__)


def batched(records: Iterable[RecordIn], size: int) -> Iterator[list[RecordIn]]:
  iterator = iter(records)
  while batch := list(islice(iterator, size)):
    yield batch


class IngestionPipeline:
  """Batch a lazy record stream into the engine and re-submit deferred records.

  The reader is paused whenever max_backlog batches are already waiting
  behind the one being saved. Deferred records (parent not present yet) are
  re-submitted once the stream ends, round after round, until none remain
  or a round makes no progress.
  """

  def __init__(self, engine: IngestionEngine, *, batch_size: int = 500, max_backlog: int = 1) -> None:
    if batch_size < 1:
      raise ValueError("batch_size must be at least 1")
    self._engine = engine
    self._batch_size = batch_size
    self._max_backlog = max_backlog

  async def run(self, records: Iterable[RecordIn]) -> IngestStats:
    stats = IngestStats()
    deferred: list[RecordIn] = []

    async def save(batch: list[RecordIn]) -> None:
      result = await self._engine.ingest_with_retry(batch)
      stats.add(result)
      deferred.extend(result.deferred)

    queue: TaskQueue[list[RecordIn]] = TaskQueue(save, name="ingest", max_backlog=self._max_backlog)

    await self._submit(queue, records)
    logger.info("Export stream ingested: batches=%d applied=%d skipped=%d deferred=%d", stats.batches, stats.applied, stats.skipped, stats.deferred)

    while deferred:
      pending = list(deferred)
      deferred.clear()
      stats.retried += len(pending)
      await self._submit(queue, pending)
      if len(deferred) >= len(pending):
        stats.unresolved = len(deferred)
        logger.warning("Giving up on %d deferred records that still reference missing rows", len(deferred))
        break
      logger.info("Deferred round: resubmitted=%d still_deferred=%d", len(pending), len(deferred))

    return stats

  async def _submit(self, queue: TaskQueue[list[RecordIn]], records: Iterable[RecordIn]) -> None:
    for batch in batched(records, self._batch_size):
      await queue.put(batch)
    await queue.drain()
    while queue.backlog_size:
      await queue.drain()
