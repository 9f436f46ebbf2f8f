"""Run ingestion, selection and cache synchronization from the command line.

Usage:
  python -m postcache all
  python -m postcache ingest --export posts.csv.gz
  python -m postcache sync
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import msgspec

from postcache.cache.synchronizer import CacheSynchronizer, build_http_client
from postcache.config import Settings, get_settings
from postcache.core.database import dispose_engine, get_db_engine
from postcache.core.logging import setup_logging
from postcache.core.schema_version import ensure_schema
from postcache.ingestion import IngestionEngine, IngestionPipeline, read_export
from postcache.selection import SelectionReconciler
from postcache.storage.selection_repo import PostgresSelectionRepository

logger = logging.getLogger("postcache")

STAGES = ("ingest", "select", "sync")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
  parser = argparse.ArgumentParser(prog="postcache", description="Ingest a posts export and keep the local asset cache in sync.")
  parser.add_argument("stage", choices=(*STAGES, "all"), nargs="?", default="all")
  parser.add_argument("--export", type=Path, default=None, help="Posts CSV export to ingest (defaults to POSTCACHE_EXPORT_PATH).")
  return parser.parse_args(argv)


async def _ingest(settings: Settings, export_path: Path | None) -> None:
  path = export_path or settings.export_path
  if path is None:
    raise ValueError("No export file given; pass --export or set POSTCACHE_EXPORT_PATH.")
  engine = IngestionEngine(max_attempts=settings.db_max_attempts)
  pipeline = IngestionPipeline(engine, batch_size=settings.ingest_batch_size, max_backlog=settings.ingest_max_backlog)
  stats = await pipeline.run(read_export(path, blocked_tags=settings.blocked_tags))
  logger.info("Ingestion complete: %s", msgspec.structs.asdict(stats))


async def _select(settings: Settings) -> None:
  reconciler = SelectionReconciler(min_score=settings.min_score, min_fav_count=settings.min_fav_count, batch_size=settings.selection_batch_size, max_attempts=settings.db_max_attempts)
  await reconciler.reconcile()


async def _sync(settings: Settings) -> None:
  store = PostgresSelectionRepository(max_attempts=settings.db_max_attempts)
  async with build_http_client(settings) as client:
    synchronizer = CacheSynchronizer(
      store=store,
      client=client,
      cache_dir=settings.cache_dir,
      remote_base_url=settings.remote_base_url,
      legacy_dir=settings.legacy_dir,
      delay_seconds=settings.download_delay_seconds,
    )
    await synchronizer.run()


async def run(stage: str, *, export_path: Path | None = None, settings: Settings | None = None) -> None:
  settings = settings or get_settings()
  try:
    previous = await ensure_schema(get_db_engine())
    logger.info("Schema ready (found version %s)", previous)
    stages = STAGES if stage == "all" else (stage,)
    if "ingest" in stages:
      if stage == "all" and (export_path or settings.export_path) is None:
        logger.warning("No export file configured; skipping ingestion")
      else:
        await _ingest(settings, export_path)
    if "select" in stages:
      await _select(settings)
    if "sync" in stages:
      await _sync(settings)
  finally:
    await dispose_engine()


def main(argv: list[str] | None = None) -> int:
  args = _parse_args(argv)
  settings = get_settings()
  setup_logging(settings)
  try:
    asyncio.run(run(args.stage, export_path=args.export, settings=settings))
  except Exception:
    logger.critical("Run failed during stage=%s", args.stage, exc_info=True)
    logging.shutdown()
    return 1
  logging.shutdown()
  return 0


if __name__ == "__main__":
  sys.exit(main())
