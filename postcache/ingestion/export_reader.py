"""Lazy reader for the bulk posts CSV export."""

from __future__ import annotations

import csv
import gzip
import logging
import sys
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

from postcache.ingestion.models import RecordIn

logger = logging.getLogger(__name__)

# Descriptions and source lists can exceed the csv module's default field limit.
csv.field_size_limit(min(sys.maxsize, 2**31 - 1))


def _open(path: Path) -> IO[str]:
  if path.suffix == ".gz":
    return gzip.open(path, "rt", encoding="utf-8", newline="")
  return path.open("r", encoding="utf-8", newline="")


def _bool(raw: str | None) -> bool:
  return (raw or "").strip().lower() in {"t", "true", "1"}


def _int(raw: str | None) -> int | None:
  if raw is None or raw.strip() == "":
    return None
  return int(raw)


def _timestamp(raw: str | None) -> datetime | None:
  if raw is None or raw.strip() == "":
    return None
  value = datetime.fromisoformat(raw.strip())
  # Export timestamps are UTC without an offset.
  if value.tzinfo is None:
    value = value.replace(tzinfo=UTC)
  return value


def parse_row(row: dict[str, str]) -> RecordIn:
  """Convert one CSV row into a RecordIn."""
  sources = [line.strip() for line in (row.get("source") or "").splitlines() if line.strip()]
  return RecordIn(
    id=int(row["id"]),
    parent_id=_int(row.get("parent_id")),
    md5=row["md5"].strip().lower(),
    file_ext=row["file_ext"].strip().lower(),
    rating=row["rating"].strip(),
    score=_int(row.get("score")) or 0,
    up_score=_int(row.get("up_score")) or 0,
    down_score=_int(row.get("down_score")) or 0,
    fav_count=_int(row.get("fav_count")) or 0,
    comment_count=_int(row.get("comment_count")) or 0,
    image_width=_int(row.get("image_width")),
    image_height=_int(row.get("image_height")),
    file_size=_int(row.get("file_size")),
    is_pending=_bool(row.get("is_pending")),
    is_flagged=_bool(row.get("is_flagged")),
    is_rating_locked=_bool(row.get("is_rating_locked")),
    description=row.get("description") or None,
    created_at=_timestamp(row.get("created_at")),
    updated_at=_timestamp(row.get("updated_at")),
    tags=(row.get("tag_string") or "").split(),
    sources=sources,
  )


def read_export(path: Path, *, blocked_tags: frozenset[str] = frozenset()) -> Iterator[RecordIn]:
  """Yield records from an export file, dropping deleted, hashless and blocked posts."""
  skipped = 0
  with _open(path) as handle:
    for row_number, row in enumerate(csv.DictReader(handle), start=1):
      if _bool(row.get("is_deleted")) or not (row.get("md5") or "").strip():
        skipped += 1
        continue
      try:
        record = parse_row(row)
      except (KeyError, ValueError) as exc:
        logger.warning("Skipping malformed export row %d: %s", row_number, exc)
        skipped += 1
        continue
      if blocked_tags and not blocked_tags.isdisjoint(record.tags):
        skipped += 1
        continue
      yield record
  logger.info("Finished reading %s (%d rows filtered out)", path, skipped)
