"""Value objects passed between the export reader, the ingestion engine and its callers."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

import msgspec


class RecordIn(msgspec.Struct, frozen=True):
  """One normalized post from the bulk export."""

  id: int
  md5: str
  file_ext: str
  rating: str
  parent_id: int | None = None
  score: int = 0
  up_score: int = 0
  down_score: int = 0
  fav_count: int = 0
  comment_count: int = 0
  image_width: int | None = None
  image_height: int | None = None
  file_size: int | None = None
  is_pending: bool = False
  is_flagged: bool = False
  is_rating_locked: bool = False
  description: str | None = None
  created_at: datetime | None = None
  updated_at: datetime | None = None
  tags: list[str] = msgspec.field(default_factory=list)
  sources: list[str] = msgspec.field(default_factory=list)

  def without_parent(self) -> RecordIn:
    return msgspec.structs.replace(self, parent_id=None)

  def column_values(self) -> dict[str, object]:
    """Scalar columns for the records table."""
    return {
      "id": self.id,
      "parent_id": self.parent_id,
      "md5": self.md5,
      "file_ext": self.file_ext,
      "rating": self.rating,
      "score": self.score,
      "up_score": self.up_score,
      "down_score": self.down_score,
      "fav_count": self.fav_count,
      "comment_count": self.comment_count,
      "image_width": self.image_width,
      "image_height": self.image_height,
      "file_size": self.file_size,
      "is_pending": self.is_pending,
      "is_flagged": self.is_flagged,
      "is_rating_locked": self.is_rating_locked,
      "description": self.description,
      "created_at": self.created_at,
      "updated_at": self.updated_at,
    }


class RecordSnapshot(msgspec.Struct, frozen=True):
  """Stored fields that decide whether an incoming record changed."""

  updated_at: datetime | None
  up_score: int
  down_score: int
  fav_count: int

  @classmethod
  def of(cls, record: RecordIn) -> RecordSnapshot:
    return cls(updated_at=record.updated_at, up_score=record.up_score, down_score=record.down_score, fav_count=record.fav_count)

  def matches(self, other: RecordSnapshot) -> bool:
    return (
      _as_utc(self.updated_at) == _as_utc(other.updated_at)
      and self.up_score == other.up_score
      and self.down_score == other.down_score
      and self.fav_count == other.fav_count
    )


def _as_utc(value: datetime | None) -> datetime | None:
  # Drivers without timezone support hand back naive UTC values.
  if value is None:
    return None
  if value.tzinfo is None:
    return value.replace(tzinfo=UTC)
  return value.astimezone(UTC)


class IngestOutcome(str, Enum):
  APPLIED = "applied"
  SKIPPED = "skipped"
  DEFERRED_MISSING_PARENT = "deferred_missing_parent"


class IngestResult(msgspec.Struct):
  """(record_id, outcome) pairs of one ingested batch, in batch order."""

  outcomes: list[tuple[int, IngestOutcome]] = msgspec.field(default_factory=list)
  deferred: list[RecordIn] = msgspec.field(default_factory=list)

  @property
  def applied(self) -> int:
    return sum(1 for _, outcome in self.outcomes if outcome is IngestOutcome.APPLIED)

  @property
  def skipped(self) -> int:
    return sum(1 for _, outcome in self.outcomes if outcome is IngestOutcome.SKIPPED)


class IngestStats(msgspec.Struct):
  """Totals for a whole export run."""

  batches: int = 0
  applied: int = 0
  skipped: int = 0
  deferred: int = 0
  retried: int = 0
  unresolved: int = 0

  def add(self, result: IngestResult) -> None:
    self.batches += 1
    self.applied += result.applied
    self.skipped += result.skipped
    self.deferred += len(result.deferred)
