from __future__ import annotations

from enum import Enum

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from postcache.core.database import Base


class SelectionState(str, Enum):
  NOT_SELECTED = "not_selected"
  PENDING = "pending"
  CACHED = "cached"

  @classmethod
  def from_flag(cls, is_downloaded: bool | None) -> SelectionState:
    """Map the tri-state downloaded flag (None when no row exists) to a state."""
    if is_downloaded is None:
      return cls.NOT_SELECTED
    return cls.CACHED if is_downloaded else cls.PENDING

  @property
  def is_selected(self) -> bool:
    return self is not SelectionState.NOT_SELECTED


class SelectableRecord(Base):
  """A record whose asset is worth keeping in the local cache.

  A missing row means "not selected"; is_downloaded False means selected
  but not cached yet, True means cached and verified.
  """

  __tablename__ = "selectable_records"
  __table_args__ = (Index("ix_selectable_records_is_downloaded", "is_downloaded"),)

  record_id: Mapped[int] = mapped_column(Integer, ForeignKey("records.id", ondelete="CASCADE"), primary_key=True)
  rating: Mapped[str] = mapped_column(String(1), nullable=False)
  score: Mapped[int] = mapped_column(Integer, nullable=False)
  fav_count: Mapped[int] = mapped_column(Integer, nullable=False)
  is_downloaded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

  @property
  def state(self) -> SelectionState:
    return SelectionState.from_flag(self.is_downloaded)
