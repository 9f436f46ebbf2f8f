from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from postcache.core.database import Base


class Record(Base):
  """Canonical post row keyed by the export's own post id."""

  __tablename__ = "records"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
  parent_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("records.id", ondelete="SET NULL"), nullable=True, index=True)
  md5: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
  file_ext: Mapped[str] = mapped_column(String(16), nullable=False)
  rating: Mapped[str] = mapped_column(String(1), nullable=False)
  score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  up_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  down_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  fav_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  comment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  image_width: Mapped[int | None] = mapped_column(Integer, nullable=True)
  image_height: Mapped[int | None] = mapped_column(Integer, nullable=True)
  file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
  is_pending: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  is_flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  is_rating_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  description: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Tag(Base):
  """Tag name with a surrogate id that never changes once assigned."""

  __tablename__ = "tags"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  name: Mapped[str] = mapped_column(String, nullable=False, unique=True)


class RecordTag(Base):
  """Association rows between records and tags."""

  __tablename__ = "record_tags"

  record_id: Mapped[int] = mapped_column(Integer, ForeignKey("records.id", ondelete="CASCADE"), primary_key=True)
  tag_id: Mapped[int] = mapped_column(Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True, index=True)


class RecordSource(Base):
  """Source URIs for a record; rows carry no stable key and are replaced wholesale."""

  __tablename__ = "record_sources"
  __table_args__ = (Index("ix_record_sources_record_id", "record_id"),)

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  record_id: Mapped[int] = mapped_column(Integer, ForeignKey("records.id", ondelete="CASCADE"), nullable=False)
  position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  source: Mapped[str] = mapped_column(Text, nullable=False)
