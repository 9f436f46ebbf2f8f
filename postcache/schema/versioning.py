from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from postcache.core.database import Base


class SchemaVersion(Base):
  """Single-row marker recording which schema version the database holds."""

  __tablename__ = "schema_version"

  version: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
  applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
