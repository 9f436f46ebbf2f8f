"""Postgres-backed access to the selection table for the cache synchronizer."""

from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from postcache.cache.paths import DownloadableAsset
from postcache.core.database import connection_scope, get_session_factory
from postcache.schema import Record, SelectableRecord
from postcache.utils.db_retry import execute_with_retry

logger = logging.getLogger(__name__)


class PostgresSelectionRepository:
  """Read selected assets and own writes to the downloaded flag."""

  def __init__(self, *, session_factory: async_sessionmaker[AsyncSession] | None = None, max_attempts: int = 3) -> None:
    self._session_factory = session_factory or get_session_factory()
    self._max_attempts = max_attempts

  async def _list(self, *, downloaded: bool) -> list[DownloadableAsset]:
    async with connection_scope(self._session_factory) as session:
      stmt = (
        select(Record.id, Record.md5, Record.file_ext)
        .join(SelectableRecord, SelectableRecord.record_id == Record.id)
        .where(SelectableRecord.is_downloaded == downloaded)
        .order_by(Record.id)
      )
      result = await session.execute(stmt)
      return [DownloadableAsset(record_id=row.id, md5=row.md5, file_ext=row.file_ext) for row in result]

  async def list_pending(self) -> list[DownloadableAsset]:
    """Selected records whose file is not cached yet."""
    return await execute_with_retry(operation_name="list_pending_assets", func=lambda: self._list(downloaded=False), max_attempts=self._max_attempts)

  async def list_downloaded(self) -> list[DownloadableAsset]:
    """Selected records currently marked as cached and verified."""
    return await execute_with_retry(operation_name="list_downloaded_assets", func=lambda: self._list(downloaded=True), max_attempts=self._max_attempts)

  async def set_downloaded(self, record_id: int, value: bool) -> None:
    async def _update() -> None:
      async with connection_scope(self._session_factory) as session:
        async with session.begin():
          await session.execute(update(SelectableRecord).where(SelectableRecord.record_id == record_id).values(is_downloaded=value))

    await execute_with_retry(operation_name="set_downloaded", func=_update, max_attempts=self._max_attempts)
    logger.debug("Record %s downloaded=%s", record_id, value)
