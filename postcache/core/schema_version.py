"""Schema version gate: one-time initialization, in-place upgrade, or refusal to start."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from sqlalchemy import delete, func, inspect, select
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from postcache.core.database import Base
from postcache.errors import PostcacheError, SchemaVersionError
from postcache.schema import SchemaVersion, SelectableRecord

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 2


async def _add_downloaded_index(connection: AsyncConnection) -> None:
  """Version 1 databases predate the index the cache scans rely on."""
  index = next(ix for ix in SelectableRecord.__table__.indexes if ix.name == "ix_selectable_records_is_downloaded")
  await connection.run_sync(lambda sync_conn: index.create(sync_conn, checkfirst=True))


# Keyed by the version being upgraded from.
UPGRADE_STEPS: dict[int, Callable[[AsyncConnection], Awaitable[None]]] = {
  1: _add_downloaded_index,
}


async def read_schema_version(connection: AsyncConnection) -> int | None:
  """Return the stored schema version, or None when the marker table is absent or empty."""
  has_marker = await connection.run_sync(lambda sync_conn: inspect(sync_conn).has_table(SchemaVersion.__tablename__))
  if not has_marker:
    return None
  result = await connection.execute(select(func.max(SchemaVersion.version)))
  return result.scalar_one_or_none()


async def _stamp(connection: AsyncConnection, version: int) -> None:
  await connection.execute(delete(SchemaVersion))
  await connection.execute(SchemaVersion.__table__.insert().values(version=version))


async def ensure_schema(db_engine: AsyncEngine, *, target_version: int = CURRENT_SCHEMA_VERSION) -> int:
  """Bring the database to target_version and return the version it started at (0 if new).

  Raises SchemaVersionError when the stored version is newer than target_version.
  """
  async with db_engine.begin() as connection:
    found = await read_schema_version(connection)

    if found is None:
      logger.info("No schema marker found; initializing schema version %d", target_version)
      await connection.run_sync(Base.metadata.create_all)
      await _stamp(connection, target_version)
      return 0

    if found > target_version:
      raise SchemaVersionError(found, target_version)

    if found == target_version:
      logger.debug("Schema is current at version %d", found)
      return found

    version = found
    while version < target_version:
      step = UPGRADE_STEPS.get(version)
      if step is None:
        raise PostcacheError(f"No upgrade path from schema version {version}")
      logger.info("Upgrading schema from version %d to %d", version, version + 1)
      await step(connection)
      version += 1

    await _stamp(connection, version)
    return found
