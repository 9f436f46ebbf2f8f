from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from postcache.config import get_database_settings
from postcache.errors import DatabaseNotConfiguredError
from postcache.utils.db_retry import DBErrorKind, classify_db_failure

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
  pass


engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


def _database_url() -> str | None:
  """Build the SQLAlchemy database URL from the configured DSN."""
  settings = get_database_settings()
  database_url = settings.pg_dsn
  if database_url and database_url.startswith("postgresql://"):
    database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

  return database_url


def _install_sqlite_hooks(db_engine: AsyncEngine) -> None:
  """Make pysqlite honour foreign keys and SAVEPOINT the way Postgres does."""

  @event.listens_for(db_engine.sync_engine, "connect")
  def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
    # Disable the driver's implicit transaction handling; BEGIN is emitted below.
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()

  @event.listens_for(db_engine.sync_engine, "begin")
  def _on_begin(connection: Any) -> None:
    connection.exec_driver_sql("BEGIN")


def create_engine_for_url(database_url: str, *, echo: bool = False, connect_timeout: int | None = None) -> AsyncEngine:
  """Create an async engine, applying per-dialect connection settings."""
  connect_args: dict[str, Any] = {}
  if database_url.startswith("postgresql+asyncpg") and connect_timeout:
    connect_args["timeout"] = connect_timeout
  db_engine = create_async_engine(database_url, echo=echo, pool_pre_ping=True, connect_args=connect_args)
  if db_engine.dialect.name == "sqlite":
    _install_sqlite_hooks(db_engine)
  return db_engine


def get_db_engine() -> AsyncEngine:
  global engine
  if engine is None:
    settings = get_database_settings()
    database_url = _database_url()
    if not database_url:
      raise DatabaseNotConfiguredError("Database connection is not configured (POSTCACHE_PG_DSN is missing).")
    engine = create_engine_for_url(database_url, echo=settings.debug, connect_timeout=settings.pg_connect_timeout)
  return engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
  global SessionLocal
  if SessionLocal is None:
    SessionLocal = async_sessionmaker(bind=get_db_engine(), expire_on_commit=False, class_=AsyncSession)
  return SessionLocal


def configure_engine(db_engine: AsyncEngine | None) -> None:
  """Install an explicit engine (or clear it) instead of building one from settings."""
  global engine, SessionLocal
  engine = db_engine
  SessionLocal = None if db_engine is None else async_sessionmaker(bind=db_engine, expire_on_commit=False, class_=AsyncSession)


async def dispose_engine() -> None:
  """Close every pooled connection and forget the engine."""
  global engine, SessionLocal
  if engine is not None:
    await engine.dispose()
  engine = None
  SessionLocal = None


@asynccontextmanager
async def connection_scope(session_factory: async_sessionmaker[AsyncSession] | None = None) -> AsyncIterator[AsyncSession]:
  """Yield a session whose connection goes back to the pool in a clean state.

  On error the transaction is rolled back before release; a connection the
  driver reports as dropped is invalidated so the pool discards it.
  """
  session = (session_factory or get_session_factory())()
  try:
    yield session
  except Exception as exc:
    if classify_db_failure(exc).kind is DBErrorKind.CONNECTION_DROPPED:
      logger.warning("Discarding pooled connection after failure: %s", type(exc).__name__)
      await session.invalidate()
    else:
      await session.rollback()
    raise
  finally:
    await session.close()


def dialect_insert(session: AsyncSession, table: Any) -> Any:
  """Return an INSERT construct that supports ON CONFLICT for the session's dialect."""
  if session.bind is not None and session.bind.dialect.name == "sqlite":
    return sqlite_insert(table)
  return pg_insert(table)
