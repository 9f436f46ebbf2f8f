"""Database failure classification and retry of whole operations on dropped connections."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DROPPED_CONNECTION_PATTERNS = (
  "connection was closed",
  "connection is closed",
  "connection reset",
  "server closed the connection",
  "terminating connection",
  "broken pipe",
  "lost connection",
  "connection refused",
  "connectiondoesnotexisterror",
)


class DBErrorKind(str, Enum):
  """Closed set of failure kinds the ingestion and cache stages branch on."""

  CONNECTION_DROPPED = "connection_dropped"
  MISSING_REFERENCE = "missing_reference"
  INTEGRITY = "integrity"
  SCHEMA = "schema"
  PERMISSION = "permission"
  OTHER = "other"


class DBFailureClassification:
  """Classification result for a database failure."""

  def __init__(self, *, kind: DBErrorKind, retryable: bool, reason: str, sqlstate: str | None) -> None:
    self.kind = kind
    self.retryable = retryable
    self.reason = reason
    self.sqlstate = sqlstate

  def __repr__(self) -> str:
    return f"DBFailureClassification(kind={self.kind.value}, retryable={self.retryable}, sqlstate={self.sqlstate})"


def _extract_sqlstate(exc: BaseException) -> str | None:
  """Extract the Postgres SQLSTATE from a SQLAlchemy-wrapped driver error."""
  if isinstance(exc, DBAPIError) and exc.orig is not None:
    # asyncpg exposes sqlstate, psycopg exposes pgcode; the SQLAlchemy adapter sets both.
    for attribute in ("sqlstate", "pgcode"):
      value = getattr(exc.orig, attribute, None)
      if value:
        return str(value)
  return None


def _message(exc: BaseException) -> str:
  parts = [str(exc), type(exc).__name__]
  orig = getattr(exc, "orig", None)
  if orig is not None:
    parts.extend([str(orig), type(orig).__name__])
  return " ".join(parts).lower()


def _is_dropped_connection(exc: BaseException, sqlstate: str | None) -> bool:
  if isinstance(exc, DBAPIError) and exc.connection_invalidated:
    return True
  # Class 08 is "connection exception" in the SQLSTATE table.
  if sqlstate and sqlstate.startswith("08"):
    return True
  if isinstance(exc, (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)):
    return True
  if isinstance(exc, (OperationalError, DBAPIError)) or isinstance(getattr(exc, "orig", None), ConnectionError):
    message = _message(exc)
    return any(pattern in message for pattern in _DROPPED_CONNECTION_PATTERNS)
  return False


def classify_db_failure(exc: BaseException) -> DBFailureClassification:
  """
  Classify a database failure into a DBErrorKind.

  Primary signal: Postgres SQLSTATE
  Fallback: exception type and message patterns (SQLite reports no SQLSTATE)

  Only dropped connections are retryable. A missing foreign-key target is
  reported as MISSING_REFERENCE so ingestion can defer the record instead
  of failing the batch.
  """
  sqlstate = _extract_sqlstate(exc)

  if _is_dropped_connection(exc, sqlstate):
    return DBFailureClassification(kind=DBErrorKind.CONNECTION_DROPPED, retryable=True, reason="Connection dropped", sqlstate=sqlstate)

  if sqlstate == "23503":
    return DBFailureClassification(kind=DBErrorKind.MISSING_REFERENCE, retryable=False, reason="Foreign key violation", sqlstate=sqlstate)

  if sqlstate and sqlstate.startswith("23"):
    return DBFailureClassification(kind=DBErrorKind.INTEGRITY, retryable=False, reason="Integrity constraint violation", sqlstate=sqlstate)

  if sqlstate and sqlstate.startswith("42"):
    return DBFailureClassification(kind=DBErrorKind.SCHEMA, retryable=False, reason="Schema/SQL error (undefined table/column, syntax error)", sqlstate=sqlstate)

  if sqlstate and sqlstate.startswith("28"):
    return DBFailureClassification(kind=DBErrorKind.PERMISSION, retryable=False, reason="Authentication/permission error", sqlstate=sqlstate)

  # Fallback to exception type analysis
  if isinstance(exc, IntegrityError):
    if "foreign key" in _message(exc):
      return DBFailureClassification(kind=DBErrorKind.MISSING_REFERENCE, retryable=False, reason="Foreign key violation (detected by message)", sqlstate=sqlstate)
    return DBFailureClassification(kind=DBErrorKind.INTEGRITY, retryable=False, reason="Integrity constraint violation (detected by exception type)", sqlstate=sqlstate)

  return DBFailureClassification(kind=DBErrorKind.OTHER, retryable=False, reason=f"Unclassified error: {type(exc).__name__}", sqlstate=sqlstate)


async def execute_with_retry(*, operation_name: str, func: Callable[[], Awaitable[T]], max_attempts: int = 3, initial_backoff_ms: int = 100, max_backoff_ms: int = 2000, jitter: bool = True) -> T:
  """
  Run a database operation, redoing it from scratch when the connection drops.

  Args:
    operation_name: Human-readable name for logging (e.g., "ingest_batch")
    func: Async callable that opens its own session, so a retry gets a fresh connection
    max_attempts: Maximum number of attempts (initial + retries)
    initial_backoff_ms: Starting backoff delay in milliseconds
    max_backoff_ms: Maximum backoff delay in milliseconds
    jitter: Add randomness to backoff to avoid thundering herd
  """
  if max_attempts < 1:
    raise ValueError("max_attempts must be at least 1")

  attempt = 0
  while True:
    attempt += 1
    try:
      result = await func()
      if attempt > 1:
        logger.info("DB operation succeeded after retry: operation=%s, attempt=%d/%d", operation_name, attempt, max_attempts)
      return result

    except Exception as exc:
      classification = classify_db_failure(exc)

      if not classification.retryable:
        raise

      if attempt >= max_attempts:
        logger.error("DB operation failed after %d attempts: operation=%s, kind=%s - giving up", max_attempts, operation_name, classification.kind.value)
        raise

      backoff_ms = min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms)
      if jitter:
        jitter_range = backoff_ms * 0.25
        backoff_ms += random.uniform(-jitter_range, jitter_range)

      logger.warning("Retrying DB operation after dropped connection: operation=%s, attempt=%d/%d, backoff_ms=%.1f, reason=%s", operation_name, attempt, max_attempts, backoff_ms, classification.reason)
      await asyncio.sleep(backoff_ms / 1000.0)
