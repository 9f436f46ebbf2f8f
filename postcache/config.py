"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from postcache.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

DEFAULT_REMOTE_BASE_URL = "https://static1.e621.net/data"
DEFAULT_USER_AGENT = "postcache/0.1 (asset cache maintenance)"


@dataclass(frozen=True)
class Settings:
  """Typed settings for the ingestion, selection and cache stages."""

  debug: bool
  log_dir: Path
  log_max_bytes: int
  log_backup_count: int
  pg_dsn: str | None
  pg_connect_timeout: int
  db_max_attempts: int
  export_path: Path | None
  ingest_batch_size: int
  ingest_max_backlog: int
  blocked_tags: frozenset[str]
  min_score: int
  min_fav_count: int
  selection_batch_size: int
  cache_dir: Path
  legacy_dir: Path | None
  remote_base_url: str
  download_delay_seconds: float
  http_timeout_seconds: float
  user_agent: str


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  db_max_attempts: int


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _optional_path(raw: str | None) -> Path | None:
  value = _optional_str(raw)
  if value is None:
    return None
  return Path(value).expanduser()


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _non_negative_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value < 0:
    raise ValueError(f"{name} must be zero or a positive integer.")
  return value


def _parse_tags(raw: str | None) -> frozenset[str]:
  if not raw:
    return frozenset()
  return frozenset(tag.strip() for tag in raw.replace(",", " ").split() if tag.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  database = get_database_settings()

  log_max_bytes = _positive_int("POSTCACHE_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = _non_negative_int("POSTCACHE_LOG_BACKUP_COUNT", "10")

  ingest_batch_size = _positive_int("POSTCACHE_INGEST_BATCH_SIZE", "500")
  # One batch in flight plus this many waiting before the export reader pauses.
  ingest_max_backlog = _positive_int("POSTCACHE_INGEST_MAX_BACKLOG", "1")

  min_score = int(os.getenv("POSTCACHE_MIN_SCORE", "300"))
  min_fav_count = int(os.getenv("POSTCACHE_MIN_FAV_COUNT", "600"))
  # Keep bulk statements well under the driver's bind parameter limit.
  selection_batch_size = _positive_int("POSTCACHE_SELECTION_BATCH_SIZE", "1000")

  download_delay_seconds = float(os.getenv("POSTCACHE_DOWNLOAD_DELAY_SECONDS", "1.0"))
  if download_delay_seconds < 0:
    raise ValueError("POSTCACHE_DOWNLOAD_DELAY_SECONDS must not be negative.")

  http_timeout_seconds = float(os.getenv("POSTCACHE_HTTP_TIMEOUT_SECONDS", "60"))
  if http_timeout_seconds <= 0:
    raise ValueError("POSTCACHE_HTTP_TIMEOUT_SECONDS must be positive.")

  return Settings(
    debug=database.debug,
    log_dir=Path(os.getenv("POSTCACHE_LOG_DIR", "./logs")).expanduser(),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    pg_dsn=database.pg_dsn,
    pg_connect_timeout=database.pg_connect_timeout,
    db_max_attempts=database.db_max_attempts,
    export_path=_optional_path(os.getenv("POSTCACHE_EXPORT_PATH")),
    ingest_batch_size=ingest_batch_size,
    ingest_max_backlog=ingest_max_backlog,
    blocked_tags=_parse_tags(os.getenv("POSTCACHE_BLOCKED_TAGS")),
    min_score=min_score,
    min_fav_count=min_fav_count,
    selection_batch_size=selection_batch_size,
    cache_dir=Path(os.getenv("POSTCACHE_CACHE_DIR", "./cache")).expanduser(),
    legacy_dir=_optional_path(os.getenv("POSTCACHE_LEGACY_DIR")),
    remote_base_url=(os.getenv("POSTCACHE_REMOTE_BASE_URL") or DEFAULT_REMOTE_BASE_URL).strip().rstrip("/"),
    download_delay_seconds=download_delay_seconds,
    http_timeout_seconds=http_timeout_seconds,
    user_agent=(os.getenv("POSTCACHE_USER_AGENT") or DEFAULT_USER_AGENT).strip(),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring the cache or export configuration."""
  debug = _parse_bool(os.getenv("POSTCACHE_DEBUG"))
  pg_connect_timeout = _positive_int("POSTCACHE_PG_CONNECT_TIMEOUT", "5")
  db_max_attempts = _positive_int("POSTCACHE_DB_MAX_ATTEMPTS", "3")

  # Support fallback to DATABASE_URL for hosted environments.
  pg_dsn = _optional_str(os.getenv("POSTCACHE_PG_DSN")) or _optional_str(os.getenv("DATABASE_URL"))

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout, db_max_attempts=db_max_attempts)
