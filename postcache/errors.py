"""Exception types shared across the ingestion and cache stages."""


class PostcacheError(Exception):
  """Base class for errors raised by postcache itself."""


class SchemaVersionError(PostcacheError):
  """Raised when the stored schema version is newer than this build understands."""

  def __init__(self, found: int, supported: int) -> None:
    super().__init__(f"Database schema version {found} is newer than the supported version {supported}; refusing to start.")
    self.found = found
    self.supported = supported


class DatabaseNotConfiguredError(PostcacheError, RuntimeError):
  """Raised when a database engine is requested without a DSN."""
