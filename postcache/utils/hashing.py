"""Content digest helpers for cached asset files."""

from __future__ import annotations

import hashlib
from pathlib import Path

CHUNK_SIZE = 1024 * 1024


def md5_file(path: Path) -> str:
  """Return the hex MD5 digest of a file, reading it in chunks."""
  hasher = hashlib.md5()  # noqa: S324
  with path.open("rb") as handle:
    for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
      hasher.update(chunk)
  return hasher.hexdigest()


def md5_file_or_none(path: Path) -> str | None:
  """Return the file digest, or None when the file is missing."""
  try:
    return md5_file(path)
  except FileNotFoundError:
    return None
