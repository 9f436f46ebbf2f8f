"""Deterministic locations of an asset in the local cache, the legacy store and the remote host."""

from __future__ import annotations

from pathlib import Path

import msgspec

LOCAL_SHARD_COUNT = 1000


class DownloadableAsset(msgspec.Struct, frozen=True):
  """The minimal projection of a selected record needed to fetch and verify its file."""

  record_id: int
  md5: str
  file_ext: str


def local_path(cache_dir: Path, asset: DownloadableAsset) -> Path:
  return cache_dir / str(asset.record_id % LOCAL_SHARD_COUNT) / f"{asset.record_id}.{asset.file_ext}"


def _digest_shards(asset: DownloadableAsset) -> tuple[str, str, str]:
  return asset.md5[0:2], asset.md5[2:4], f"{asset.md5}.{asset.file_ext}"


def remote_url(base_url: str, asset: DownloadableAsset) -> str:
  first, second, filename = _digest_shards(asset)
  return f"{base_url.rstrip('/')}/{first}/{second}/{filename}"


def legacy_path(legacy_dir: Path, asset: DownloadableAsset) -> Path:
  """Older installs kept files under the remote host's digest-sharded layout."""
  first, second, filename = _digest_shards(asset)
  return legacy_dir / first / second / filename
