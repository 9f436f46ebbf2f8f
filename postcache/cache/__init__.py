"""Local asset cache: path layout and synchronization."""

from .paths import DownloadableAsset, legacy_path, local_path, remote_url
from .synchronizer import CacheSynchronizer, SyncStats, build_http_client

__all__ = ["CacheSynchronizer", "DownloadableAsset", "SyncStats", "build_http_client", "legacy_path", "local_path", "remote_url"]
