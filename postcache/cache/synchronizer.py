"""Converge the on-disk asset cache with the digests declared in the database."""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Protocol

import httpx
import msgspec

from postcache.cache.paths import DownloadableAsset, legacy_path, local_path, remote_url
from postcache.config import Settings
from postcache.jobs.task_queue import TaskQueue
from postcache.utils.hashing import md5_file, md5_file_or_none

logger = logging.getLogger(__name__)

# Statuses meaning the remote host no longer has the asset.
NOT_FOUND_STATUSES = (404, 410)


class SelectionStore(Protocol):
  async def list_pending(self) -> list[DownloadableAsset]: ...

  async def list_downloaded(self) -> list[DownloadableAsset]: ...

  async def set_downloaded(self, record_id: int, value: bool) -> None: ...


class SyncStats(msgspec.Struct):
  placed: int = 0
  downloaded: int = 0
  not_found: int = 0
  failed: int = 0
  mismatched: int = 0
  valid: int = 0
  invalidated: int = 0


def build_http_client(settings: Settings) -> httpx.AsyncClient:
  """Create the client used for asset downloads."""
  return httpx.AsyncClient(timeout=settings.http_timeout_seconds, headers={"user-agent": settings.user_agent}, follow_redirects=True)


def _move(source: Path, target: Path) -> None:
  target.parent.mkdir(parents=True, exist_ok=True)
  shutil.move(str(source), str(target))


class CacheSynchronizer:
  """Drive placement, download and validation of selected assets.

  Only the download queue ever sets the downloaded flag; placement and
  validation can only send a record towards a (re)download, so queuing the
  same asset twice just fetches and verifies it twice.
  """

  def __init__(self, *, store: SelectionStore, client: httpx.AsyncClient, cache_dir: Path, remote_base_url: str, legacy_dir: Path | None = None, delay_seconds: float = 1.0) -> None:
    self._store = store
    self._client = client
    self._cache_dir = cache_dir
    self._remote_base_url = remote_base_url
    self._legacy_dir = legacy_dir
    self._delay_seconds = delay_seconds
    self.stats = SyncStats()
    self.download_queue: TaskQueue[DownloadableAsset] = TaskQueue(self._download, name="download")
    self.validation_queue: TaskQueue[DownloadableAsset] = TaskQueue(self._validate, name="validate")

  def path_for(self, asset: DownloadableAsset) -> Path:
    return local_path(self._cache_dir, asset)

  async def run(self) -> SyncStats:
    """Place or queue every pending asset, revalidate cached ones, and wait for both queues."""
    pending = await self._store.list_pending()
    logger.info("Cache sync starting: %d selected assets not cached", len(pending))
    for asset in pending:
      await self.place(asset)

    downloaded = await self._store.list_downloaded()
    logger.info("Revalidating %d cached assets", len(downloaded))
    for asset in downloaded:
      self.validation_queue.enqueue(asset)

    await self.wait_idle()
    logger.info("Cache sync finished: %s", msgspec.structs.asdict(self.stats))
    return self.stats

  async def wait_idle(self) -> None:
    """Return once neither queue has work left, including work one queue handed the other."""
    while True:
      await self.validation_queue.drain()
      await self.download_queue.drain()
      queues = (self.validation_queue, self.download_queue)
      if not any(queue.is_active or queue.backlog_size for queue in queues):
        return

  async def place(self, asset: DownloadableAsset) -> None:
    """Mark an asset cached without a network fetch when a verified copy is on disk."""
    target = self.path_for(asset)
    if await asyncio.to_thread(md5_file_or_none, target) == asset.md5:
      logger.debug("Asset %s already present at %s", asset.record_id, target)
      await self._mark_placed(asset)
      return

    if self._legacy_dir is not None:
      source = legacy_path(self._legacy_dir, asset)
      if await asyncio.to_thread(md5_file_or_none, source) == asset.md5:
        await asyncio.to_thread(_move, source, target)
        logger.debug("Moved asset %s from legacy store %s", asset.record_id, source)
        await self._mark_placed(asset)
        return

    self.download_queue.enqueue(asset)

  async def _mark_placed(self, asset: DownloadableAsset) -> None:
    await self._store.set_downloaded(asset.record_id, True)
    self.stats.placed += 1

  async def _download(self, asset: DownloadableAsset) -> None:
    await asyncio.sleep(self._delay_seconds)
    url = remote_url(self._remote_base_url, asset)
    target = self.path_for(asset)
    partial = target.with_name(target.name + ".part")

    try:
      async with self._client.stream("GET", url) as response:
        if response.status_code in NOT_FOUND_STATUSES:
          logger.warning("Asset %s not found at %s (HTTP %d)", asset.record_id, url, response.status_code)
          self.stats.not_found += 1
          return
        if response.status_code != 200:
          logger.error("Download of asset %s failed with HTTP %d from %s", asset.record_id, response.status_code, url)
          self.stats.failed += 1
          return
        await asyncio.to_thread(partial.parent.mkdir, parents=True, exist_ok=True)
        handle = await asyncio.to_thread(partial.open, "wb")
        try:
          async for chunk in response.aiter_bytes():
            await asyncio.to_thread(handle.write, chunk)
        finally:
          await asyncio.to_thread(handle.close)
    except (httpx.HTTPError, OSError) as exc:
      logger.error("Download of asset %s from %s failed: %s", asset.record_id, url, exc)
      await asyncio.to_thread(partial.unlink, missing_ok=True)
      self.stats.failed += 1
      return

    digest = await asyncio.to_thread(md5_file, partial)
    if digest != asset.md5:
      logger.error("Digest mismatch for asset %s: expected %s, got %s", asset.record_id, asset.md5, digest)
      await asyncio.to_thread(partial.unlink, missing_ok=True)
      self.stats.mismatched += 1
      return

    await asyncio.to_thread(partial.replace, target)
    await self._store.set_downloaded(asset.record_id, True)
    self.stats.downloaded += 1
    logger.info("Downloaded asset %s to %s", asset.record_id, target)

  async def _validate(self, asset: DownloadableAsset) -> None:
    target = self.path_for(asset)
    digest = await asyncio.to_thread(md5_file_or_none, target)
    if digest == asset.md5:
      self.stats.valid += 1
      return

    logger.warning("Cached asset %s is %s; scheduling re-download", asset.record_id, "missing" if digest is None else "corrupt")
    await asyncio.to_thread(target.unlink, missing_ok=True)
    await self._store.set_downloaded(asset.record_id, False)
    self.stats.invalidated += 1
    self.download_queue.enqueue(asset)
