"""Sequential asynchronous work queue with producer backpressure."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class TaskQueue(Generic[T]):
  """Run one async action per item, strictly one at a time and in enqueue order.

  Producers may keep calling enqueue() while an action is in flight; the
  worker loop picks new items up until the backlog is empty, then stops.
  Exceptions raised by the action are not caught: they end the loop and
  surface from drain(). Actions that must not stop the queue handle their
  own errors.

  When max_backlog is set, put() suspends the producer while the backlog is
  full and resumes it as soon as the worker takes the next item.
  """

  def __init__(self, action: Callable[[T], Awaitable[None]], *, name: str, max_backlog: int | None = None) -> None:
    if max_backlog is not None and max_backlog < 1:
      raise ValueError("max_backlog must be at least 1")
    self._action = action
    self._name = name
    self._max_backlog = max_backlog
    self._backlog: deque[T] = deque()
    self._worker: asyncio.Task[None] | None = None
    self._capacity = asyncio.Event()
    self._capacity.set()
    self.processed_count = 0

  @property
  def name(self) -> str:
    return self._name

  @property
  def backlog_size(self) -> int:
    return len(self._backlog)

  @property
  def is_active(self) -> bool:
    return self._worker is not None and not self._worker.done()

  def enqueue(self, item: T) -> None:
    """Append an item and start the worker loop if it is idle."""
    self._backlog.append(item)
    if self._max_backlog is not None and len(self._backlog) >= self._max_backlog:
      self._capacity.clear()
    if not self.is_active:
      self._worker = asyncio.get_running_loop().create_task(self._run(), name=f"task-queue:{self._name}")

  async def put(self, item: T) -> None:
    """Enqueue, first waiting for capacity when the backlog is full."""
    while self._max_backlog is not None and len(self._backlog) >= self._max_backlog:
      if self._worker is not None and self._worker.done():
        # The loop died on an action failure; surface it instead of waiting forever.
        await self._worker
      logger.debug("Queue %s paused producer (backlog=%d)", self._name, len(self._backlog))
      await self._capacity.wait()
    self.enqueue(item)

  async def drain(self) -> None:
    """Wait until the active worker loop has emptied the backlog.

    Items enqueued after the loop exits start a new loop; callers needing
    strict completion re-check backlog_size afterwards.
    """
    worker = self._worker
    if worker is not None:
      await worker

  async def _run(self) -> None:
    try:
      while self._backlog:
        item = self._backlog.popleft()
        if self._max_backlog is None or len(self._backlog) < self._max_backlog:
          self._capacity.set()
        await self._action(item)
        self.processed_count += 1
    finally:
      # Wake paused producers so they observe an idle or failed loop.
      self._capacity.set()
    logger.debug("Queue %s idle after %d items", self._name, self.processed_count)
