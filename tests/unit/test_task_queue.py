from __future__ import annotations

import asyncio

import pytest

from postcache.jobs.task_queue import TaskQueue


async def _settle(rounds: int = 10) -> None:
  for _ in range(rounds):
    await asyncio.sleep(0)


@pytest.mark.anyio
async def test_items_run_in_enqueue_order_one_at_a_time():
  started: list[int] = []
  counts_at_finish: list[int] = []
  in_flight = 0

  async def action(item: int) -> None:
    nonlocal in_flight
    in_flight += 1
    assert in_flight == 1
    started.append(item)
    await asyncio.sleep(0)
    counts_at_finish.append(queue.processed_count)
    in_flight -= 1

  queue: TaskQueue[int] = TaskQueue(action, name="ordering")
  for item in (1, 2, 3):
    queue.enqueue(item)

  assert queue.is_active
  await queue.drain()

  assert started == [1, 2, 3]
  # The counter only moves once an action has resolved.
  assert counts_at_finish == [0, 1, 2]
  assert queue.processed_count == 3
  assert not queue.is_active
  assert queue.backlog_size == 0


@pytest.mark.anyio
async def test_items_enqueued_during_an_action_are_picked_up_by_the_same_loop():
  seen: list[str] = []

  async def action(item: str) -> None:
    seen.append(item)
    if item == "first":
      queue.enqueue("late")

  queue: TaskQueue[str] = TaskQueue(action, name="reentrant")
  queue.enqueue("first")
  await queue.drain()

  assert seen == ["first", "late"]
  assert queue.processed_count == 2


@pytest.mark.anyio
async def test_drain_on_idle_queue_returns_immediately():
  async def action(item: int) -> None:
    raise AssertionError("never called")

  queue: TaskQueue[int] = TaskQueue(action, name="idle")
  await queue.drain()
  assert queue.processed_count == 0


@pytest.mark.anyio
async def test_action_failure_stops_the_loop_and_next_enqueue_restarts_it():
  seen: list[int] = []

  async def action(item: int) -> None:
    if item == 2:
      raise RuntimeError("boom")
    seen.append(item)

  queue: TaskQueue[int] = TaskQueue(action, name="failing")
  for item in (1, 2, 3):
    queue.enqueue(item)

  with pytest.raises(RuntimeError, match="boom"):
    await queue.drain()

  assert seen == [1]
  assert queue.processed_count == 1
  assert queue.backlog_size == 1

  queue.enqueue(4)
  await queue.drain()
  assert seen == [1, 3, 4]


@pytest.mark.anyio
async def test_put_pauses_producer_while_backlog_is_full():
  gate = asyncio.Event()
  produced: list[int] = []

  async def action(item: int) -> None:
    await gate.wait()

  queue: TaskQueue[int] = TaskQueue(action, name="backpressure", max_backlog=1)

  async def producer() -> None:
    for item in range(3):
      await queue.put(item)
      produced.append(item)

  task = asyncio.create_task(producer())
  await _settle()

  # Item 0 is in flight, item 1 waits in the backlog, item 2 is held back.
  assert produced == [0, 1]
  assert queue.backlog_size == 1

  gate.set()
  await task
  await queue.drain()

  assert produced == [0, 1, 2]
  assert queue.processed_count == 3


@pytest.mark.anyio
async def test_paused_producer_sees_worker_failure():
  gate = asyncio.Event()

  async def action(item: int) -> None:
    await gate.wait()
    raise ValueError(f"cannot process {item}")

  queue: TaskQueue[int] = TaskQueue(action, name="backpressure-failure", max_backlog=1)

  async def producer() -> None:
    for item in range(3):
      await queue.put(item)

  task = asyncio.create_task(producer())
  await _settle()
  gate.set()

  with pytest.raises(ValueError, match="cannot process 0"):
    await task


def test_max_backlog_must_be_positive():
  async def action(item: int) -> None:
    return None

  with pytest.raises(ValueError):
    TaskQueue(action, name="invalid", max_backlog=0)
