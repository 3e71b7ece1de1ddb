"""Single timer primitive for debounce, periodic ticks and retry backoff.

Every timed behaviour in the engine goes through ``call_later`` or
``call_every``. ``LoopScheduler`` drives callbacks from the running asyncio
loop; ``ManualScheduler`` keeps a fake clock that tests move forward with
``advance``. Callbacks may be plain functions or return an awaitable.
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

Callback = Callable[[], Any]


@dataclass(eq=False)
class TimerHandle:
    due_at: float
    callback: Callback
    interval: float | None = None
    cancelled: bool = False
    _loop_handle: asyncio.TimerHandle | None = field(default=None, repr=False)

    def cancel(self) -> None:
        self.cancelled = True
        if self._loop_handle is not None:
            self._loop_handle.cancel()
            self._loop_handle = None

    @property
    def active(self) -> bool:
        return not self.cancelled


class Scheduler(Protocol):
    def now(self) -> float:
        """Current time in epoch seconds."""

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        """Run callback once after delay seconds."""

    def call_every(self, interval: float, callback: Callback) -> TimerHandle:
        """Run callback every interval seconds until cancelled."""


class ManualScheduler:
    """Fake-clock scheduler; nothing fires until ``advance`` is awaited."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._queue: list[tuple[float, int, TimerHandle]] = []
        self._sequence = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        handle = TimerHandle(due_at=self._now + max(0.0, delay), callback=callback)
        self._push(handle)
        return handle

    def call_every(self, interval: float, callback: Callback) -> TimerHandle:
        handle = TimerHandle(due_at=self._now + interval, callback=callback, interval=interval)
        self._push(handle)
        return handle

    def pending(self) -> int:
        return sum(1 for _, _, handle in self._queue if handle.active)

    async def advance(self, seconds: float) -> None:
        await self.advance_to(self._now + seconds)

    async def advance_to(self, target: float) -> None:
        while self._queue and self._queue[0][0] <= target:
            due_at, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, due_at)
            if handle.interval is not None:
                handle.due_at = self._now + handle.interval
                self._push(handle)
            result = handle.callback()
            if inspect.isawaitable(result):
                await result
        self._now = max(self._now, target)

    def _push(self, handle: TimerHandle) -> None:
        heapq.heappush(self._queue, (handle.due_at, next(self._sequence), handle))


class LoopScheduler:
    """Scheduler bound to the running asyncio loop and wall-clock time."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._tasks: set[asyncio.Task[Any]] = set()

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        handle = TimerHandle(due_at=self.now() + max(0.0, delay), callback=callback)
        handle._loop_handle = self._get_loop().call_later(max(0.0, delay), self._fire, handle)
        return handle

    def call_every(self, interval: float, callback: Callback) -> TimerHandle:
        handle = TimerHandle(due_at=self.now() + interval, callback=callback, interval=interval)
        handle._loop_handle = self._get_loop().call_later(interval, self._fire, handle)
        return handle

    def _fire(self, handle: TimerHandle) -> None:
        if handle.cancelled:
            return
        if handle.interval is not None:
            handle.due_at = self.now() + handle.interval
            handle._loop_handle = self._get_loop().call_later(handle.interval, self._fire, handle)
        else:
            handle._loop_handle = None
        try:
            result = handle.callback()
        except Exception:
            logger.exception("[scheduler] timer callback failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[scheduler] timer task failed: %s", exc, exc_info=exc)

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop
