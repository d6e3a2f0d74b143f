"""Time source and cancelable deferred actions.

Every timer in the room runtime goes through a ``Clock`` so that the owner
holds an explicit ``TimerHandle`` and tests can advance virtual time with
``ManualClock`` instead of sleeping.
"""

import asyncio
import heapq
import itertools
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Set, Tuple


def to_iso(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat()


class TaskSet:
    """Keeps references to fire-and-forget tasks so they can be awaited or cancelled"""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def __len__(self) -> int:
        return len(self._tasks)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    async def wait(self) -> None:
        while self._tasks:
            pending = list(self._tasks)
            await asyncio.gather(*pending, return_exceptions=True)
            self._tasks.difference_update(pending)


class TimerHandle:
    """Handle to a scheduled callback. ``cancel()`` is idempotent."""

    def __init__(self, cancel_fn: Optional[Callable[[], None]] = None):
        self._cancel_fn = cancel_fn
        self._cancelled = False
        self._fired = False

    @property
    def active(self) -> bool:
        return not (self._cancelled or self._fired)

    def cancel(self) -> None:
        if not self.active:
            return
        self._cancelled = True
        if self._cancel_fn:
            self._cancel_fn()

    def _mark_fired(self) -> None:
        self._fired = True


class Clock:
    """Abstract time source: wall time in epoch milliseconds plus one-shot timers."""

    def now_ms(self) -> int:
        raise NotImplementedError

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        raise NotImplementedError

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        """Repeat ``callback`` every ``interval`` seconds until the handle is cancelled"""
        handle = TimerHandle()
        current: List[TimerHandle] = []

        def tick():
            if not handle.active:
                return
            current.clear()
            current.append(self.call_later(interval, tick))
            callback()

        current.append(self.call_later(interval, tick))
        handle._cancel_fn = lambda: [h.cancel() for h in current]
        return handle


class AsyncioClock(Clock):
    """Real clock backed by the running event loop"""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        handle = TimerHandle()

        def run():
            handle._mark_fired()
            callback()

        timer = loop.call_later(delay, run)
        handle._cancel_fn = timer.cancel
        return handle


class ManualClock(Clock):
    """Virtual clock. Time only moves when ``advance()`` is called."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self._now_ms = start_ms
        self._queue: List[Tuple[int, int, TimerHandle, Callable[[], None]]] = []
        self._seq = itertools.count()

    def now_ms(self) -> int:
        return self._now_ms

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle()
        due = self._now_ms + int(delay * 1000)
        heapq.heappush(self._queue, (due, next(self._seq), handle, callback))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, handle, _ in self._queue if handle.active)

    def advance(self, seconds: float) -> None:
        """Move time forward, firing due callbacks in order"""
        target = self._now_ms + int(seconds * 1000)
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._queue)
            self._now_ms = max(self._now_ms, due)
            if handle.active:
                handle._mark_fired()
                callback()
        self._now_ms = target
