"""Timer scheduling for session timeouts.

All timers in the engine (idle expiry, auto-finalize, delayed removal, UI
settle/retry) go through a Scheduler so tests can drive virtual time with
ManualScheduler instead of sleeping.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def now_ms(self) -> int: ...

    def call_later(self, delay_ms: int, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioScheduler:
    """Scheduler backed by the running event loop.

    now_ms() is wall-clock epoch milliseconds so it lines up with the
    timestamps native events carry.
    """

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def call_later(self, delay_ms: int, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(delay_ms, 0) / 1000.0, callback)


class ManualTimer:
    def __init__(self, deadline_ms: int, callback: Callable[[], None]):
        self.deadline_ms = deadline_ms
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Deterministic scheduler for tests and replays.

    Time only moves when advance()/advance_to() is called.  Due callbacks run
    synchronously in deadline order (ties in scheduling order), including
    callbacks scheduled by other callbacks that fall inside the advanced span.
    """

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self._now_ms = start_ms
        self._queue: list[tuple[int, int, ManualTimer]] = []
        self._seq = itertools.count()

    def now_ms(self) -> int:
        return self._now_ms

    def call_later(self, delay_ms: int, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(self._now_ms + max(delay_ms, 0), callback)
        heapq.heappush(self._queue, (timer.deadline_ms, next(self._seq), timer))
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for _, _, t in self._queue if not t.cancelled)

    def advance(self, ms: int) -> int:
        if ms < 0:
            raise ValueError("ManualScheduler.advance(ms): ms must be >= 0")
        return self.advance_to(self._now_ms + ms)

    def advance_to(self, target_ms: int) -> int:
        """Move time forward to target_ms. Returns the number of callbacks fired."""
        fired = 0
        while self._queue and self._queue[0][0] <= target_ms:
            deadline, _, timer = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self._now_ms = max(self._now_ms, deadline)
            timer.fired = True
            timer.callback()
            fired += 1
        self._now_ms = max(self._now_ms, target_ms)
        return fired
