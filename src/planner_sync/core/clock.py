from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from typing import Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock:
    """Time source and timer factory used by the cache and the scheduler."""

    def time(self) -> float:
        """Return wall-clock time in epoch seconds."""
        raise NotImplementedError

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        """Run `callback` once after `delay_seconds`. The returned handle cancels it."""
        raise NotImplementedError


class LoopClock(Clock):
    def time(self) -> float:
        return time.time()

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay_seconds), callback)


class _ManualTimer:
    __slots__ = ("due", "seq", "callback", "cancelled")

    def __init__(self, due: float, seq: int, callback: Callable[[], None]) -> None:
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def __lt__(self, other: _ManualTimer) -> bool:
        return (self.due, self.seq) < (other.due, other.seq)


class ManualClock(Clock):
    """
    A virtual clock that only moves when `advance` is called.

    Timers fire synchronously inside `advance`, in due-time order. Callbacks may
    schedule further timers; those fire in the same call if they fall due before
    the target time.
    """

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = start
        self._timers: list[_ManualTimer] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self._now

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _ManualTimer(self._now + max(0.0, delay_seconds), next(self._seq), callback)
        heapq.heappush(self._timers, timer)
        return timer

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while self._timers and self._timers[0].due <= target:
            timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = max(self._now, timer.due)
            timer.callback()
        self._now = target

    @property
    def pending_timers(self) -> int:
        return sum(1 for timer in self._timers if not timer.cancelled)
