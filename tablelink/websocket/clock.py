"""
Timer abstraction used by the connection layer.

Every delay in tablelink (auth timeout, reconnect backoff, heartbeat interval
and ping timeout) is scheduled through a Clock. AsyncioClock schedules on the
running event loop; VirtualClock keeps its own time and only moves when
advance() is called, which lets tests step through reconnect and heartbeat
scenarios without waiting on the wall clock.
"""

import asyncio
import heapq
import itertools
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Protocol, Tuple


class TimerHandle(Protocol):
    """Anything with a cancel() method; asyncio.TimerHandle satisfies this."""

    def cancel(self) -> None: ...


class Clock(ABC):
    """Schedules delayed callbacks and reports the current time in milliseconds."""

    @abstractmethod
    def now(self) -> float:
        """Current time in milliseconds."""

    @abstractmethod
    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once after ``delay_ms`` milliseconds."""


class AsyncioClock(Clock):
    """
    Clock backed by the running asyncio event loop.

    now() reads time.monotonic() while no loop is running; timers always
    need one.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        if self._loop is None:
            try:
                self._loop = asyncio.get_running_loop()
            except RuntimeError:
                # No loop yet, e.g. a message queued before connect().
                return time.monotonic() * 1000.0
        return self._loop.time() * 1000.0

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self._get_loop().call_later(max(delay_ms, 0) / 1000.0, callback)


class VirtualTimer:
    """Timer scheduled on a VirtualClock."""

    __slots__ = ("when", "callback", "cancelled")

    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class VirtualClock(Clock):
    """
    Manually advanced clock.

    Timers fire in order of their due time; timers due at the same instant
    fire in the order they were scheduled. Callbacks may schedule further
    timers, which fire within the same advance() call if they fall due
    inside the window.
    """

    def __init__(self, start_ms: float = 0.0) -> None:
        self._now = start_ms
        self._seq = itertools.count()
        self._timers: List[Tuple[float, int, VirtualTimer]] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> VirtualTimer:
        timer = VirtualTimer(self._now + max(delay_ms, 0), callback)
        heapq.heappush(self._timers, (timer.when, next(self._seq), timer))
        return timer

    def advance(self, delta_ms: float) -> int:
        """
        Move time forward by ``delta_ms`` and fire every timer that falls due.

        Returns:
            int: The number of callbacks that ran
        """
        if delta_ms < 0:
            raise ValueError("Cannot move a VirtualClock backwards")
        target = self._now + delta_ms
        fired = 0
        while self._timers and self._timers[0][0] <= target:
            when, _, timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = when
            fired += 1
            timer.callback()
        self._now = target
        return fired

    def pending(self) -> int:
        """Number of scheduled timers that have not fired or been cancelled."""
        return sum(1 for _, _, timer in self._timers if not timer.cancelled)
