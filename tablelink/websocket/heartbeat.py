"""
Heartbeat monitor for detecting silently dead connections.

While running, the monitor sends a ping every ``interval_ms`` and expects a
pong within ``timeout_ms``. Only one ping is ever in flight: an interval tick
that finds a ping still pending sends nothing. A missed pong stops the
monitor and reports the timeout to its owner.
"""

import itertools
from dataclasses import dataclass
from typing import Callable, Optional

from tablelink.exceptions import ValidationError
from tablelink.utils.logger import get_logger
from tablelink.websocket.clock import Clock, TimerHandle

logger = get_logger(__name__)


@dataclass
class HeartbeatState:
    interval_ms: int
    timeout_ms: int
    last_pong_at: Optional[float] = None
    pending_ping_id: Optional[int] = None


class HeartbeatMonitor:
    """
    Drives periodic pings and detects missed pongs.

    Args:
        clock: Clock used for the interval and timeout timers
        interval_ms: Time between pings
        timeout_ms: How long to wait for the pong to each ping
        send_ping: Called to put a ping on the wire
        on_timeout: Called once when a pong does not arrive in time
    """

    def __init__(
        self,
        clock: Clock,
        interval_ms: int,
        timeout_ms: int,
        send_ping: Callable[[], None],
        on_timeout: Callable[[], None],
    ) -> None:
        if interval_ms <= 0 or timeout_ms <= 0:
            raise ValidationError(
                f"Heartbeat interval and timeout must be positive, got {interval_ms}/{timeout_ms}"
            )
        self._clock = clock
        self._send_ping = send_ping
        self._on_timeout = on_timeout
        self.state = HeartbeatState(interval_ms=interval_ms, timeout_ms=timeout_ms)

        self._ping_ids = itertools.count(1)
        self._interval_timer: Optional[TimerHandle] = None
        self._timeout_timer: Optional[TimerHandle] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.state.pending_ping_id = None
        self._schedule_tick()
        logger.debug(
            f"Heartbeat started (interval {self.state.interval_ms}ms, timeout {self.state.timeout_ms}ms)"
        )

    def stop(self) -> None:
        """Cancel both timers and forget the pending ping."""
        self._running = False
        for timer in (self._interval_timer, self._timeout_timer):
            if timer is not None:
                timer.cancel()
        self._interval_timer = None
        self._timeout_timer = None
        self.state.pending_ping_id = None

    def handle_pong(self) -> None:
        """Record a pong from the server, clearing the pending ping."""
        if self.state.pending_ping_id is None:
            logger.debug("Ignoring pong with no ping in flight")
            return
        if self._timeout_timer is not None:
            self._timeout_timer.cancel()
            self._timeout_timer = None
        self.state.pending_ping_id = None
        self.state.last_pong_at = self._clock.now()

    def _schedule_tick(self) -> None:
        self._interval_timer = self._clock.call_later(self.state.interval_ms, self._tick)

    def _tick(self) -> None:
        if not self._running:
            return
        self._schedule_tick()
        if self.state.pending_ping_id is not None:
            logger.debug(
                f"Ping {self.state.pending_ping_id} still in flight; skipping this interval"
            )
            return
        self.state.pending_ping_id = next(self._ping_ids)
        self._timeout_timer = self._clock.call_later(self.state.timeout_ms, self._expire)
        self._send_ping()

    def _expire(self) -> None:
        if not self._running:
            return
        logger.warning(
            f"No pong for ping {self.state.pending_ping_id} within {self.state.timeout_ms}ms"
        )
        self.stop()
        self._on_timeout()
