"""
In-memory publish/subscribe hub for connection events.

Handlers run synchronously in subscription order. A handler that raises is
logged and skipped; the remaining handlers still receive the event.
"""

from collections import defaultdict
from typing import Any, Callable, DefaultDict, List

from tablelink.exceptions import ValidationError
from tablelink.utils.logger import get_logger

logger = get_logger(__name__)

CHANNELS = frozenset(
    {
        "state_change",  # (new_state: ConnectionState)
        "reconnecting",  # (delay_ms: int)
        "max_reconnect_reached",  # ()
        "auth_error",  # (reason)
        "error",  # (info: dict with a "type" key)
        "message",  # (payload: dict)
        "ping_timeout",  # ()
        "connected",  # (session: SessionInfo)
        "disconnected",  # (info: dict with "code" and "reason")
    }
)

Handler = Callable[..., Any]


class EventEmitter:
    """Typed channels with any number of subscribers each."""

    def __init__(self) -> None:
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)

    @staticmethod
    def _check_channel(channel: str) -> None:
        if channel not in CHANNELS:
            raise ValidationError(
                f"Unknown event channel {channel!r}; expected one of {sorted(CHANNELS)}"
            )

    def on(self, channel: str, handler: Handler) -> Callable[[], None]:
        """
        Subscribe ``handler`` to ``channel``.

        Returns:
            A callable that removes this subscription
        """
        self._check_channel(channel)
        self._handlers[channel].append(handler)
        return lambda: self.off(channel, handler)

    def once(self, channel: str, handler: Handler) -> Callable[[], None]:
        """Subscribe ``handler`` for a single delivery."""

        def wrapper(*args: Any) -> None:
            self.off(channel, wrapper)
            handler(*args)

        return self.on(channel, wrapper)

    def off(self, channel: str, handler: Handler) -> None:
        self._check_channel(channel)
        try:
            self._handlers[channel].remove(handler)
        except ValueError:
            pass

    def emit(self, channel: str, *args: Any) -> None:
        self._check_channel(channel)
        # Copy so handlers may (un)subscribe during delivery.
        for handler in list(self._handlers[channel]):
            try:
                handler(*args)
            except Exception as e:
                logger.error(f"Error in {channel} handler {handler!r}: {e}", exc_info=True)

    def listener_count(self, channel: str) -> int:
        self._check_channel(channel)
        return len(self._handlers[channel])
