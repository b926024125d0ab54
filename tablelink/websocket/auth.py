"""
Authentication handshake performed right after the transport opens.

The client sends ``{"type": "auth", "token": ...}`` and waits for either
``auth_success`` (carrying the session details) or ``auth_error``. The
handshake is one-shot: after the first outcome, further auth replies are
ignored.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from tablelink.utils.logger import get_logger
from tablelink.websocket.clock import Clock, TimerHandle
from tablelink.websocket.events.events import (
    AuthErrorEvent,
    AuthSuccessEvent,
    BaseEvent,
    auth,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionInfo:
    """Session details assigned by the server on auth_success."""

    session_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_event(cls, event: AuthSuccessEvent) -> "SessionInfo":
        session_id = event.session.get("sessionId", event.session.get("session_id"))
        return cls(
            session_id=str(session_id) if session_id is not None else None,
            data=dict(event.session),
        )


class AuthHandshake:
    """
    One-shot token exchange for a single connection attempt.

    Args:
        clock: Clock used for the response timeout
        token: Opaque token to present to the server
        timeout_ms: How long to wait for the server's verdict
        send: Puts a text frame on the wire
        on_success: Called with the SessionInfo on acceptance
        on_failure: Called with the server's reason on rejection
        on_timeout: Called when no verdict arrives in time
    """

    def __init__(
        self,
        clock: Clock,
        token: str,
        timeout_ms: int,
        send: Callable[[str], None],
        on_success: Callable[[SessionInfo], None],
        on_failure: Callable[[Any], None],
        on_timeout: Callable[[], None],
    ) -> None:
        self._clock = clock
        self._token = token
        self._timeout_ms = timeout_ms
        self._send = send
        self._on_success = on_success
        self._on_failure = on_failure
        self._on_timeout = on_timeout

        self._timer: Optional[TimerHandle] = None
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def start(self) -> None:
        self._timer = self._clock.call_later(self._timeout_ms, self._expire)
        self._send(auth(self._token).to_json())
        logger.debug("Auth message sent; awaiting verdict")

    def cancel(self) -> None:
        self._done = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def handle(self, event: Optional[BaseEvent]) -> bool:
        """
        Offer a received control event to the handshake.

        Returns:
            bool: True if the event was an auth verdict and has been consumed
        """
        if not isinstance(event, (AuthSuccessEvent, AuthErrorEvent)):
            return False
        if self._done:
            logger.warning(f"Ignoring late {event.type} after handshake completed")
            return True
        self.cancel()
        if isinstance(event, AuthSuccessEvent):
            self._on_success(SessionInfo.from_event(event))
        else:
            self._on_failure(event.error)
        return True

    def _expire(self) -> None:
        if self._done:
            return
        self._done = True
        self._timer = None
        logger.warning(f"No auth verdict within {self._timeout_ms}ms")
        self._on_timeout()
