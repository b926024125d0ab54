"""
Connection Manager module: the resilient session connection.

This module provides the ConnectionManager class which:
- Opens a transport to the session server and authenticates with a token
- Queues outbound messages while the connection is not usable and flushes
  them, in order, after the next successful auth
- Runs an optional ping/pong heartbeat to catch silently dead sockets
- Reconnects with exponential backoff after unexpected losses, up to a
  configurable number of attempts
- Publishes every state change and outcome on an EventEmitter

All stimuli (consumer calls, transport callbacks, timer expiries) go through
a single transition() entry point that looks up the handler for the current
state in a transition table. Public methods never block and never raise for
expected connection failures; those are reported as events.
"""

from typing import Any, Callable, Dict, Mapping, Optional, Union

from tablelink.config.config import Config
from tablelink.exceptions import EnvelopeError, TransportError, ValidationError
from tablelink.utils.logger import get_logger
from tablelink.websocket.auth import AuthHandshake, SessionInfo
from tablelink.websocket.clock import AsyncioClock, Clock, TimerHandle
from tablelink.websocket.connection_state import ConnectionDescriptor, ConnectionState
from tablelink.websocket.event_emitter import EventEmitter
from tablelink.websocket.events.events import (
    BaseEvent,
    PongEvent,
    decode_frame,
    encode_frame,
    ping,
)
from tablelink.websocket.heartbeat import HeartbeatMonitor
from tablelink.websocket.message_queue import MessageQueue
from tablelink.websocket.reconnect_policy import ReconnectPolicy
from tablelink.websocket.transport import (
    MANUAL_CLOSE_CODE,
    TransportSocket,
    WebSocketTransport,
)

log = get_logger(__name__)

TransportFactory = Callable[[str], TransportSocket]


class ConnectionEvent:
    """Names of the stimuli accepted by ConnectionManager.transition()."""

    CONNECT = "connect"
    DISCONNECT = "disconnect"
    TRANSPORT_OPEN = "transport_open"
    TRANSPORT_CLOSED = "transport_closed"
    TRANSPORT_ERROR = "transport_error"
    AUTH_SUCCESS = "auth_success"
    AUTH_ERROR = "auth_error"
    AUTH_TIMEOUT = "auth_timeout"
    PING_TIMEOUT = "ping_timeout"
    RETRY_DUE = "retry_due"


S = ConnectionState
E = ConnectionEvent

# (state, event) -> handler method name. Pairs missing from the table are ignored.
TRANSITIONS: Dict[tuple, str] = {
    (S.IDLE, E.CONNECT): "_start_fresh",
    (S.CLOSED, E.CONNECT): "_start_fresh",
    (S.DISCONNECTED, E.CONNECT): "_start_fresh",
    (S.CONNECTING, E.TRANSPORT_OPEN): "_begin_auth",
    (S.CONNECTING, E.TRANSPORT_CLOSED): "_connection_lost",
    (S.CONNECTING, E.TRANSPORT_ERROR): "_transport_failed",
    (S.AUTHENTICATING, E.TRANSPORT_CLOSED): "_connection_lost",
    (S.AUTHENTICATING, E.TRANSPORT_ERROR): "_transport_failed",
    (S.AUTHENTICATING, E.AUTH_SUCCESS): "_auth_succeeded",
    (S.AUTHENTICATING, E.AUTH_ERROR): "_auth_rejected",
    (S.AUTHENTICATING, E.AUTH_TIMEOUT): "_auth_timed_out",
    (S.CONNECTED, E.TRANSPORT_CLOSED): "_connection_lost",
    (S.CONNECTED, E.TRANSPORT_ERROR): "_transport_failed",
    (S.CONNECTED, E.PING_TIMEOUT): "_ping_timed_out",
    (S.DISCONNECTED, E.RETRY_DUE): "_retry",
}


class ConnectionManager:
    """
    Orchestrates transport, auth, queue, heartbeat and reconnection.

    This is the only component external collaborators talk to: they call
    connect(), disconnect() and send(), and subscribe to events with on().
    The default clock and transport need a running asyncio event loop;
    tests inject a VirtualClock and an in-memory transport instead.
    """

    def __init__(
        self,
        url: str,
        token: Optional[str],
        *,
        clock: Optional[Clock] = None,
        transport_factory: Optional[TransportFactory] = None,
        emitter: Optional[EventEmitter] = None,
        max_reconnect_attempts: int = Config.MAX_RECONNECT_ATTEMPTS,
        max_queue_size: int = Config.MAX_QUEUE_SIZE,
        auth_timeout_ms: int = Config.AUTH_TIMEOUT_MS,
        base_delay_ms: int = Config.RECONNECT_BASE_DELAY_MS,
        max_delay_ms: int = Config.RECONNECT_MAX_DELAY_MS,
    ) -> None:
        """
        Initialize the ConnectionManager.

        Args:
            url: WebSocket endpoint of the session server
            token: Opaque auth token presented after the transport opens
            clock: Timer source, defaults to the running asyncio loop
            transport_factory: Builds one TransportSocket per attempt
            emitter: Event hub to publish on, a private one by default
            max_reconnect_attempts: Retries after a loss before giving up
            max_queue_size: Bound on messages held while disconnected
            auth_timeout_ms: How long to wait for the auth verdict
            base_delay_ms: Backoff before the first retry
            max_delay_ms: Upper bound on the backoff

        Raises:
            ValidationError: If any limit or timing is invalid
        """
        if not url:
            raise ValidationError("url must be a non-empty string")
        if auth_timeout_ms <= 0:
            raise ValidationError("auth_timeout_ms must be positive")

        self._url = url
        self._token = token
        self._clock = clock or AsyncioClock()
        self._transport_factory = transport_factory or WebSocketTransport
        self._emitter = emitter or EventEmitter()
        self._policy = ReconnectPolicy(
            base_delay_ms=base_delay_ms,
            max_delay_ms=max_delay_ms,
            max_attempts=max_reconnect_attempts,
        )
        self._queue = MessageQueue(max_queue_size, time_source=self._clock.now)
        self._auth_timeout_ms = auth_timeout_ms

        self._heartbeat_config: Optional[tuple] = None
        if Config.HEARTBEAT_INTERVAL_MS and Config.HEARTBEAT_TIMEOUT_MS:
            self.enable_heartbeat(Config.HEARTBEAT_INTERVAL_MS, Config.HEARTBEAT_TIMEOUT_MS)

        self._state = ConnectionState.IDLE
        self._reconnect_attempts = 0
        self._session: Optional[SessionInfo] = None
        self._transport: Optional[TransportSocket] = None
        self._handshake: Optional[AuthHandshake] = None
        self._heartbeat: Optional[HeartbeatMonitor] = None
        self._retry_timer: Optional[TimerHandle] = None

    @classmethod
    def for_session(
        cls, session_id: str, token: Optional[str] = None, **kwargs: Any
    ) -> "ConnectionManager":
        """Build a manager for ``session_id`` on the configured session server."""
        token = token if token is not None else Config.SESSION_TOKEN
        return cls(Config.session_url(session_id), token, **kwargs)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Start connecting (idempotent while a connection is live or in progress)."""
        self.transition(ConnectionEvent.CONNECT)

    def disconnect(self) -> None:
        """Tear everything down; no automatic reconnection follows."""
        self.transition(ConnectionEvent.DISCONNECT)

    def send(self, message: Mapping[str, Any]) -> bool:
        """
        Send an application envelope, or queue it if not connected.

        Args:
            message: A mapping with a string ``type`` key

        Returns:
            bool: True if handed to the transport, False if queued

        Raises:
            ValidationError: If ``message`` is not a valid envelope
        """
        if not isinstance(message, Mapping) or not isinstance(message.get("type"), str):
            raise ValidationError(
                f"message must be a mapping with a string 'type', got {message!r}"
            )
        if self._state == ConnectionState.CONNECTED and self._transport is not None:
            try:
                self._transport.send(encode_frame(message))
                log.debug(f"Sent message: {message['type']}")
                return True
            except TransportError as e:
                log.warning(f"Transport refused {message['type']}: {e}; queueing")
        self._queue.enqueue(message)
        log.debug(f"Queued message: {message['type']} (queue size {len(self._queue)})")
        return False

    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def is_reconnecting(self) -> bool:
        """True from a loss until the next successful auth, while retries remain."""
        if self._state == ConnectionState.RECONNECTING:
            return True
        if self._state == ConnectionState.DISCONNECTED:
            return self._retry_timer is not None
        return self._reconnect_attempts > 0 and self._state in (
            ConnectionState.CONNECTING,
            ConnectionState.AUTHENTICATING,
        )

    def set_max_reconnect_attempts(self, n: int) -> None:
        self._policy.set_max_attempts(n)

    def set_max_queue_size(self, n: int) -> None:
        self._queue.max_size = n

    def enable_heartbeat(self, interval_ms: int, timeout_ms: int) -> None:
        """Turn on ping/pong liveness checks from the next successful auth."""
        if interval_ms <= 0 or timeout_ms <= 0:
            raise ValidationError(
                f"Heartbeat interval and timeout must be positive, got {interval_ms}/{timeout_ms}"
            )
        self._heartbeat_config = (interval_ms, timeout_ms)

    def disable_heartbeat(self) -> None:
        self._heartbeat_config = None

    def set_token(self, token: Optional[str]) -> None:
        """Replace the auth token used by the next connection attempt."""
        self._token = token

    def on(self, channel: str, handler: Callable[..., Any]) -> Callable[[], None]:
        return self._emitter.on(channel, handler)

    def off(self, channel: str, handler: Callable[..., Any]) -> None:
        self._emitter.off(channel, handler)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        """Retries fired since the last successful auth or manual disconnect."""
        return self._reconnect_attempts

    @property
    def session(self) -> Optional[SessionInfo]:
        return self._session

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def max_reconnect_attempts(self) -> int:
        return self._policy.max_attempts

    @property
    def max_queue_size(self) -> int:
        return self._queue.max_size

    @property
    def descriptor(self) -> ConnectionDescriptor:
        return ConnectionDescriptor(
            url=self._url,
            token=self._token,
            state=self._state,
            reconnect_attempts=self._reconnect_attempts,
            session=self._session,
        )

    def get_health_metrics(self) -> dict:
        """
        Get health metrics for the connection.

        Returns:
            dict: A snapshot useful for monitoring and debugging
        """
        heartbeat = self._heartbeat.state if self._heartbeat else None
        return {
            "state": self._state.name,
            "connected": self.is_connected(),
            "reconnecting": self.is_reconnecting(),
            "reconnect_attempts": self._reconnect_attempts,
            "max_reconnect_attempts": self._policy.max_attempts,
            "queued_messages": len(self._queue),
            "max_queue_size": self._queue.max_size,
            "has_transport": self._transport is not None,
            "session_id": self._session.session_id if self._session else None,
            "heartbeat_enabled": self._heartbeat_config is not None,
            "last_pong_at": heartbeat.last_pong_at if heartbeat else None,
            "ping_in_flight": bool(heartbeat and heartbeat.pending_ping_id is not None),
        }

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def transition(self, event: str, data: Any = None) -> bool:
        """
        Feed one stimulus into the state machine.

        Returns:
            bool: True if the event was handled in the current state
        """
        if event == ConnectionEvent.DISCONNECT:
            self._shutdown()
            return True

        handler_name = TRANSITIONS.get((self._state, event))
        if handler_name is None:
            log.debug(f"Ignoring {event} in state {self._state.name}")
            return False
        getattr(self, handler_name)(data)
        return True

    def _set_state(self, new_state: ConnectionState) -> bool:
        """
        Move to ``new_state`` and announce it.

        Returns:
            bool: False if a state_change handler moved the machine elsewhere
            (e.g. by calling disconnect()), in which case the caller must stop
        """
        old_state = self._state
        if old_state == new_state:
            return True
        log.info(f"Connection state transition: {old_state.name} → {new_state.name}")
        self._state = new_state
        self._emitter.emit("state_change", new_state)
        return self._state == new_state

    def _start_fresh(self, _data: Any = None) -> None:
        self._cancel_retry()
        self._reconnect_attempts = 0
        if self._set_state(ConnectionState.CONNECTING):
            self._open_transport()

    def _retry(self, _data: Any = None) -> None:
        self._retry_timer = None
        self._reconnect_attempts += 1
        log.info(
            f"Reconnect attempt {self._reconnect_attempts}/{self._policy.max_attempts} → {self._url}"
        )
        if not self._set_state(ConnectionState.RECONNECTING):
            return
        if self._set_state(ConnectionState.CONNECTING):
            self._open_transport()

    def _begin_auth(self, _data: Any = None) -> None:
        if not self._set_state(ConnectionState.AUTHENTICATING):
            return
        transport = self._transport
        self._handshake = AuthHandshake(
            clock=self._clock,
            token=self._token or "",
            timeout_ms=self._auth_timeout_ms,
            send=transport.send,
            on_success=lambda session: self.transition(ConnectionEvent.AUTH_SUCCESS, session),
            on_failure=lambda reason: self.transition(ConnectionEvent.AUTH_ERROR, reason),
            on_timeout=lambda: self.transition(ConnectionEvent.AUTH_TIMEOUT),
        )
        self._handshake.start()

    def _auth_succeeded(self, session: SessionInfo) -> None:
        self._handshake = None
        self._session = session
        self._reconnect_attempts = 0

        # Queued traffic must precede anything sent from a state_change handler.
        pending = self._queue.flush()
        for payload in pending:
            self._transport.send(encode_frame(payload))
        if pending:
            log.info(f"Flushed {len(pending)} queued message(s)")

        if not self._set_state(ConnectionState.CONNECTED):
            return
        self._start_heartbeat()
        self._emitter.emit("connected", session)

    def _auth_rejected(self, reason: Any) -> None:
        log.error(f"Authentication rejected: {reason}")
        self._handshake = None
        self._discard_transport()
        self._set_state(ConnectionState.CLOSED)
        self._emitter.emit("auth_error", reason)

    def _auth_timed_out(self, _data: Any = None) -> None:
        self._handshake = None
        self._emitter.emit(
            "error", {"type": "auth_timeout", "timeout_ms": self._auth_timeout_ms}
        )
        self._connection_lost({"code": None, "reason": "auth timeout"})

    def _ping_timed_out(self, _data: Any = None) -> None:
        self._emitter.emit("ping_timeout")
        self._connection_lost({"code": None, "reason": "ping timeout"})

    def _transport_failed(self, exc: Exception) -> None:
        self._emitter.emit("error", {"type": "transport_error", "detail": str(exc)})
        self._connection_lost({"code": None, "reason": str(exc)})

    def _connection_lost(self, info: Optional[dict]) -> None:
        info = info or {"code": None, "reason": ""}
        log.warning(
            f"Connection lost in {self._state.name} (code {info.get('code')}): {info.get('reason')}"
        )
        self._teardown_attempt()
        if not self._set_state(ConnectionState.DISCONNECTED):
            return
        self._emitter.emit("disconnected", info)
        if self._state == ConnectionState.DISCONNECTED:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if not self._policy.can_retry(self._reconnect_attempts):
            log.error(
                f"Giving up after {self._reconnect_attempts} reconnect attempt(s)"
            )
            self._set_state(ConnectionState.CLOSED)
            self._emitter.emit("max_reconnect_reached")
            return

        delay_ms = self._policy.delay(self._reconnect_attempts)
        log.warning(
            f"Reconnecting in {delay_ms}ms (attempt {self._reconnect_attempts + 1}/{self._policy.max_attempts})"
        )
        self._retry_timer = self._clock.call_later(
            delay_ms, lambda: self.transition(ConnectionEvent.RETRY_DUE)
        )
        self._emitter.emit("reconnecting", delay_ms)

    def _shutdown(self) -> None:
        self._cancel_retry()
        self._teardown_attempt()
        self._reconnect_attempts = 0
        self._session = None
        self._set_state(ConnectionState.IDLE)

    # ------------------------------------------------------------------
    # Transport plumbing
    # ------------------------------------------------------------------

    def _open_transport(self) -> None:
        self._discard_transport()
        transport = self._transport_factory(self._url)

        # Events from a transport we have since replaced are dropped.
        def guard(event: str, build: Callable[..., Any] = lambda *a: None):
            def callback(*args: Any) -> None:
                if transport is self._transport:
                    self.transition(event, build(*args))

            return callback

        transport.bind(
            on_open=guard(ConnectionEvent.TRANSPORT_OPEN),
            on_message=lambda frame: self._handle_frame(transport, frame),
            on_close=guard(
                ConnectionEvent.TRANSPORT_CLOSED,
                lambda code, reason: {"code": code, "reason": reason},
            ),
            on_error=guard(ConnectionEvent.TRANSPORT_ERROR, lambda exc: exc),
        )
        self._transport = transport
        transport.open()

    def _discard_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.unbind()
            transport.close(MANUAL_CLOSE_CODE, "client closing")

    def _teardown_attempt(self) -> None:
        if self._handshake is not None:
            self._handshake.cancel()
            self._handshake = None
        if self._heartbeat is not None:
            self._heartbeat.stop()
            self._heartbeat = None
        self._discard_transport()

    def _cancel_retry(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _start_heartbeat(self) -> None:
        if self._heartbeat_config is None:
            return
        interval_ms, timeout_ms = self._heartbeat_config
        transport = self._transport
        self._heartbeat = HeartbeatMonitor(
            clock=self._clock,
            interval_ms=interval_ms,
            timeout_ms=timeout_ms,
            send_ping=lambda: transport.send(ping().to_json()),
            on_timeout=lambda: self.transition(ConnectionEvent.PING_TIMEOUT),
        )
        self._heartbeat.start()

    def _handle_frame(self, transport: TransportSocket, frame: Union[str, bytes]) -> None:
        if transport is not self._transport:
            return
        try:
            envelope = decode_frame(frame)
        except EnvelopeError as e:
            log.error(f"Failed to decode frame: {e}")
            self._emitter.emit("error", {"type": "parse_error", "detail": e.message})
            return

        event = BaseEvent.from_json(envelope)
        if self._handshake is not None and self._handshake.handle(event):
            return
        if isinstance(event, PongEvent):
            if self._heartbeat is not None:
                self._heartbeat.handle_pong()
            return
        if event is not None:
            log.debug(f"Ignoring unexpected control envelope {event.type}")
            return
        if self._state != ConnectionState.CONNECTED:
            log.warning(
                f"Dropping {envelope['type']} received before authentication completed"
            )
            return
        self._emitter.emit("message", envelope)
