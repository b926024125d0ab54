"""Shared fixtures for connection-layer tests: a virtual clock and an in-memory transport."""

import json
from typing import List

import pytest

from tablelink.websocket.clock import VirtualClock
from tablelink.websocket.manager import ConnectionManager
from tablelink.websocket.transport import MANUAL_CLOSE_CODE, TransportSocket


class FakeTransport(TransportSocket):
    """
    In-memory TransportSocket.

    Records what the client sends; the ``server_*`` helpers play the part
    of the session server and of the network.
    """

    def __init__(self, url: str) -> None:
        super().__init__(url)
        self.sent: List[str] = []
        self.open_calls = 0
        self.closed = False
        self.close_code = None

    def open(self) -> None:
        self.open_calls += 1

    def send(self, frame: str) -> None:
        self.sent.append(frame)

    def close(self, code: int = MANUAL_CLOSE_CODE, reason: str = "") -> None:
        self.closed = True
        self.close_code = code

    @property
    def sent_envelopes(self) -> List[dict]:
        return [json.loads(frame) for frame in self.sent]

    def sent_types(self) -> List[str]:
        return [envelope["type"] for envelope in self.sent_envelopes]

    def server_accept(self) -> None:
        self._notify_open()

    def server_send(self, payload) -> None:
        self._notify_message(payload if isinstance(payload, str) else json.dumps(payload))

    def server_auth_success(self, **session) -> None:
        self.server_send({"type": "auth_success", **session})

    def server_drop(self, code: int = 1006, reason: str = "network gone") -> None:
        self._notify_close(code, reason)

    def server_fail(self, exc: Exception = None) -> None:
        exc = exc or ConnectionRefusedError("connection refused")
        self._notify_error(exc)
        self._notify_close(1006, str(exc))


class TransportRecorder:
    """transport_factory that keeps every FakeTransport it builds."""

    def __init__(self) -> None:
        self.created: List[FakeTransport] = []

    def __call__(self, url: str) -> FakeTransport:
        transport = FakeTransport(url)
        self.created.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.created[-1]


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def transports() -> TransportRecorder:
    return TransportRecorder()


@pytest.fixture
def manager(clock: VirtualClock, transports: TransportRecorder) -> ConnectionManager:
    """A manager with default limits, wired to the virtual clock and fake transport."""
    return ConnectionManager(
        "ws://game.test/ws/session-1",
        "secret-token",
        clock=clock,
        transport_factory=transports,
        max_reconnect_attempts=5,
        max_queue_size=10,
        auth_timeout_ms=5000,
        base_delay_ms=1000,
        max_delay_ms=30000,
    )


@pytest.fixture
def events(manager: ConnectionManager) -> List[tuple]:
    """Every event the manager emits, as (channel, *args) tuples, in order."""
    recorded: List[tuple] = []
    for channel in (
        "state_change",
        "reconnecting",
        "max_reconnect_reached",
        "auth_error",
        "error",
        "message",
        "ping_timeout",
        "connected",
        "disconnected",
    ):
        manager.on(channel, lambda *args, _c=channel: recorded.append((_c, *args)))
    return recorded


def connect_and_authenticate(manager: ConnectionManager, transports: TransportRecorder, **session) -> FakeTransport:
    """Drive a manager from IDLE/CLOSED to CONNECTED over a fresh fake transport."""
    manager.connect()
    transport = transports.latest
    transport.server_accept()
    transport.server_auth_success(**session)
    return transport


@pytest.fixture
def establish(manager: ConnectionManager, transports: TransportRecorder):
    """Callable that connects ``manager`` and completes the auth handshake."""
    return lambda **session: connect_and_authenticate(manager, transports, **session)
