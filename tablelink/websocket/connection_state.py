"""
Connection state module for the session connection.

This module defines the ConnectionState enum, the set of states the
ConnectionManager state machine moves between, and ConnectionDescriptor,
a read-only snapshot of a connection's identity and progress.
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from tablelink.websocket.auth import SessionInfo


class ConnectionState(Enum):
    """
    Enumeration of possible states for the session connection.

    States:
    - IDLE: Nothing is running; the initial state and the state after disconnect()
    - CONNECTING: A transport is being opened
    - AUTHENTICATING: The transport is open and the auth handshake is in flight
    - CONNECTED: Authenticated; traffic flows and the heartbeat runs
    - DISCONNECTED: The connection was lost; a retry may be pending
    - RECONNECTING: A scheduled retry is firing
    - CLOSED: Terminal failure (auth rejected or retries exhausted)
    """

    IDLE = auto()
    CONNECTING = auto()
    AUTHENTICATING = auto()
    CONNECTED = auto()
    DISCONNECTED = auto()
    RECONNECTING = auto()
    CLOSED = auto()


@dataclass(frozen=True)
class ConnectionDescriptor:
    """Snapshot of the connection: endpoint, token, state and session."""

    url: str
    token: Optional[str]
    state: ConnectionState
    reconnect_attempts: int
    session: Optional["SessionInfo"] = None
