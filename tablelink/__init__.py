"""
tablelink: resilient real-time connection to a tabletop session server.

The package exposes ConnectionManager, which keeps one authenticated
WebSocket connection alive, queues outbound messages during outages and
reports everything it does through events.
"""

from tablelink.websocket.auth import SessionInfo
from tablelink.websocket.clock import AsyncioClock, Clock, VirtualClock
from tablelink.websocket.connection_state import ConnectionDescriptor, ConnectionState
from tablelink.websocket.manager import ConnectionEvent, ConnectionManager

__all__ = [
    "AsyncioClock",
    "Clock",
    "ConnectionDescriptor",
    "ConnectionEvent",
    "ConnectionManager",
    "ConnectionState",
    "SessionInfo",
    "VirtualClock",
]
