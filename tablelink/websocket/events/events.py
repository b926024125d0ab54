"""
Envelope codec and control events for the session socket.

Every frame exchanged with the session server is a JSON object of the form
``{"type": "<name>", ...}``. This module provides:
- decode_frame / encode_frame to move between raw text frames and envelopes
- A base event class (BaseEvent) for the control envelopes the connection
  layer itself understands (auth, ping/pong)
- A registration system mapping control type names to their classes

Application-defined envelopes are not registered here; they are handed to
the consumer as plain dictionaries.
"""

import json
from dataclasses import dataclass, asdict, field, fields
from typing import Dict, Any, Mapping, Optional, Type, Union

from tablelink.exceptions import EnvelopeError
from tablelink.utils.logger import get_logger

logger = get_logger(__name__)

# Global registry mapping control envelope types (e.g., "auth_success")
# to their corresponding event dataclass (e.g., AuthSuccessEvent).
EVENT_TYPE_MAPPING: Dict[str, Type["BaseEvent"]] = {}


def register_event(event_type: str):
    """
    Decorator to register an event class with a specific envelope type.

    Args:
        event_type: The ``type`` value this class represents on the wire

    Returns:
        A decorator function that registers the class and returns it unchanged
    """

    def wrapper(cls):
        EVENT_TYPE_MAPPING[event_type] = cls
        return cls

    return wrapper


def decode_frame(raw: Union[str, bytes]) -> Dict[str, Any]:
    """
    Parse a raw text frame into an envelope dictionary.

    Raises:
        EnvelopeError: If the frame is not UTF-8 JSON, not an object, or has
            no string ``type`` field.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EnvelopeError("Frame is not valid UTF-8", "parse_error", e) from e
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise EnvelopeError(f"Frame is not valid JSON: {e}", "parse_error", e) from e
    if not isinstance(data, dict):
        raise EnvelopeError("Frame is not a JSON object", "parse_error")
    if not isinstance(data.get("type"), str):
        raise EnvelopeError("Frame has no string 'type' field", "parse_error")
    return data


def encode_frame(envelope: Mapping[str, Any]) -> str:
    """Serialize an envelope to a text frame."""
    return json.dumps(dict(envelope))


@dataclass
class BaseEvent:
    """
    Base class for control envelopes.

    Subclasses declare their payload fields as dataclass fields; ``type``
    is always the first field.
    """

    type: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        """Convert the event to a JSON text frame."""
        return encode_frame(self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BaseEvent":
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})

    @staticmethod
    def from_json(data: Mapping[str, Any]) -> Optional["BaseEvent"]:
        """
        Build a control event from a decoded envelope.

        Returns:
            BaseEvent: An instance of the registered subclass, or None if the
            envelope is application-defined or its fields do not fit.
        """
        event_class = EVENT_TYPE_MAPPING.get(data.get("type"))
        if event_class is None:
            return None
        try:
            return event_class.from_dict(data)
        except TypeError as e:
            logger.error(
                f"Failed to instantiate event {data.get('type')} with data {data}. "
                f"Missing or mismatched fields: {e}"
            )
            return None


@register_event("auth")
@dataclass
class AuthEvent(BaseEvent):
    """Sent by the client right after the transport opens."""

    token: str = ""


@register_event("auth_success")
@dataclass
class AuthSuccessEvent(BaseEvent):
    """Sent by the server when the token was accepted."""

    session: Dict[str, Any] = field(default_factory=dict)  # Every field except type.

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuthSuccessEvent":
        return cls(
            type=data["type"],
            session={k: v for k, v in data.items() if k != "type"},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, **self.session}


@register_event("auth_error")
@dataclass
class AuthErrorEvent(BaseEvent):
    """Sent by the server when the token was rejected."""

    error: Any = "unknown"


@register_event("ping")
@dataclass
class PingEvent(BaseEvent):
    """Heartbeat ping sent by the client."""

    pass


@register_event("pong")
@dataclass
class PongEvent(BaseEvent):
    """Heartbeat reply sent by the server."""

    pass


def ping() -> PingEvent:
    return PingEvent(type="ping")


def auth(token: str) -> AuthEvent:
    return AuthEvent(type="auth", token=token)
