"""
Custom exception hierarchy for tablelink.

Expected connection failures are reported through emitted events, never raised.
The exceptions below cover programmer errors (bad configuration, invalid
arguments) and the few internal failures that the connection layer catches
and converts into events.
"""

from typing import Optional


class TableLinkError(Exception):
    """Base exception for all tablelink-specific errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.original_error = original_error

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class ConfigurationError(TableLinkError):
    """Raised when there are configuration-related errors."""

    pass


class ValidationError(TableLinkError):
    """Raised when an argument passed to the public API is invalid."""

    pass


class EnvelopeError(TableLinkError):
    """Raised when a frame cannot be decoded into a ``{type, ...}`` envelope."""

    pass


class TransportError(TableLinkError):
    """Raised when a transport is used outside of its open lifetime."""

    pass
