"""
Bounded FIFO buffer for outbound messages sent while the connection is down.

When the queue is full the oldest entry is evicted to admit the new one, one
entry per insert, so the queue always holds the most recent ``max_size``
messages in their original order.
"""

from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, List, Mapping, Optional

from tablelink.exceptions import ValidationError
from tablelink.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class QueuedMessage:
    """An application payload waiting for delivery."""

    payload: Mapping[str, Any]
    enqueued_at: float  # Clock time in milliseconds.


class MessageQueue:
    """
    Bounded FIFO queue of outbound application messages.

    Args:
        max_size: Maximum number of entries held at once (>= 1)
        time_source: Returns the current time in milliseconds, used to stamp entries
    """

    def __init__(
        self, max_size: int, time_source: Optional[Callable[[], float]] = None
    ) -> None:
        self._validate_size(max_size)
        self._max_size = max_size
        self._time_source = time_source or (lambda: 0.0)
        self._entries: Deque[QueuedMessage] = deque()

    @staticmethod
    def _validate_size(max_size: int) -> None:
        if isinstance(max_size, bool) or not isinstance(max_size, int) or max_size < 1:
            raise ValidationError(
                f"max_queue_size must be a positive integer, got {max_size!r}"
            )

    @property
    def max_size(self) -> int:
        return self._max_size

    @max_size.setter
    def max_size(self, value: int) -> None:
        """Change the bound, dropping the oldest entries if the queue is now too long."""
        self._validate_size(value)
        self._max_size = value
        dropped = 0
        while len(self._entries) > self._max_size:
            self._entries.popleft()
            dropped += 1
        if dropped:
            logger.warning(
                f"Queue shrunk to {value}; dropped {dropped} oldest message(s)"
            )

    def enqueue(self, payload: Mapping[str, Any]) -> Optional[QueuedMessage]:
        """
        Append a message, evicting the oldest one if the queue is full.

        Returns:
            QueuedMessage: The evicted entry, or None if nothing was evicted
        """
        evicted = None
        if len(self._entries) >= self._max_size:
            evicted = self._entries.popleft()
            logger.warning(
                f"Outbound queue full ({self._max_size}); "
                f"dropped oldest message of type {evicted.payload.get('type')!r}"
            )
        self._entries.append(QueuedMessage(payload, self._time_source()))
        return evicted

    def flush(self) -> List[Mapping[str, Any]]:
        """Remove and return every queued payload in enqueue order."""
        payloads = [entry.payload for entry in self._entries]
        self._entries.clear()
        return payloads

    def peek(self) -> List[QueuedMessage]:
        """Return the queued entries without removing them."""
        return list(self._entries)

    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
