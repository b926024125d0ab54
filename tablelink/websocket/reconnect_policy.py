"""Exponential backoff policy for reconnection attempts."""

from dataclasses import dataclass

from tablelink.exceptions import ValidationError


@dataclass
class ReconnectPolicy:
    """
    Computes how long to wait before each retry and when to give up.

    Attempt 0 is the first automatic retry after a lost connection, not the
    initial connect(). The delay doubles with every attempt until it reaches
    ``max_delay_ms``.
    """

    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    max_attempts: int = 5

    def __post_init__(self) -> None:
        if self.base_delay_ms <= 0:
            raise ValidationError("base_delay_ms must be positive")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValidationError("max_delay_ms must be >= base_delay_ms")
        self._check_attempts(self.max_attempts)

    @staticmethod
    def _check_attempts(value: int) -> None:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(
                f"max_reconnect_attempts must be a non-negative integer, got {value!r}"
            )

    def set_max_attempts(self, value: int) -> None:
        self._check_attempts(value)
        self.max_attempts = value

    def delay(self, attempt: int) -> int:
        """Backoff in milliseconds before retry number ``attempt`` (0-based)."""
        if attempt < 0:
            raise ValidationError("attempt must be >= 0")
        # Once past the cap the exponent no longer matters; avoid huge ints.
        if attempt >= 63:
            return self.max_delay_ms
        return min(self.base_delay_ms * (2**attempt), self.max_delay_ms)

    def can_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts
