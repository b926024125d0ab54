"""
Application configuration module.

This module defines the Config class, which centralizes the connection
defaults used by the session client: server address, reconnection and
queueing limits, auth and heartbeat timings, and logging settings.
Values are loaded from environment variables (optionally via a ``.env``
file) and validated on import.
"""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv

from tablelink.exceptions import ConfigurationError

load_dotenv()


def _int_env(name: str, default: int) -> int:
    """Read an integer environment variable, failing loudly on garbage."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be an integer, got {raw!r}.", original_error=e
        ) from e


class Config:
    """
    Centralized configuration settings for the session client.

    All values can be overridden through ``TABLELINK_*`` environment
    variables. Constructor arguments of ``ConnectionManager`` take
    precedence over these defaults.
    """

    # --- Session Server ---
    SESSION_SERVER_URL: str = os.getenv("TABLELINK_SERVER_URL", "ws://localhost:5000")
    SESSION_TOKEN: Optional[str] = os.getenv("TABLELINK_SESSION_TOKEN")

    # --- Reconnection & Queueing ---
    MAX_RECONNECT_ATTEMPTS: int = _int_env("TABLELINK_MAX_RECONNECT_ATTEMPTS", 5)
    MAX_QUEUE_SIZE: int = _int_env("TABLELINK_MAX_QUEUE_SIZE", 50)
    RECONNECT_BASE_DELAY_MS: int = _int_env("TABLELINK_RECONNECT_BASE_DELAY_MS", 1000)
    RECONNECT_MAX_DELAY_MS: int = _int_env("TABLELINK_RECONNECT_MAX_DELAY_MS", 30000)

    # --- Handshake & Heartbeat ---
    AUTH_TIMEOUT_MS: int = _int_env("TABLELINK_AUTH_TIMEOUT_MS", 5000)
    # 0 leaves the heartbeat disabled unless enable_heartbeat() is called.
    HEARTBEAT_INTERVAL_MS: int = _int_env("TABLELINK_HEARTBEAT_INTERVAL_MS", 0)
    HEARTBEAT_TIMEOUT_MS: int = _int_env("TABLELINK_HEARTBEAT_TIMEOUT_MS", 0)

    # --- Logging Configuration ---
    LOG_LEVEL: Union[int, str] = os.getenv("TABLELINK_LOG_LEVEL", logging.INFO)
    # Defaults to logs/ under the current working directory.
    LOG_DIR: Path = Path(os.getenv("TABLELINK_LOG_DIR", Path.cwd() / "logs"))
    LOG_MAX_SIZE: int = 5 * 1024 * 1024  # Max size of a log file before rotation
    LOG_BACKUP_COUNT: int = 3  # Number of backup log files to keep

    @classmethod
    def session_url(cls, session_id: str, base_url: Optional[str] = None) -> str:
        """
        Build the WebSocket endpoint for a game session.

        The session server exposes one socket per session at
        ``<base>/ws/<session_id>``. An ``http(s)`` base URL is rewritten
        to ``ws(s)``.

        Args:
            session_id: Identifier of the tabletop session to join
            base_url: Server base URL, defaults to SESSION_SERVER_URL

        Returns:
            str: The full WebSocket URL
        """
        if not session_id:
            raise ConfigurationError("session_id must be a non-empty string.")
        base = (base_url or cls.SESSION_SERVER_URL).rstrip("/")
        if base.startswith("http"):
            base = "ws" + base[len("http") :]
        return f"{base}/ws/{session_id}"

    @classmethod
    def validate(cls) -> None:
        """Validate configuration variables.

        Called automatically when the module is imported.

        Raises:
            ConfigurationError: If a configuration value is missing or invalid.
        """
        if not cls.SESSION_SERVER_URL.startswith(("ws://", "wss://", "http://", "https://")):
            raise ConfigurationError(
                f"Unsupported TABLELINK_SERVER_URL scheme: {cls.SESSION_SERVER_URL}"
            )

        if cls.MAX_RECONNECT_ATTEMPTS < 0:
            raise ConfigurationError("MAX_RECONNECT_ATTEMPTS must be >= 0.")
        if cls.MAX_QUEUE_SIZE < 1:
            raise ConfigurationError("MAX_QUEUE_SIZE must be >= 1.")
        if cls.RECONNECT_BASE_DELAY_MS <= 0:
            raise ConfigurationError("RECONNECT_BASE_DELAY_MS must be positive.")
        if cls.RECONNECT_MAX_DELAY_MS < cls.RECONNECT_BASE_DELAY_MS:
            raise ConfigurationError(
                "RECONNECT_MAX_DELAY_MS must not be smaller than RECONNECT_BASE_DELAY_MS."
            )
        if cls.AUTH_TIMEOUT_MS <= 0:
            raise ConfigurationError("AUTH_TIMEOUT_MS must be positive.")
        if cls.HEARTBEAT_INTERVAL_MS < 0 or cls.HEARTBEAT_TIMEOUT_MS < 0:
            raise ConfigurationError("Heartbeat timings must not be negative.")
        if bool(cls.HEARTBEAT_INTERVAL_MS) != bool(cls.HEARTBEAT_TIMEOUT_MS):
            raise ConfigurationError(
                "HEARTBEAT_INTERVAL_MS and HEARTBEAT_TIMEOUT_MS must be set together."
            )

        if isinstance(cls.LOG_LEVEL, str):
            # Check if the string is a valid log level name
            if not isinstance(logging.getLevelName(cls.LOG_LEVEL.upper()), int):
                raise ConfigurationError(
                    f"Invalid log level string from Config: '{cls.LOG_LEVEL}'"
                )
        elif not isinstance(cls.LOG_LEVEL, int):
            raise ConfigurationError(
                f"LOG_LEVEL must be a str or int, but got {type(cls.LOG_LEVEL).__name__}."
            )


Config.validate()  # Validate configuration on import
