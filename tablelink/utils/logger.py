"""
Centralized logging configuration for tablelink.

This module follows the recommended pattern of configuring handlers only on the root logger
and letting module-specific loggers inherit this configuration through propagation.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from tablelink.config.config import Config
from tablelink.exceptions import ConfigurationError

logs_dir: Path = Path(Config.LOG_DIR)

LOG_FORMAT = "[{asctime}] [{levelname:<8}] {name}: {message}"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for the specified module.

    This function just returns a logger for the given name without configuring
    any handlers. The root logger is configured once at import time,
    and all other loggers inherit from it.

    Args:
        name: Usually __name__ of the calling module

    Returns:
        A configured logger instance
    """
    return logging.getLogger(name)


def _resolve_level(value) -> int:
    if isinstance(value, str):
        return logging.getLevelName(value.upper())
    return value


def _configure_root_logger() -> None:
    """
    Configure the root logger with a rotating file handler and a console handler.
    This should be called only once during application startup.
    """
    root_logger = logging.getLogger()

    if root_logger.handlers:  # Avoid adding handlers multiple times
        return

    try:
        log_level = _resolve_level(Config.LOG_LEVEL)
        logs_dir.mkdir(parents=True, exist_ok=True)
    except Exception as e:
        print(f"CRITICAL: Logger setup failed unexpectedly: {e}", file=sys.stderr)
        raise ConfigurationError(f"Logger setup failed: {e}", original_error=e) from e

    root_logger.setLevel(log_level)
    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT, style="{")

    file_handler = RotatingFileHandler(
        logs_dir / "tablelink.log",
        encoding="utf-8",
        maxBytes=Config.LOG_MAX_SIZE,
        backupCount=Config.LOG_BACKUP_COUNT,
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(log_level)
    root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)
    root_logger.addHandler(console_handler)

    get_logger(__name__).info(
        "Root logger configured with file and console handlers."
    )


_configure_root_logger()  # Configure root logger on import
