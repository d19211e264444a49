"""
Logging setup for migration runs.

Every module logs through ``logging.getLogger(__name__)``; this module only
attaches handlers to the ``legacymigrate`` logger once per process.

This module provides:
- configure_logging: Install console and per-run file handlers
- flush_logging: Flush every installed handler (used during shutdown)
- close_logging: Flush, close and detach installed handlers
"""

from __future__ import annotations

import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

from legacymigrate.config import LoggingConfig

PACKAGE_LOGGER = "legacymigrate"
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_installed_handlers: list[logging.Handler] = []


def configure_logging(
    config: LoggingConfig,
    run_timestamp: datetime | None = None,
) -> Path | None:
    """
    Configure logging for a migration run.

    Calling this again replaces the handlers installed by the previous call.

    Args:
        config: Logging section of the migration configuration
        run_timestamp: Timestamp used in the log file name (defaults to now)

    Returns:
        Path of the log file, or None when file logging is disabled
    """
    close_logging()

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(config.level)

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    package_logger.addHandler(console)
    _installed_handlers.append(console)

    log_path: Path | None = None
    if config.log_to_file:
        stamp = (run_timestamp or datetime.now(UTC)).strftime("%Y-%m-%dT%H-%M-%S")
        log_dir = config.output_dir / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / f"migration-{stamp}.log"

        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)
        _installed_handlers.append(file_handler)

    package_logger.debug(
        "Logging configured",
        extra={"level": config.level, "log_file": str(log_path) if log_path else None},
    )
    return log_path


def flush_logging() -> None:
    """Flush all handlers attached to the package logger."""
    for handler in logging.getLogger(PACKAGE_LOGGER).handlers:
        handler.flush()


def close_logging() -> None:
    """Flush and remove the handlers installed by configure_logging."""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    while _installed_handlers:
        handler = _installed_handlers.pop()
        package_logger.removeHandler(handler)
        handler.flush()
        handler.close()


__all__ = [
    "LOG_FORMAT",
    "PACKAGE_LOGGER",
    "close_logging",
    "configure_logging",
    "flush_logging",
]
