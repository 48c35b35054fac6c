"""Standardized logging utilities for LockIn Bot."""
from __future__ import annotations

import logging
from typing import Any

# Root logger name for all bot components
ROOT_LOGGER_NAME = "lockinbot"


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a hierarchical logger under the lockinbot namespace.

    Args:
        name: Module or component name. If None, returns the root logger.
              The name will be prefixed with "lockinbot." automatically
              if it doesn't already have that prefix.

    Example::

        from lockinbot.infra.logging import get_logger
        log = get_logger("reconciler")  # -> "lockinbot.reconciler"
    """
    if name is None:
        return logging.getLogger(ROOT_LOGGER_NAME)

    clean_name = name
    if clean_name.startswith(f"{ROOT_LOGGER_NAME}."):
        clean_name = clean_name[len(ROOT_LOGGER_NAME) + 1 :]

    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{clean_name}")


def structured_log(
    logger: logging.Logger,
    level: int,
    message: str,
    **fields: Any,
) -> None:
    """Log a message with structured key=value fields appended.

    Example::

        structured_log(log, logging.INFO, "Session closed",
                       user_id=123, minutes=45, reason="leave")
        # Logs: "Session closed user_id=123 minutes=45 reason=leave"
    """
    if fields:
        field_str = " ".join(f"{k}={v}" for k, v in fields.items())
        message = f"{message} {field_str}"
    logger.log(level, message)
