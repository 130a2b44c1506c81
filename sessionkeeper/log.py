"""Logging utilities for SessionKeeper.

Background work (timers, retries, reconciliation) reports through these
loggers instead of raising into unrelated call sites.
"""

from __future__ import annotations

import logging
import sys

from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from .config import LogSettings


_DEFAULT_FORMAT = "%(name)s - %(levelname)s - %(message)s"


class _LoggerHolder:
    """Holder for the package logger instance."""

    instance: logging.Logger | None = None


def get_logger() -> logging.Logger:
    """Get the sessionkeeper logger instance.

    Returns
    -------
    logging.Logger
        The ``sessionkeeper`` logger configured with a stream handler.
        Module loggers (``sessionkeeper.auth`` etc.) propagate to it.
    """
    if _LoggerHolder.instance is None:
        logger = logging.getLogger("sessionkeeper")
        logger.setLevel(logging.WARNING)

        if not logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setLevel(logging.DEBUG)
            handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT))
            logger.addHandler(handler)

        _LoggerHolder.instance = logger

    return _LoggerHolder.instance


def set_level(level: int | str) -> None:
    """Set the logging level.

    Parameters
    ----------
    level : int or str
        The logging level (e.g., logging.DEBUG, "DEBUG").
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    get_logger().setLevel(level)


def enable_debug() -> None:
    """Enable verbose logging of refresh scheduling and listener traffic."""
    set_level(logging.DEBUG)


def configure_from_settings(settings: LogSettings) -> logging.Logger:
    """Apply level and format from the ``log`` settings section.

    Parameters
    ----------
    settings : LogSettings
        The logging section of the loaded settings.

    Returns
    -------
    logging.Logger
        The configured package logger.
    """
    logger = get_logger()
    logger.setLevel(getattr(logging, settings.level))
    for handler in logger.handlers:
        handler.setFormatter(logging.Formatter(settings.format))
    return logger


# Keys that should be redacted in log output
_SENSITIVE_KEYS = frozenset(
    {
        "token",
        "secret",
        "password",
        "code",
        "verifier",
        "nonce",
        "credential",
    }
)


def redact_sensitive_data(
    data: dict[str, Any] | list[Any] | str | None, max_depth: int = 5
) -> dict[str, Any] | list[Any] | str | None:
    """Redact sensitive values from data for safe logging.

    Recursively traverses dicts/lists and replaces values for keys
    that match sensitive patterns with "[REDACTED]".

    Parameters
    ----------
    data : dict or list or str or None
        The data to redact (e.g. a raw token endpoint response).
    max_depth : int, optional
        Maximum recursion depth (default: 5).

    Returns
    -------
    dict or list or str or None
        A copy of the data with sensitive values redacted.
    """
    if max_depth <= 0:
        return "[MAX_DEPTH]"

    if data is None:
        return None

    if isinstance(data, dict):
        result: dict[str, Any] = {}
        for k, v in data.items():
            key_lower = k.lower() if isinstance(k, str) else str(k).lower()
            if any(sensitive in key_lower for sensitive in _SENSITIVE_KEYS):
                result[k] = "[REDACTED]"
            else:
                result[k] = redact_sensitive_data(v, max_depth - 1)
        return result

    if isinstance(data, list):
        return [redact_sensitive_data(item, max_depth - 1) for item in data]

    return data
