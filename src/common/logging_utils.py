"""Logging helpers shared by the resolver, store and coordinator.

Provides a single place to configure the root logger from the environment,
build structured ``extra`` payloads for DEBUG events, and time operations.
"""
from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional

from constants import Constants

_EXTRA_KEYS = ("event", "component", "action", "outcome", "target", "duration_ms")


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once.

    Level precedence: explicit ``level`` argument, then ``POLYPIN_LOG_LEVEL``,
    then INFO. Repeated calls only adjust the level.

    Args:
        level: Optional level name such as "DEBUG".
    """
    name = (level or os.environ.get(Constants.ENV_LOG_LEVEL) or "INFO").upper()
    value = getattr(logging, name, logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=value, format=Constants.LOG_FORMAT)
    root.setLevel(value)


def is_debug_enabled(logger: logging.Logger) -> bool:
    """Return True when ``logger`` would emit DEBUG records."""
    return logger.isEnabledFor(logging.DEBUG)


def extra_context(**kwargs: Any) -> Dict[str, Any]:
    """Build an ``extra`` mapping for structured log records.

    ``None`` values are dropped so formatters only see populated fields.
    Values are stringified for the well-known keys to keep records JSON safe.
    """
    ctx: Dict[str, Any] = {}
    for key, value in kwargs.items():
        if value is None:
            continue
        if key in _EXTRA_KEYS and not isinstance(value, (int, float)):
            value = str(value)
        ctx[key] = value
    return ctx


class Timer:
    """Context manager measuring wall-clock duration."""

    def __init__(self) -> None:
        self._start = 0.0
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._end = time.perf_counter()

    def duration_ms(self) -> int:
        """Elapsed milliseconds so far (or total, once the block exited)."""
        end = self._end if self._end is not None else time.perf_counter()
        return int((end - self._start) * 1000)
