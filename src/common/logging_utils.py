"""Centralized logging helpers.

``configure_logging`` installs a single stderr handler on the root logger.
Modules log through ``logging.getLogger(__name__)`` and attach structured
fields for DEBUG traces with ``extra_context``.
"""
from __future__ import annotations

import logging
import os
import sys
import time
import urllib.parse
from typing import Any, Dict, Optional

from constants import Constants

_LEVEL_COLORS = {
    logging.DEBUG: "\033[2m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[1;31m",
}
_RESET = "\033[0m"


class ColorFormatter(logging.Formatter):
    """Formatter that colours the level name with ANSI escapes."""

    def format(self, record: logging.LogRecord) -> str:
        color = _LEVEL_COLORS.get(record.levelno)
        if not color:
            return super().format(record)
        original = record.levelname
        record.levelname = f"{color}{original}{_RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


def use_color(choice: str, stream: Any = None) -> bool:
    """Resolve ``auto|always|never`` against the output stream."""
    if choice == "always":
        return True
    if choice == "never":
        return False
    if os.environ.get("NO_COLOR"):
        return False
    stream = stream if stream is not None else sys.stderr
    return bool(getattr(stream, "isatty", lambda: False)())


def level_from_flags(verbose: int = 0, quiet: bool = False) -> int:
    """Map ``-v``/``-q`` flags (and DEPLOCK_LOG_LEVEL) to a logging level."""
    if quiet:
        return logging.WARNING
    if verbose >= 1:
        return logging.DEBUG
    env_level = os.environ.get(Constants.ENV_LOG_LEVEL)
    if env_level:
        return getattr(logging, env_level.upper(), logging.INFO)
    return logging.INFO


def configure_logging(level: Optional[int] = None, color: str = "auto") -> None:
    """Configure the root logger once; later calls only adjust the level."""
    root = logging.getLogger()
    if level is None:
        level = level_from_flags()
    handler = next((h for h in root.handlers if getattr(h, "_deplock", False)), None)
    if handler is None:
        handler = logging.StreamHandler(sys.stderr)
        handler._deplock = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    formatter_cls = ColorFormatter if use_color(color, handler.stream) else logging.Formatter
    handler.setFormatter(formatter_cls(Constants.LOG_FORMAT))
    root.setLevel(level)


def is_debug_enabled(logger: logging.Logger) -> bool:
    """Cheap guard for building DEBUG payloads."""
    return logger.isEnabledFor(logging.DEBUG)


def extra_context(**fields: Any) -> Dict[str, Any]:
    """Build an ``extra=`` mapping, dropping None values."""
    return {key: value for key, value in fields.items() if value is not None}


def safe_url(url: str) -> str:
    """Strip credentials and query strings from a URL before logging it."""
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return url
    netloc = parts.hostname or ""
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    return urllib.parse.urlunsplit((parts.scheme, netloc, parts.path, "", ""))


class Timer:
    """Context manager measuring wall time in milliseconds."""

    def __init__(self):
        self._start = 0.0
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, *exc) -> None:
        self._end = time.perf_counter()

    def duration_ms(self) -> int:
        """Elapsed milliseconds so far (or total, once exited)."""
        end = self._end if self._end is not None else time.perf_counter()
        return int((end - self._start) * 1000)
