"""Centralized logging helpers.

All modules log through ``logging.getLogger(__name__)``; this module owns the
root handler setup plus a few helpers for structured DEBUG records that keep
credentials and query strings out of the logs.
"""
from __future__ import annotations

import logging
import os
import re
import sys
import time
import urllib.parse
from typing import Any, Dict, Optional

from constants import Constants

_HANDLER_NAME = "certgate-console"

_BEARER_RE = re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+")
_SECRET_KEYS = ("token", "password", "secret", "authorization")


def _level_from_env() -> int:
    name = os.environ.get(Constants.ENV_LOG_LEVEL, "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def configure_logging() -> None:
    """Install the console handler on the root logger.

    Safe to call more than once; the handler is only added the first time.
    The level comes from ``CERTGATE_LOG_LEVEL`` (default INFO).
    """
    root = logging.getLogger()
    root.setLevel(_level_from_env())
    for handler in root.handlers:
        if handler.get_name() == _HANDLER_NAME:
            return
    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(Constants.LOG_FORMAT))
    root.addHandler(handler)


def is_debug_enabled(logger: logging.Logger) -> bool:
    """Return True when DEBUG records from ``logger`` would be emitted."""
    return logger.isEnabledFor(logging.DEBUG)


def extra_context(**fields: Any) -> Dict[str, Any]:
    """Build the ``extra=`` mapping for a structured log record.

    ``None`` values are dropped and secret-looking keys are masked.
    """
    context: Dict[str, Any] = {}
    for key, value in fields.items():
        if value is None:
            continue
        if any(secret in key.lower() for secret in _SECRET_KEYS):
            value = "***"
        context[key] = value
    return context


def safe_url(url: Optional[str]) -> str:
    """Strip userinfo and query string from a URL for logging."""
    if not url:
        return ""
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return "<invalid url>"
    netloc = parts.netloc.rpartition("@")[2]
    return urllib.parse.urlunsplit((parts.scheme, netloc, parts.path, "", ""))


def redact(text: Optional[str]) -> str:
    """Mask bearer tokens inside free text (error messages, headers)."""
    if not text:
        return ""
    return _BEARER_RE.sub(r"\1***", text)


class Timer:
    """Context manager measuring wall-clock duration."""

    def __init__(self) -> None:
        self._start = 0.0
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._end = time.perf_counter()

    def duration_ms(self) -> float:
        """Elapsed milliseconds, up to now if still running."""
        end = self._end if self._end is not None else time.perf_counter()
        return round((end - self._start) * 1000.0, 2)
