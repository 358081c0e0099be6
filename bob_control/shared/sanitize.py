"""Scrub error text before it leaves the server.

Applied to every ``error`` message and every system error message in
room history, whatever the transport.
"""
from __future__ import annotations

import re

REDACTED = "[redacted]"
MAX_ERROR_LENGTH = 500

_PATTERNS: list[re.Pattern[str]] = [
    # Python traceback frames and JS-style "at fn (file:1:2)" frames
    re.compile(r'File "[^"]+", line \d+(?:, in \S+)?'),
    re.compile(r"\bat\s+(?:\S+\s+)?\(?[^\s()]+:\d+:\d+\)?"),
    # Dependency-internal paths
    re.compile(r"\S*(?:site-packages|dist-packages|node_modules)[/\\]\S*"),
    # Home / profile directories
    re.compile(r"/home/[^\s'\"]+"),
    re.compile(r"/Users/[^\s'\"]+"),
    re.compile(r"[A-Za-z]:\\Users\\[^\s'\"]+", re.IGNORECASE),
    # Environment-variable-shaped tokens: $HOME, ${API_KEY}, %APPDATA%
    re.compile(r"\$\{?[A-Za-z_][A-Za-z0-9_]*\}?"),
    re.compile(r"%[A-Za-z_][A-Za-z0-9_]*%"),
]


def sanitize_error(error: BaseException | str | None) -> str:
    """Redact paths, stack frames and env tokens; cap the length."""
    if error is None:
        return "Unknown error"
    text = str(error)
    if not text:
        text = type(error).__name__ if isinstance(error, BaseException) else "Unknown error"
    for pattern in _PATTERNS:
        text = pattern.sub(REDACTED, text)
    if len(text) > MAX_ERROR_LENGTH:
        text = text[:MAX_ERROR_LENGTH] + "..."
    return text
