"""Derive short room names from the user's first messages.

Deterministic, no model call: the message is matched against ordered
intent patterns ("fix X", "add X", ...) and the subject becomes the
name. Messages that match nothing fall back to their first words.
"""
from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 25
MIN_NAME_LENGTH = 3
FALLBACK_WORDS = 4

_TRAILING_PUNCT_RE = re.compile(r"[\s.!?,;:]+$")

# Ordered: first pattern whose subject is long enough wins.
_INTENT_PATTERNS: list[re.Pattern[str]] = [
    re.compile(
        r"^(?:fix|debug)\s+(?:the\s+)?(.+?)(?:\s+(?:bug|issue|error|problem)s?)?$",
        re.IGNORECASE,
    ),
    re.compile(
        r"^(?:add|implement|create|build|write)\s+(?:an?\s+)?(.+)$",
        re.IGNORECASE,
    ),
    re.compile(
        r"^(?:update|change|modify|refactor)\s+(?:the\s+)?(.+)$",
        re.IGNORECASE,
    ),
    re.compile(r"^(?:test|check|verify)\s+(?:the\s+)?(.+)$", re.IGNORECASE),
    re.compile(r"^(?:remove|delete)\s+(?:the\s+)?(.+)$", re.IGNORECASE),
    re.compile(
        r"^(?:review|look\s+at|analy[sz]e)\s+(?:the\s+)?(.+)$",
        re.IGNORECASE,
    ),
    re.compile(r"^help\s+(?:me\s+)?with\s+(.+)$", re.IGNORECASE),
]


def placeholder_name(room_id: str) -> str:
    """Generated name a room carries until it is auto-named or renamed."""
    return f"room-{room_id[:8]}"


def _truncate(name: str) -> str:
    if len(name) > MAX_NAME_LENGTH:
        return name[: MAX_NAME_LENGTH - 3].rstrip() + "..."
    return name


def infer_name_from_message(message: str | None) -> str | None:
    """Short name for a room from a user message, or None.

    >>> infer_name_from_message("fix the login bug")
    'login'
    >>> infer_name_from_message("hi") is None
    True
    """
    if not message or not message.strip():
        return None
    text = " ".join(message.split())
    text = _TRAILING_PUNCT_RE.sub("", text)
    if not text:
        return None

    for pattern in _INTENT_PATTERNS:
        match = pattern.match(text)
        if not match:
            continue
        subject = _TRAILING_PUNCT_RE.sub("", match.group(1).strip())
        if len(subject) >= MIN_NAME_LENGTH:
            return _truncate(subject)

    fallback = " ".join(text.split()[:FALLBACK_WORDS])
    if len(fallback) < MIN_NAME_LENGTH:
        return None
    return _truncate(fallback)
