"""Completion marker detection."""

from __future__ import annotations

import re
from typing import Any


def promise_tag(marker: str) -> str:
    return f"<promise>{marker}</promise>"


def _pattern(marker: str) -> re.Pattern[str]:
    return re.compile(rf"<promise>\s*{re.escape(marker)}\s*</promise>", re.IGNORECASE)


def matches(text: str, marker: str) -> bool:
    """Return True when ``text`` carries ``<promise>marker</promise>``.

    The marker is matched literally and case-insensitively; whitespace is
    allowed between the tags and the marker.
    """
    if not text or not marker:
        return False
    return _pattern(marker).search(text) is not None


def extract_text(content: Any) -> str:
    """Flatten host message content into plain text.

    Accepts a string or a list of parts; only parts with ``type == "text"``
    contribute.
    """
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for part in content:
        if isinstance(part, dict) and part.get("type") == "text":
            parts.append(str(part.get("text") or ""))
    return "".join(parts)
