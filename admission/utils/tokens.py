"""Rough token estimates used to size reservations before a request runs."""

from __future__ import annotations

import json
from typing import Any, Iterable

# Role marker and separators each chat message costs on top of its content.
MESSAGE_OVERHEAD_TOKENS = 4


def estimate_tokens(text: str) -> int:
    """Approximate tokens: one per non-ASCII character, one per two ASCII characters."""

    if not text:
        return 0
    non_ascii = sum(1 for char in text if not char.isascii())
    ascii_count = len(text) - non_ascii
    return max(1, (ascii_count + 1) // 2 + non_ascii)


def content_text(content: Any) -> str:
    """Flatten message content, including ``[{"type": "text", "text": ...}]`` parts."""

    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
            elif isinstance(part, str):
                parts.append(part)
        return "\n".join(parts)
    return json.dumps(content, ensure_ascii=False, default=str)


def estimate_messages_tokens(messages: Iterable[Any]) -> int:
    """Estimate prompt tokens for chat messages given as dicts or objects with ``content``."""

    total = 0
    for message in messages:
        content = message.get("content") if isinstance(message, dict) else getattr(message, "content", None)
        total += MESSAGE_OVERHEAD_TOKENS + estimate_tokens(content_text(content))
    return total


__all__ = ["MESSAGE_OVERHEAD_TOKENS", "content_text", "estimate_messages_tokens", "estimate_tokens"]
