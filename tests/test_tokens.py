"""Unit tests for the token estimation helpers."""

from admission.domain.models import ChatMessage
from admission.utils.tokens import (
    MESSAGE_OVERHEAD_TOKENS,
    content_text,
    estimate_messages_tokens,
    estimate_tokens,
)


def test_estimate_tokens_handles_empty():
    assert estimate_tokens("") == 0


def test_estimate_tokens_counts_whitespace():
    assert estimate_tokens("   \n   ") == 4


def test_estimate_tokens_counts_ascii_pairs():
    assert estimate_tokens("ab") == 1
    assert estimate_tokens("abc") == 2
    assert estimate_tokens("a b c d") == 4


def test_estimate_tokens_counts_non_ascii_per_char():
    assert estimate_tokens("你好") == 2
    assert estimate_tokens("你 好") == 3


def test_estimate_tokens_handles_mixed_text():
    assert estimate_tokens("hi你好") == 3
    assert estimate_tokens("OK，好的") == 4


def test_content_text_flattens_text_parts():
    content = [
        {"type": "text", "text": "hello"},
        {"type": "image_url", "image_url": {"url": "https://example.com/a.png"}},
        "world",
    ]
    assert content_text(content) == "hello\nworld"
    assert content_text(None) == ""


def test_estimate_messages_tokens_adds_per_message_overhead():
    messages = [
        {"role": "system", "content": "ab"},
        ChatMessage(role="user", content="你好"),
    ]
    assert estimate_messages_tokens(messages) == 2 * MESSAGE_OVERHEAD_TOKENS + 1 + 2


def test_estimate_messages_tokens_handles_empty_history():
    assert estimate_messages_tokens([]) == 0
