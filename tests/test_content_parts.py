import pytest

from tenantchat.content_parts import (
    InvalidPartError,
    normalize_part,
    normalize_parts,
    text_of,
)


def test_normalize_keeps_known_keys_only():
    part = normalize_part(
        {"type": "tool-invocation", "toolCallId": "t1", "toolName": "lookup", "args": {"q": 1}, "extra": "x"}
    )
    assert part == {"type": "tool-invocation", "toolCallId": "t1", "toolName": "lookup", "args": {"q": 1}}


def test_text_is_coerced_to_string():
    assert normalize_part({"type": "text", "text": 42}) == {"type": "text", "text": "42"}


@pytest.mark.parametrize(
    "part",
    [
        "plain string",
        {"type": "image", "url": "x"},
        {"type": "text"},
        {"type": "tool-invocation", "toolName": "lookup"},
        {"type": "source", "sourceType": "video"},
    ],
)
def test_invalid_parts_rejected(part):
    with pytest.raises(InvalidPartError):
        normalize_part(part)


def test_legacy_content_becomes_single_text_part():
    assert normalize_parts(None, "hello") == [{"type": "text", "text": "hello"}]
    assert normalize_parts([], None) == [{"type": "text", "text": ""}]


def test_text_of_skips_non_text_parts():
    parts = [
        {"type": "reasoning", "text": "hmm"},
        {"type": "text", "text": "Hello "},
        {"type": "source", "sourceType": "url", "url": "https://example.com"},
        {"type": "text", "text": "world"},
    ]
    assert text_of(parts) == "Hello world"
