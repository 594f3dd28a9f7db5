"""Utilities for normalizing typed message content parts.

Messages carry an ordered list of ``parts`` instead of a single string so the
client can render reasoning traces, tool invocations and source citations next
to plain text. Only a small stable set of keys is kept per part type; unknown
part types are rejected rather than coerced.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, TypedDict

PartType = Literal["text", "reasoning", "tool-invocation", "source"]


class MessagePart(TypedDict, total=False):
    type: PartType
    text: str
    # tool invocations
    toolCallId: str
    toolName: str
    args: Any
    result: Any
    # sources
    sourceType: Literal["url", "document"]
    url: str
    title: str


_PART_KEYS: Dict[str, List[str]] = {
    "text": ["text"],
    "reasoning": ["text"],
    "tool-invocation": ["toolCallId", "toolName", "args", "result"],
    "source": ["sourceType", "url", "title"],
}

_REQUIRED_KEYS: Dict[str, List[str]] = {
    "text": ["text"],
    "reasoning": ["text"],
    "tool-invocation": ["toolCallId", "toolName"],
    "source": ["sourceType"],
}


class InvalidPartError(ValueError):
    """Raised when a message part has an unknown type or misses required keys."""


def normalize_part(part: Any) -> MessagePart:
    if not isinstance(part, dict):
        raise InvalidPartError("message part must be an object")
    part_type = part.get("type")
    if part_type not in _PART_KEYS:
        raise InvalidPartError(f"unsupported message part type: {part_type!r}")
    missing = [key for key in _REQUIRED_KEYS[part_type] if key not in part]
    if missing:
        raise InvalidPartError(
            f"message part '{part_type}' missing required keys: {', '.join(missing)}"
        )
    normalized: MessagePart = {"type": part_type}
    for key in _PART_KEYS[part_type]:
        if key in part:
            normalized[key] = part[key]
    if part_type in ("text", "reasoning") and not isinstance(normalized["text"], str):
        normalized["text"] = str(normalized["text"])
    if part_type == "source" and normalized["sourceType"] not in ("url", "document"):
        raise InvalidPartError("source part sourceType must be 'url' or 'document'")
    return normalized


def normalize_parts(
    parts: Optional[List[Any]], content: Optional[str] = None
) -> List[MessagePart]:
    """Return a sanitized parts list.

    Messages sent in the legacy ``{role, content}`` shape have no ``parts``;
    their ``content`` string becomes a single text part.
    """
    if parts:
        return [normalize_part(part) for part in parts]
    return [{"type": "text", "text": str(content or "")}]


def text_of(parts: List[MessagePart]) -> str:
    """Linearize the text parts of a message; other part types are skipped."""
    return "".join(part.get("text", "") for part in parts if part.get("type") == "text")
