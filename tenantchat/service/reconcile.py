"""Canonical message history computation for one chat.

``reconcile`` is a pure function of ``(history, operation)``: it never mutates
its inputs and holds no state, so a retried request with identical inputs
produces an identical history. Persisting the result and serializing writers
per chat is the caller's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

from tenantchat.service.errors import MessageNotFoundError
from tenantchat.storage.models import Message


@dataclass(frozen=True)
class Replace:
    """Client is the source of truth for the whole thread."""

    messages: Tuple[Message, ...]


@dataclass(frozen=True)
class Submit:
    """Append ``new_message``; with ``message_id`` it replaces that entry and everything after it."""

    new_message: Message
    message_id: Optional[str] = None


@dataclass(frozen=True)
class Regenerate:
    """Drop the assistant turn at (or after) ``message_id`` so it can be produced again."""

    message_id: Optional[str] = None


Operation = Union[Replace, Submit, Regenerate]


def _index_of(history: Sequence[Message], message_id: str) -> int:
    for idx, msg in enumerate(history):
        if msg.id == message_id:
            return idx
    return -1


def reconcile(history: Sequence[Message], operation: Operation) -> List[Message]:
    """Return the canonical history after applying ``operation`` to ``history``.

    Raises:
        MessageNotFoundError: If ``operation`` targets an id that is not in
            ``history``, or regenerates an empty history
        TypeError: If ``operation`` is not a known operation type
    """
    if isinstance(operation, Replace):
        return list(operation.messages)

    if isinstance(operation, Submit):
        if operation.message_id is None:
            return [*history, operation.new_message]
        idx = _index_of(history, operation.message_id)
        if idx < 0:
            raise MessageNotFoundError(operation.message_id)
        return [*history[:idx], operation.new_message]

    if isinstance(operation, Regenerate):
        if operation.message_id is None:
            idx = len(history) - 1
        else:
            idx = _index_of(history, operation.message_id)
        if idx < 0 or idx >= len(history):
            raise MessageNotFoundError(operation.message_id)
        if history[idx].role == "assistant":
            return list(history[:idx])
        return list(history[: idx + 1])

    raise TypeError(f"unsupported reconcile operation: {type(operation).__name__}")


def dedupe_append(
    durable: Sequence[Message], incoming: Sequence[Message]
) -> Tuple[List[Message], List[Message]]:
    """Append ``incoming`` onto ``durable`` skipping ids already present.

    Ids repeated inside ``incoming`` are kept once (first occurrence wins), so
    delivering the same batch twice is a no-op the second time.

    Returns:
        ``(merged_history, appended)``
    """
    seen = {msg.id for msg in durable}
    appended: List[Message] = []
    for msg in incoming:
        if msg.id in seen:
            continue
        seen.add(msg.id)
        appended.append(msg)
    return [*durable, *appended], appended


def pending_writes(
    durable: Sequence[Message], canonical: Sequence[Message]
) -> Tuple[Optional[List[Message]], List[Message]]:
    """Work out how to move the durable history to ``canonical``.

    Returns ``(truncated_prefix, to_append)``. ``truncated_prefix`` is None when
    ``durable`` agrees with ``canonical`` on every position they share, so a
    plain deduplicated append is enough. Otherwise it holds the longest common
    prefix the durable history must be cut back to before appending.
    """
    shared = 0
    limit = min(len(durable), len(canonical))
    while shared < limit and durable[shared].id == canonical[shared].id:
        shared += 1
    if shared == len(durable):
        return None, list(canonical[shared:])
    return list(durable[:shared]), list(canonical[shared:])
