"""System prompt assembly and provider message formatting."""

from __future__ import annotations

from typing import List, Optional, Sequence

from tenantchat.service.rag import RagContext
from tenantchat.storage.models import Message, RagSettings

CONTEXT_BEGIN = "--- BEGIN CONTEXT ---"
CONTEXT_END = "--- END CONTEXT ---"

CONTEXT_INSTRUCTION = (
    "Answer the user's question using the context above. "
    "If the context does not contain enough information to answer, "
    "say so clearly instead of guessing."
)


def _attribution(scored) -> str:
    meta = scored.chunk.metadata
    fields = [f"source={scored.chunk.knowledge_source_id}"]
    if meta.get("chunk_index") is not None:
        fields.append(f"chunk={meta['chunk_index']}")
    if meta.get("page_number") is not None:
        fields.append(f"page={meta['page_number']}")
    fields.append(f"score={scored.score:.3f}")
    return "(" + ", ".join(fields) + ")"


def format_context(context: RagContext, *, include_metadata: bool = True) -> str:
    lines: List[str] = [CONTEXT_BEGIN]
    for position, scored in enumerate(context.chunks, start=1):
        lines.append(f"[{position}] {scored.chunk.content.strip()}")
        if include_metadata:
            lines.append(_attribution(scored))
    lines.append(CONTEXT_END)
    return "\n".join(lines)


def assemble(
    base_system_prompt: str,
    rag_context: Optional[RagContext],
    rag_settings: Optional[RagSettings],
) -> str:
    """Return the system prompt with the ranked context block appended.

    Chunks keep the retriever's order (most relevant first). With no chunks
    the base prompt comes back untouched.
    """
    if rag_context is None or rag_context.is_empty:
        return base_system_prompt
    include_metadata = rag_settings.include_metadata if rag_settings else False
    block = format_context(rag_context, include_metadata=include_metadata)
    return f"{base_system_prompt.rstrip()}\n\n{block}\n\n{CONTEXT_INSTRUCTION}"


def build_model_messages(history: Sequence[Message]) -> List[dict]:
    """Flatten stored messages into ``{role, content}`` pairs for the provider.

    Only text parts are sent; reasoning, tool and source parts are display
    data. Messages that end up empty are dropped.
    """
    messages: List[dict] = []
    for msg in history:
        content = msg.text
        if not content:
            continue
        messages.append({"role": msg.role, "content": content})
    return messages
