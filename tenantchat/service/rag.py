from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from tenantchat.logging import get_logger
from tenantchat.service.embeddings import EmbeddingsService, cosine_similarity
from tenantchat.service.errors import NotFoundError, UpstreamError
from tenantchat.storage.memory import MemoryStore
from tenantchat.storage.models import (
    Agent,
    KnowledgeChunk,
    KnowledgeSource,
    Message,
    RagSettings,
    new_id,
)

logger = get_logger(__name__)

# Advisory estimate only; not billing-accurate
CHARS_PER_TOKEN = 4
DEFAULT_CHUNK_SIZE = 1000
DEFAULT_CHUNK_OVERLAP = 200


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass(frozen=True)
class ScoredChunk:
    chunk: KnowledgeChunk
    score: float


@dataclass
class RagContext:
    """Ranked chunks for one request; never persisted."""

    chunks: List[ScoredChunk] = field(default_factory=list)
    total_tokens_estimate: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.chunks


def chunk_text(
    text: str, size: int = DEFAULT_CHUNK_SIZE, overlap: int = DEFAULT_CHUNK_OVERLAP
) -> List[tuple[int, int, str]]:
    """Split text into overlapping character windows.

    Returns ``(char_start, char_end, content)`` triples. The final window is
    never followed by one that lies entirely inside the overlap.
    """
    size = max(1, size)
    overlap = max(0, min(overlap, size - 1))
    windows: List[tuple[int, int, str]] = []
    start = 0
    while start < len(text):
        end = min(start + size, len(text))
        windows.append((start, end, text[start:end]))
        if end >= len(text):
            break
        start = end - overlap
    return windows


def is_rag_enabled(agent: Agent) -> bool:
    settings = agent.config.rag_settings
    return bool(settings and settings.enabled and agent.config.knowledge_source_ids)


def extract_user_query(history: Sequence[Message]) -> str:
    """Text of the most recent user message, or "" if there is none."""
    for msg in reversed(history):
        if msg.role == "user":
            return msg.text
    return ""


def extract_rag_metadata(context: RagContext) -> List[Dict]:
    """Source attributions stored on the assistant message metadata."""
    return [
        {
            "chunk_id": scored.chunk.id,
            "knowledge_source_id": scored.chunk.knowledge_source_id,
            "chunk_index": scored.chunk.metadata.get("chunk_index"),
            "page_number": scored.chunk.metadata.get("page_number"),
            "score": round(scored.score, 4),
        }
        for scored in context.chunks
    ]


class RAGService:
    """Embedding retriever and ranker over tenant-scoped knowledge chunks."""

    def __init__(
        self,
        store: MemoryStore,
        embeddings: EmbeddingsService,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    ) -> None:
        self.store = store
        self.embeddings = embeddings
        self.chunk_size = max(chunk_size, 64)
        self.chunk_overlap = chunk_overlap

    def retrieve(
        self,
        query: Optional[str],
        tenant_id: str,
        agent_id: str,
        rag_settings: Optional[RagSettings],
        knowledge_source_ids: Optional[Sequence[str]],
    ) -> RagContext:
        """Rank the tenant's chunks from ``knowledge_source_ids`` against ``query``.

        Retrieval is best-effort: a failing embedding call is logged and
        yields an empty context instead of failing the chat turn.
        """
        if not rag_settings or not rag_settings.enabled:
            return RagContext()
        if not knowledge_source_ids:
            return RagContext()
        if not query or not query.strip():
            return RagContext()

        try:
            query_embedding = self.embeddings.embed(query)
        except Exception as exc:
            logger.warning(
                "rag_query_embedding_failed",
                tenant_id=tenant_id,
                agent_id=agent_id,
                embedding_model_id=self.embeddings.model_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return RagContext()

        candidates = self.store.list_chunks(tenant_id, knowledge_source_ids)
        scored: List[tuple[int, ScoredChunk]] = []
        skipped_model = 0
        for position, chunk in enumerate(candidates):
            if chunk.metadata.get("embedding_model_id") != self.embeddings.model_id:
                skipped_model += 1
                continue
            score = cosine_similarity(query_embedding, chunk.embedding)
            if score < rag_settings.min_score:
                continue
            scored.append((position, ScoredChunk(chunk=chunk, score=score)))

        # score desc, then newer first, then store order
        scored.sort(
            key=lambda item: (
                -item[1].score,
                -item[1].chunk.created_at.timestamp(),
                item[0],
            )
        )

        context = RagContext()
        for _, item in scored:
            if len(context.chunks) >= rag_settings.top_k:
                break
            cost = estimate_tokens(item.chunk.content)
            budget = rag_settings.max_context_tokens
            if budget is not None and context.total_tokens_estimate + cost > budget:
                continue
            context.chunks.append(item)
            context.total_tokens_estimate += cost

        logger.debug(
            "rag_retrieved",
            tenant_id=tenant_id,
            agent_id=agent_id,
            candidates=len(candidates),
            skipped_model_mismatch=skipped_model,
            above_threshold=len(scored),
            returned=len(context.chunks),
            total_tokens_estimate=context.total_tokens_estimate,
        )
        return context

    def ingest_text(
        self,
        source_id: str,
        text: str,
        *,
        page_number: Optional[int] = None,
    ) -> int:
        """Chunk and embed ``text``, replacing every chunk the source had before.

        Raises:
            NotFoundError: If the knowledge source does not exist
            UpstreamError: If the embedding provider fails
        """
        source = self.store.get_knowledge_source(source_id)
        if not source:
            raise NotFoundError(
                "knowledge source not found", detail={"knowledge_source_id": source_id}
            )

        chunks: List[KnowledgeChunk] = []
        for index, (start, end, content) in enumerate(
            chunk_text(text or "", self.chunk_size, self.chunk_overlap)
        ):
            if not content.strip():
                continue
            try:
                embedding = self.embeddings.embed(content)
            except Exception as exc:
                logger.error(
                    "rag_chunk_embedding_failed",
                    knowledge_source_id=source_id,
                    chunk_index=index,
                    error=str(exc),
                )
                raise UpstreamError(
                    "embedding provider failed",
                    detail={"knowledge_source_id": source_id},
                ) from exc
            metadata = {
                "chunk_index": index,
                "char_start": start,
                "char_end": end,
                "embedding_model_id": self.embeddings.model_id,
            }
            if page_number is not None:
                metadata["page_number"] = page_number
            chunks.append(
                KnowledgeChunk(
                    id=new_id("chunk"),
                    knowledge_source_id=source_id,
                    tenant_id=source.tenant_id,
                    content=content,
                    embedding=tuple(embedding),
                    metadata=metadata,
                )
            )

        self.store.replace_chunks(source_id, chunks)
        logger.info(
            "knowledge_source_indexed",
            knowledge_source_id=source_id,
            tenant_id=source.tenant_id,
            chunk_count=len(chunks),
            embedding_model_id=self.embeddings.model_id,
        )
        return len(chunks)

    def add_source(
        self,
        tenant_id: str,
        name: str,
        text: str,
        *,
        kind: str = "text",
        page_number: Optional[int] = None,
        meta: Optional[Dict] = None,
    ) -> KnowledgeSource:
        source = self.store.create_knowledge_source(tenant_id, name, kind=kind, meta=meta)
        self.ingest_text(source.id, text, page_number=page_number)
        return self.store.get_knowledge_source(source.id)

    def reprocess_source(
        self, source_id: str, text: str, *, tenant_id: Optional[str] = None
    ) -> int:
        """Regenerate a source's chunks wholesale from fresh document text.

        With ``tenant_id`` a source owned by another tenant reads as missing.
        """
        if tenant_id is not None:
            source = self.store.get_knowledge_source(source_id)
            if not source or source.tenant_id != tenant_id:
                raise NotFoundError(
                    "knowledge source not found",
                    detail={"knowledge_source_id": source_id},
                )
        return self.ingest_text(source_id, text)
