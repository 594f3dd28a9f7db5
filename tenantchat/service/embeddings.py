from __future__ import annotations

import hashlib
import math
from typing import Callable, Iterable, List, Optional

from openai import OpenAI

from tenantchat.logging import get_logger

logger = get_logger(__name__)

# Dimension of the offline hashing encoder
EMBEDDING_DIM = 64


def deterministic_embedding(text: str, dim: int = EMBEDDING_DIM) -> List[float]:
    """Generate a small deterministic embedding without external models.

    Tokens are hashed into ``dim`` buckets and the result is L2-normalized, so
    texts sharing words score a positive cosine similarity. Used when no
    embedding provider is configured and in tests.
    """

    if not text:
        return [0.0] * dim
    tokens = text.lower().split()
    vec = [0.0] * dim
    for tok in tokens:
        h = int(hashlib.sha256(tok.encode()).hexdigest(), 16)
        vec[h % dim] += 1.0
    norm = sum(v * v for v in vec) ** 0.5 or 1.0
    return [v / norm for v in vec]


def cosine_similarity(a: Iterable[float], b: Iterable[float]) -> float:
    """Compute cosine similarity between two vectors.

    Returns 0.0 for empty, mismatched, zero-magnitude, or non-finite input
    rather than raising, so one corrupt chunk cannot break a ranking.
    """
    list_a = list(a)
    list_b = list(b)
    if not list_a or not list_b or len(list_a) != len(list_b):
        return 0.0

    for val in (*list_a, *list_b):
        if math.isnan(val) or math.isinf(val):
            return 0.0

    num = sum(x * y for x, y in zip(list_a, list_b))
    denom = (sum(x * x for x in list_a) ** 0.5) * (sum(y * y for y in list_b) ** 0.5)
    if not denom:
        return 0.0

    result = num / denom
    if math.isnan(result) or math.isinf(result):
        return 0.0
    return max(-1.0, min(1.0, result))


def openai_encoder(
    model_id: str,
    *,
    api_key: str,
    base_url: Optional[str] = None,
    client: Optional[OpenAI] = None,
) -> Callable[[str], List[float]]:
    """Build an encoder backed by the OpenAI embeddings endpoint."""
    embed_client = client or OpenAI(api_key=api_key, base_url=base_url)

    def _encode(text: str) -> List[float]:
        response = embed_client.embeddings.create(model=model_id, input=text)
        data = getattr(response, "data", None) or []
        if not data:
            raise ValueError("embedding response contained no vectors")
        return list(data[0].embedding)

    return _encode


class EmbeddingsService:
    """Wrapper for embedding providers with a stable model identifier.

    Chunks record ``model_id`` at indexing time; vectors from different models
    live in different spaces and are never compared.
    """

    def __init__(
        self,
        model_id: str,
        *,
        encoder: Callable[[str], List[float]] = deterministic_embedding,
    ):
        self.model_id = model_id
        self._encoder = encoder

    def embed(self, text: str) -> List[float]:
        return self._encoder(text)


def build_embeddings_service(
    model_id: str,
    *,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    dim: int = EMBEDDING_DIM,
) -> EmbeddingsService:
    if api_key:
        logger.info("embeddings_provider_selected", provider="openai", model_id=model_id)
        return EmbeddingsService(
            model_id, encoder=openai_encoder(model_id, api_key=api_key, base_url=base_url)
        )
    logger.info("embeddings_provider_selected", provider="deterministic", model_id=model_id)
    return EmbeddingsService(
        model_id, encoder=lambda text: deterministic_embedding(text, dim=dim)
    )
