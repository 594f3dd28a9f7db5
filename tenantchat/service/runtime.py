from __future__ import annotations

import threading
from typing import Optional

from tenantchat.config import Settings, get_settings, reset_settings_cache
from tenantchat.logging import get_logger
from tenantchat.service.access import AccessGuard
from tenantchat.service.agents import AgentService
from tenantchat.service.analytics import AnalyticsService
from tenantchat.service.chat import ChatService
from tenantchat.service.embeddings import build_embeddings_service
from tenantchat.service.llm import LLMService
from tenantchat.service.locks import ChatLockRegistry
from tenantchat.service.rag import RAGService
from tenantchat.service.streaming import StreamCoordinator
from tenantchat.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    Every service receives the same injected ``MemoryStore``; tests that need
    isolation build their own ``Runtime`` (or reset the shared one).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[MemoryStore] = None,
        llm: Optional[LLMService] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            default_model=self.settings.default_model,
            embedding_model_id=self.settings.embedding_model_id,
        )
        self.store = store or MemoryStore()
        if self.settings.seed_demo_data:
            self.store.seed_demo_data()

        api_key = None if self.settings.test_mode else self.settings.openai_api_key
        self.embeddings = build_embeddings_service(
            self.settings.embedding_model_id,
            api_key=api_key,
            base_url=self.settings.openai_base_url,
            dim=self.settings.embedding_dim,
        )
        self.llm = llm or LLMService(
            api_key=api_key, base_url=self.settings.openai_base_url
        )
        self.guard = AccessGuard(self.store)
        self.rag = RAGService(
            self.store,
            self.embeddings,
            chunk_size=self.settings.chunk_size_chars,
            chunk_overlap=self.settings.chunk_overlap_chars,
        )
        self.coordinator = StreamCoordinator(
            self.store,
            self.llm,
            timeout_seconds=self.settings.stream_timeout_seconds,
        )
        self.locks = ChatLockRegistry()
        self.chat = ChatService(
            self.store, self.guard, self.rag, self.coordinator, locks=self.locks
        )
        self.agents = AgentService(self.store, self.guard)
        self.analytics = AnalyticsService(self.store, self.guard)
        logger.info("runtime_init_completed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime
