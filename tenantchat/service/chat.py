from __future__ import annotations

import asyncio
from functools import partial
from typing import AsyncIterator, Dict, List, Optional

from tenantchat.logging import get_logger
from tenantchat.service.access import AccessGuard
from tenantchat.service.errors import (
    CanceledError,
    ChatAccessDeniedError,
    ChatNotFoundError,
    ServiceError,
    UpstreamError,
)
from tenantchat.service.llm import SamplingParams
from tenantchat.service.locks import ChatLockRegistry
from tenantchat.service.prompt import assemble
from tenantchat.service.rag import (
    RAGService,
    RagContext,
    extract_rag_metadata,
    extract_user_query,
    is_rag_enabled,
)
from tenantchat.service.reconcile import Operation, reconcile
from tenantchat.service.streaming import StreamCoordinator, StreamTurn
from tenantchat.storage.errors import ConstraintViolation
from tenantchat.storage.memory import MemoryStore
from tenantchat.storage.models import Chat, Message, new_id

logger = get_logger(__name__)

TERMINAL_EVENTS = ("message_done", "error", "cancel_ack")


class ChatService:
    """One chat turn end to end: authorize, reconcile, retrieve, assemble, stream.

    The chat lock is held from reconcile until the coordinator has persisted
    (or discarded) the turn, so concurrent turns on one chat never interleave.
    In-flight turns are tracked by request id for out-of-band cancellation.
    """

    def __init__(
        self,
        store: MemoryStore,
        guard: AccessGuard,
        rag: RAGService,
        coordinator: StreamCoordinator,
        *,
        locks: Optional[ChatLockRegistry] = None,
    ) -> None:
        self.store = store
        self.guard = guard
        self.rag = rag
        self.coordinator = coordinator
        self.locks = locks or ChatLockRegistry()
        self._active_requests: Dict[str, asyncio.Event] = {}

    def open_chat(
        self,
        tenant_id: str,
        agent_id: str,
        chat_id: Optional[str] = None,
        *,
        visitor_id: Optional[str] = None,
    ) -> Chat:
        """Return the existing chat or create it, charging the monthly chat quota.

        Must run after ``AccessGuard.authorize`` for the same ids.
        """
        if chat_id:
            chat = self.store.get_chat(chat_id)
            if chat:
                return chat
        tenant = self.guard.get_tenant(tenant_id)
        self.guard.check_chat_quota(tenant)
        try:
            chat = self.store.create_chat(
                tenant_id, agent_id, chat_id=chat_id, visitor_id=visitor_id
            )
        except ConstraintViolation:
            # created by a concurrent request between lookup and insert
            chat = self.store.get_chat(chat_id) if chat_id else None
            if not chat or chat.tenant_id != tenant_id or chat.agent_id != agent_id:
                raise ChatAccessDeniedError(chat_id or "")
            return chat
        logger.info(
            "chat_created", chat_id=chat.id, tenant_id=tenant_id, agent_id=agent_id
        )
        return chat

    def get_history(
        self, tenant_id: str, agent_id: str, chat_id: str
    ) -> List[Message]:
        self.guard.get_tenant(tenant_id)
        self.guard.get_agent(tenant_id, agent_id)
        chat = self.store.get_chat(chat_id)
        if not chat:
            raise ChatNotFoundError(chat_id)
        if chat.tenant_id != tenant_id or chat.agent_id != agent_id:
            raise ChatAccessDeniedError(chat_id)
        return self.store.list_messages(chat_id)

    def retrieve_context(self, agent, tenant_id: str, history: List[Message]) -> RagContext:
        if not is_rag_enabled(agent):
            return RagContext()
        return self.rag.retrieve(
            extract_user_query(history),
            tenant_id,
            agent.id,
            agent.config.rag_settings,
            agent.config.knowledge_source_ids,
        )

    async def handle_turn(
        self,
        tenant_id: str,
        agent_id: str,
        operation: Operation,
        *,
        chat_id: Optional[str] = None,
        visitor_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> AsyncIterator[dict]:
        """Run one chat turn and yield its stream events.

        Caller-correctable errors (not found, plan limits, bad message ids) are
        raised before the first event so HTTP callers can answer with a plain
        error response. Everything after the model call starts arrives as a
        stream event.

        A chat that does not exist yet is only created when the turn completes,
        so rejected, failed and canceled turns leave no chat behind and do not
        count against the monthly quota.
        """
        request_id = request_id or new_id("req")
        agent = self.guard.authorize(tenant_id, agent_id, chat_id)
        if not (chat_id and self.store.get_chat(chat_id)):
            self.guard.check_chat_quota(self.guard.get_tenant(tenant_id))
        chat_id = chat_id or new_id("chat")

        cancel_event = asyncio.Event()
        self._active_requests[request_id] = cancel_event
        try:
            async with self.locks.hold(chat_id):
                chat = self.store.get_chat(chat_id)
                if chat and (chat.tenant_id != tenant_id or chat.agent_id != agent_id):
                    raise ChatAccessDeniedError(chat_id)
                durable = self.store.list_messages(chat_id) if chat else []
                canonical = reconcile(durable, operation)
                # embedding calls block, keep them off the event loop
                context = await asyncio.to_thread(
                    self.retrieve_context, agent, tenant_id, canonical
                )
                system_prompt = assemble(
                    agent.config.system_prompt, context, agent.config.rag_settings
                )
                turn = StreamTurn(
                    chat_id=chat_id,
                    model=agent.config.model,
                    system_prompt=system_prompt,
                    canonical=canonical,
                    sampling=SamplingParams(
                        temperature=agent.config.temperature,
                        max_tokens=agent.config.max_tokens,
                    ),
                    rag_sources=extract_rag_metadata(context),
                    fallback_message=agent.config.fallback_message,
                    request_id=request_id,
                    create_chat=(
                        None
                        if chat
                        else partial(
                            self.open_chat,
                            tenant_id,
                            agent_id,
                            chat_id,
                            visitor_id=visitor_id,
                        )
                    ),
                )
                logger.info(
                    "chat_turn_started",
                    request_id=request_id,
                    tenant_id=tenant_id,
                    agent_id=agent_id,
                    chat_id=chat_id,
                    new_chat=chat is None,
                    operation=type(operation).__name__.lower(),
                    history_len=len(canonical),
                    rag_chunks=len(context.chunks),
                )
                yield {
                    "event": "turn_started",
                    "data": {"request_id": request_id, "chat_id": chat_id},
                }
                async for event in self.coordinator.run(turn, cancel_event):
                    yield event
        finally:
            self._active_requests.pop(request_id, None)

    async def complete_turn(self, *args, **kwargs) -> dict:
        """Drain ``handle_turn`` and return its terminal event.

        Raises:
            ServiceError: If the turn failed or was canceled
        """
        terminal: Optional[dict] = None
        async for event in self.handle_turn(*args, **kwargs):
            if event["event"] in TERMINAL_EVENTS:
                terminal = event
        if terminal and terminal["event"] == "message_done":
            return terminal["data"]
        if terminal and terminal["event"] == "error":
            data = terminal["data"]
            if data["kind"] == UpstreamError.error_code:
                raise UpstreamError(data["message"], detail=data.get("details"))
            raise ServiceError(
                data["message"],
                status_code=500,
                error_code=data["kind"],
                detail=data.get("details"),
            )
        raise CanceledError("chat turn canceled")

    def cancel(self, request_id: str) -> bool:
        """Signal an in-flight turn to stop. Returns False for unknown or finished ids."""
        cancel_event = self._active_requests.get(request_id)
        if cancel_event is None or cancel_event.is_set():
            return False
        cancel_event.set()
        logger.info("chat_request_cancelled", request_id=request_id)
        return True

    def is_active(self, request_id: str) -> bool:
        return request_id in self._active_requests
