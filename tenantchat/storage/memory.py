from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from tenantchat.logging import get_logger
from tenantchat.service.reconcile import dedupe_append
from tenantchat.storage.errors import ConstraintViolation
from tenantchat.storage.models import (
    Agent,
    AgentConfig,
    Chat,
    KnowledgeChunk,
    KnowledgeSource,
    Message,
    Tenant,
    TenantSettings,
    new_id,
)

_MUTABLE_AGENT_FIELDS = {"name", "slug", "description", "config", "status"}


class MemoryStore:
    """In-memory backing store for tenants, agents, chats, messages and chunks.

    One instance is built per runtime and injected into every service. All
    reads return copies of the stored sequences so callers cannot mutate the
    durable state behind the store's back.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.agents: Dict[str, Agent] = {}
        self.chats: Dict[str, Chat] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.knowledge_sources: Dict[str, KnowledgeSource] = {}
        # chunks per knowledge source, in insertion order
        self.chunks: Dict[str, List[KnowledgeChunk]] = {}
        # RLock so helpers can nest acquisitions within one thread
        self._data_lock = threading.RLock()

    # tenants
    def create_tenant(
        self,
        name: str,
        slug: str,
        *,
        plan: str = "free",
        settings: Optional[TenantSettings] = None,
        tenant_id: Optional[str] = None,
    ) -> Tenant:
        with self._data_lock:
            tid = tenant_id or new_id("tenant")
            if tid in self.tenants:
                raise ConstraintViolation("tenant already exists", {"tenant_id": tid})
            if any(t.slug == slug for t in self.tenants.values()):
                raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
            tenant = Tenant(
                id=tid,
                name=name,
                slug=slug,
                plan=plan,
                settings=settings or TenantSettings(),
            )
            self.tenants[tid] = tenant
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def list_tenants(self) -> List[Tenant]:
        with self._data_lock:
            return list(self.tenants.values())

    def update_tenant_settings(
        self, tenant_id: str, settings: TenantSettings
    ) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.settings = settings
            tenant.updated_at = datetime.utcnow()
            return tenant

    # agents
    def create_agent(
        self,
        tenant_id: str,
        name: str,
        slug: str,
        config: AgentConfig,
        *,
        description: str = "",
        status: str = "active",
        agent_id: Optional[str] = None,
    ) -> Agent:
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("agent tenant missing", {"tenant_id": tenant_id})
            aid = agent_id or new_id("agent")
            if aid in self.agents:
                raise ConstraintViolation("agent already exists", {"agent_id": aid})
            if any(
                a.tenant_id == tenant_id and a.slug == slug for a in self.agents.values()
            ):
                raise ConstraintViolation(
                    "slug already exists for tenant", {"field": "slug"}
                )
            agent = Agent(
                id=aid,
                tenant_id=tenant_id,
                name=name,
                slug=slug,
                config=config,
                description=description,
                status=status,
            )
            self.agents[aid] = agent
            return agent

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        with self._data_lock:
            return self.agents.get(agent_id)

    def list_agents(self, tenant_id: str) -> List[Agent]:
        with self._data_lock:
            return [a for a in self.agents.values() if a.tenant_id == tenant_id]

    def count_agents(self, tenant_id: str) -> int:
        return len(self.list_agents(tenant_id))

    def update_agent(self, agent_id: str, **changes) -> Optional[Agent]:
        """Apply ``changes`` to an agent; ``id`` and ``tenant_id`` are never reassigned."""
        illegal = set(changes) - _MUTABLE_AGENT_FIELDS
        if illegal:
            raise ConstraintViolation(
                "agent fields are immutable", {"fields": sorted(illegal)}
            )
        with self._data_lock:
            agent = self.agents.get(agent_id)
            if not agent:
                return None
            new_slug = changes.get("slug")
            if new_slug and any(
                a.id != agent_id and a.tenant_id == agent.tenant_id and a.slug == new_slug
                for a in self.agents.values()
            ):
                raise ConstraintViolation(
                    "slug already exists for tenant", {"field": "slug"}
                )
            for key, value in changes.items():
                setattr(agent, key, value)
            agent.updated_at = datetime.utcnow()
            return agent

    def delete_agent(self, agent_id: str) -> bool:
        with self._data_lock:
            return self.agents.pop(agent_id, None) is not None

    # chats
    def create_chat(
        self,
        tenant_id: str,
        agent_id: str,
        *,
        chat_id: Optional[str] = None,
        visitor_id: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> Chat:
        with self._data_lock:
            cid = chat_id or new_id("chat")
            if cid in self.chats:
                raise ConstraintViolation("chat already exists", {"chat_id": cid})
            chat = Chat(
                id=cid,
                tenant_id=tenant_id,
                agent_id=agent_id,
                visitor_id=visitor_id,
                metadata=metadata,
            )
            self.chats[cid] = chat
            self.messages[cid] = []
            return chat

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        with self._data_lock:
            return self.chats.get(chat_id)

    def list_chats(self, tenant_id: str, agent_id: Optional[str] = None) -> List[Chat]:
        with self._data_lock:
            chats = [c for c in self.chats.values() if c.tenant_id == tenant_id]
        if agent_id:
            chats = [c for c in chats if c.agent_id == agent_id]
        return chats

    def count_chats_this_month(
        self, tenant_id: str, *, now: Optional[datetime] = None
    ) -> int:
        now = now or datetime.utcnow()
        start_of_month = datetime(now.year, now.month, 1)
        return sum(
            1 for chat in self.list_chats(tenant_id) if chat.created_at >= start_of_month
        )

    def touch_chat(self, chat_id: str, at: Optional[datetime] = None) -> None:
        with self._data_lock:
            chat = self.chats.get(chat_id)
            if chat:
                chat.updated_at = at or datetime.utcnow()

    # messages
    def list_messages(self, chat_id: str) -> List[Message]:
        with self._data_lock:
            return list(self.messages.get(chat_id, []))

    def append_messages(
        self, chat_id: str, messages: Iterable[Message]
    ) -> List[Message]:
        """Append messages, silently dropping ids that are already durable.

        Returns the messages that were actually appended so callers can tell a
        repeated delivery apart from a new one.
        """
        with self._data_lock:
            if chat_id not in self.chats:
                raise ConstraintViolation("message chat missing", {"chat_id": chat_id})
            durable = self.messages.get(chat_id, [])
            merged, appended = dedupe_append(durable, list(messages))
            for msg in appended:
                msg.chat_id = chat_id
            self.messages[chat_id] = merged
            if appended:
                self.touch_chat(chat_id, appended[-1].created_at)
            return appended

    def replace_messages(self, chat_id: str, messages: Sequence[Message]) -> None:
        """Overwrite the durable history; used only for edit/regenerate truncation."""
        with self._data_lock:
            if chat_id not in self.chats:
                raise ConstraintViolation("message chat missing", {"chat_id": chat_id})
            self.messages[chat_id] = list(messages)

    # knowledge
    def create_knowledge_source(
        self,
        tenant_id: str,
        name: str,
        *,
        kind: str = "text",
        source_id: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> KnowledgeSource:
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation(
                    "knowledge source tenant missing", {"tenant_id": tenant_id}
                )
            sid = source_id or new_id("ks")
            if sid in self.knowledge_sources:
                raise ConstraintViolation(
                    "knowledge source already exists", {"knowledge_source_id": sid}
                )
            source = KnowledgeSource(
                id=sid, tenant_id=tenant_id, name=name, kind=kind, meta=meta
            )
            self.knowledge_sources[sid] = source
            self.chunks[sid] = []
            return source

    def get_knowledge_source(self, source_id: str) -> Optional[KnowledgeSource]:
        with self._data_lock:
            return self.knowledge_sources.get(source_id)

    def list_knowledge_sources(self, tenant_id: str) -> List[KnowledgeSource]:
        with self._data_lock:
            return [
                s for s in self.knowledge_sources.values() if s.tenant_id == tenant_id
            ]

    def replace_chunks(
        self, source_id: str, chunks: Sequence[KnowledgeChunk]
    ) -> None:
        """Swap a source's chunk set wholesale; chunks are never edited in place."""
        with self._data_lock:
            source = self.knowledge_sources.get(source_id)
            if not source:
                raise ConstraintViolation(
                    "knowledge source missing", {"knowledge_source_id": source_id}
                )
            for chunk in chunks:
                if chunk.tenant_id != source.tenant_id:
                    raise ConstraintViolation(
                        "chunk tenant mismatch",
                        {"knowledge_source_id": source_id, "chunk_id": chunk.id},
                    )
            self.chunks[source_id] = list(chunks)
            source.chunk_count = len(chunks)
            source.updated_at = datetime.utcnow()

    def list_chunks(
        self, tenant_id: str, source_ids: Optional[Sequence[str]] = None
    ) -> List[KnowledgeChunk]:
        """Return the tenant's chunks, optionally restricted to ``source_ids``.

        Order is source order from ``source_ids`` (or creation order) and
        chunk insertion order within a source.
        """
        with self._data_lock:
            if source_ids is None:
                ids = [
                    sid
                    for sid, src in self.knowledge_sources.items()
                    if src.tenant_id == tenant_id
                ]
            else:
                ids = list(dict.fromkeys(source_ids))
            results: List[KnowledgeChunk] = []
            for sid in ids:
                source = self.knowledge_sources.get(sid)
                if not source or source.tenant_id != tenant_id:
                    continue
                results.extend(
                    c for c in self.chunks.get(sid, []) if c.tenant_id == tenant_id
                )
            return results

    def seed_demo_data(self) -> None:
        """Install the demo tenant with a support, a sales and a draft ops agent."""
        with self._data_lock:
            if "tenant_demo" in self.tenants:
                return
            self.create_tenant(
                "Demo Company",
                "demo",
                plan="pro",
                settings=TenantSettings(
                    max_agents=5,
                    max_chats_per_month=1000,
                    custom_branding=True,
                    allowed_models=["gpt-4o-mini", "gpt-4o", "claude-sonnet-4-20250514"],
                ),
                tenant_id="tenant_demo",
            )
            self.create_agent(
                "tenant_demo",
                "Support Bot",
                "support",
                AgentConfig(
                    model="gpt-4o-mini",
                    system_prompt=(
                        "You are a helpful customer support assistant for Demo Company.\n"
                        "You help users with their questions about products, orders, and account issues.\n"
                        "Be friendly, professional, and concise. If you don't know something, say so honestly."
                    ),
                    temperature=0.7,
                    max_tokens=1024,
                    welcome_message="Hi! How can I help you today?",
                    fallback_message="I'm not sure I understand. Could you rephrase that?",
                ),
                description="Customer support assistant",
                agent_id="agent_support",
            )
            self.create_agent(
                "tenant_demo",
                "Sales Bot",
                "sales",
                AgentConfig(
                    model="gpt-4o",
                    system_prompt=(
                        "You are a sales assistant for Demo Company.\n"
                        "Your goal is to understand customer needs, answer product questions, and qualify leads.\n"
                        "Be enthusiastic but not pushy. Ask clarifying questions to understand their requirements."
                    ),
                    temperature=0.8,
                    max_tokens=2048,
                    welcome_message="Hello! Interested in our solutions? I'd love to help!",
                ),
                description="Sales qualification assistant",
                agent_id="agent_sales",
            )
            self.create_agent(
                "tenant_demo",
                "Internal Ops",
                "ops",
                AgentConfig(
                    model="gpt-4o-mini",
                    system_prompt=(
                        "You are an internal operations assistant. Help employees with "
                        "HR questions, IT issues, and company policies."
                    ),
                    temperature=0.5,
                    max_tokens=1024,
                ),
                description="Internal operations assistant (draft)",
                status="draft",
                agent_id="agent_ops",
            )
        self.logger.info("demo_data_seeded", tenants=1, agents=3)
