from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from tenantchat.content_parts import MessagePart, text_of

PLAN_TIERS = ("free", "pro", "enterprise")
AGENT_STATUSES = ("active", "inactive", "draft")
CHAT_STATUSES = ("active", "closed", "archived")
MESSAGE_ROLES = ("user", "assistant", "system")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass
class TenantSettings:
    max_agents: int = 1
    max_chats_per_month: int = 100
    custom_branding: bool = False
    allowed_models: List[str] = field(default_factory=lambda: ["gpt-4o-mini"])


@dataclass
class Tenant:
    id: str
    name: str
    slug: str
    plan: str = "free"
    settings: TenantSettings = field(default_factory=TenantSettings)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class RagSettings:
    enabled: bool = False
    top_k: int = 5
    min_score: float = 0.3
    include_metadata: bool = True
    max_context_tokens: Optional[int] = None


@dataclass
class AgentConfig:
    model: str
    system_prompt: str
    temperature: float = 0.7
    max_tokens: int = 1024
    welcome_message: Optional[str] = None
    fallback_message: Optional[str] = None
    rag_settings: Optional[RagSettings] = None
    knowledge_source_ids: List[str] = field(default_factory=list)


@dataclass
class Agent:
    id: str
    tenant_id: str
    name: str
    slug: str
    config: AgentConfig
    description: str = ""
    status: str = "active"
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Chat:
    id: str
    tenant_id: str
    agent_id: str
    status: str = "active"
    visitor_id: Optional[str] = None
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Message:
    id: str
    chat_id: str
    role: str
    parts: List[MessagePart]
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def text(self) -> str:
        return text_of(self.parts)


@dataclass
class KnowledgeSource:
    id: str
    tenant_id: str
    name: str
    kind: str = "text"
    status: str = "ready"
    chunk_count: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    meta: Dict | None = None


@dataclass(frozen=True)
class KnowledgeChunk:
    id: str
    knowledge_source_id: str
    tenant_id: str
    content: str
    embedding: tuple
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
