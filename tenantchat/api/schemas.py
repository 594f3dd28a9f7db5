from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantchat.content_parts import InvalidPartError, normalize_parts
from tenantchat.service.reconcile import Regenerate, Replace, Submit
from tenantchat.storage.models import (
    Agent,
    AgentConfig,
    KnowledgeSource,
    Message,
    RagSettings,
    new_id,
)

MAX_ID_LENGTH = 128
MAX_MESSAGES = 1000

_VALID_ERROR_CODES = frozenset({
    "not_found",
    "validation_error",
    "plan_limit_exceeded",
    "agent_inactive",
    "conflict",
    "upstream_failure",
    "canceled",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# messages


class MessageIn(BaseModel):
    """Inbound message; ``content`` is accepted for clients that predate ``parts``."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = Field(None, max_length=MAX_ID_LENGTH)
    role: Literal["user", "assistant", "system"] = "user"
    parts: Optional[List[Dict[str, Any]]] = None
    content: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _normalize(self) -> "MessageIn":
        if not self.parts and self.content is None:
            raise ValueError("message requires 'parts' or 'content'")
        try:
            self.parts = normalize_parts(self.parts, self.content)
        except InvalidPartError as exc:
            raise ValueError(str(exc)) from exc
        return self

    def to_message(self, chat_id: str = "") -> Message:
        kwargs: Dict[str, Any] = {}
        if self.created_at is not None:
            kwargs["created_at"] = self.created_at
        return Message(
            id=self.id or new_id("msg"),
            chat_id=chat_id,
            role=self.role,
            parts=list(self.parts or []),
            metadata=self.metadata,
            **kwargs,
        )


class MessageOut(BaseModel):
    id: str
    chat_id: str
    role: str
    parts: List[Dict[str, Any]]
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime

    @classmethod
    def from_message(cls, msg: Message) -> "MessageOut":
        return cls(
            id=msg.id,
            chat_id=msg.chat_id,
            role=msg.role,
            parts=[dict(p) for p in msg.parts],
            metadata=msg.metadata,
            created_at=msg.created_at,
        )


# chat turns


class _ChatRequestBase(BaseModel):
    tenant_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    agent_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    chat_id: Optional[str] = Field(None, max_length=MAX_ID_LENGTH)
    visitor_id: Optional[str] = Field(None, max_length=MAX_ID_LENGTH)
    request_id: Optional[str] = Field(None, max_length=MAX_ID_LENGTH)
    stream: bool = True


class ReplaceChatRequest(_ChatRequestBase):
    operation: Literal["replace"]
    messages: List[MessageIn] = Field(..., max_length=MAX_MESSAGES)

    def to_operation(self) -> Replace:
        return Replace(messages=tuple(m.to_message(self.chat_id or "") for m in self.messages))


class SubmitChatRequest(_ChatRequestBase):
    operation: Literal["submit"]
    message: MessageIn
    message_id: Optional[str] = Field(
        None,
        max_length=MAX_ID_LENGTH,
        description="Edit: replace this message and everything after it",
    )

    def to_operation(self) -> Submit:
        return Submit(
            new_message=self.message.to_message(self.chat_id or ""),
            message_id=self.message_id,
        )


class RegenerateChatRequest(_ChatRequestBase):
    operation: Literal["regenerate"]
    message_id: Optional[str] = Field(None, max_length=MAX_ID_LENGTH)

    def to_operation(self) -> Regenerate:
        return Regenerate(message_id=self.message_id)


ChatRequest = Union[ReplaceChatRequest, SubmitChatRequest, RegenerateChatRequest]


class ChatCancelRequest(BaseModel):
    request_id: str = Field(..., max_length=MAX_ID_LENGTH)


class ChatCancelResponse(BaseModel):
    request_id: str
    cancelled: bool
    message: str


# agents


class RagSettingsIn(BaseModel):
    enabled: bool = False
    top_k: int = Field(5, ge=1, le=50)
    min_score: float = Field(0.3, ge=-1.0, le=1.0)
    include_metadata: bool = True
    max_context_tokens: Optional[int] = Field(None, ge=1)

    def to_settings(self) -> RagSettings:
        return RagSettings(**self.model_dump())


class AgentConfigIn(BaseModel):
    model: str = Field(..., min_length=1)
    system_prompt: str = Field(..., min_length=1)
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(1024, ge=1, le=32768)
    welcome_message: Optional[str] = None
    fallback_message: Optional[str] = None
    rag_settings: Optional[RagSettingsIn] = None
    knowledge_source_ids: List[str] = Field(default_factory=list)

    def to_config(self) -> AgentConfig:
        data = self.model_dump(exclude={"rag_settings"})
        rag = self.rag_settings.to_settings() if self.rag_settings else None
        return AgentConfig(rag_settings=rag, **data)


class AgentConfigPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    model: Optional[str] = Field(None, min_length=1)
    system_prompt: Optional[str] = Field(None, min_length=1)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, ge=1, le=32768)
    welcome_message: Optional[str] = None
    fallback_message: Optional[str] = None
    rag_settings: Optional[RagSettingsIn] = None
    knowledge_source_ids: Optional[List[str]] = None

    def to_changes(self) -> Dict[str, Any]:
        changes = self.model_dump(exclude_unset=True, exclude={"rag_settings"})
        if "rag_settings" in self.model_fields_set:
            changes["rag_settings"] = (
                self.rag_settings.to_settings() if self.rag_settings else None
            )
        return changes


class AgentCreateRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    name: str = Field(..., min_length=1, max_length=200)
    slug: str = Field(..., pattern=r"^[a-z0-9][a-z0-9-]{0,63}$")
    description: str = Field("", max_length=2000)
    status: Literal["active", "inactive", "draft"] = "active"
    config: AgentConfigIn


class AgentUpdateRequest(BaseModel):
    """Partial update; ``id`` and ``tenant_id`` are not accepted."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    slug: Optional[str] = Field(None, pattern=r"^[a-z0-9][a-z0-9-]{0,63}$")
    description: Optional[str] = Field(None, max_length=2000)
    status: Optional[Literal["active", "inactive", "draft"]] = None
    config: Optional[AgentConfigPatch] = None


class AgentResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    slug: str
    description: str
    status: str
    config: Dict[str, Any]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_agent(cls, agent: Agent) -> "AgentResponse":
        cfg = agent.config
        config = {
            "model": cfg.model,
            "system_prompt": cfg.system_prompt,
            "temperature": cfg.temperature,
            "max_tokens": cfg.max_tokens,
            "welcome_message": cfg.welcome_message,
            "fallback_message": cfg.fallback_message,
            "rag_settings": (
                RagSettingsIn(**vars(cfg.rag_settings)).model_dump()
                if cfg.rag_settings
                else None
            ),
            "knowledge_source_ids": list(cfg.knowledge_source_ids),
        }
        return cls(
            id=agent.id,
            tenant_id=agent.tenant_id,
            name=agent.name,
            slug=agent.slug,
            description=agent.description,
            status=agent.status,
            config=config,
            created_at=agent.created_at,
            updated_at=agent.updated_at,
        )


# knowledge


class KnowledgeSourceRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    name: str = Field(..., min_length=1, max_length=200)
    text: str = Field(..., min_length=1)
    kind: Literal["text", "document", "url"] = "text"
    page_number: Optional[int] = Field(None, ge=1)


class KnowledgeReprocessRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    text: str = Field(..., min_length=1)


class KnowledgeSourceResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    kind: str
    status: str
    chunk_count: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_source(cls, source: KnowledgeSource) -> "KnowledgeSourceResponse":
        return cls(
            id=source.id,
            tenant_id=source.tenant_id,
            name=source.name,
            kind=source.kind,
            status=source.status,
            chunk_count=source.chunk_count,
            created_at=source.created_at,
            updated_at=source.updated_at,
        )
