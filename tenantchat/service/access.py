from __future__ import annotations

from typing import Optional

from tenantchat.logging import get_logger
from tenantchat.service.errors import (
    AgentInactiveError,
    AgentNotFoundError,
    ChatAccessDeniedError,
    ModelNotAllowedError,
    PlanLimitExceededError,
    TenantNotFoundError,
)
from tenantchat.storage.memory import MemoryStore
from tenantchat.storage.models import Agent, Tenant

logger = get_logger(__name__)


class AccessGuard:
    """Tenant isolation, agent availability and plan checks.

    Every check runs before any reconcile or model call. ``authorize`` is a
    pure read of the store; quota helpers count existing rows and never
    reserve capacity.
    """

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def get_tenant(self, tenant_id: str) -> Tenant:
        tenant = self.store.get_tenant(tenant_id)
        if not tenant:
            raise TenantNotFoundError(tenant_id)
        return tenant

    def get_agent(self, tenant_id: str, agent_id: str) -> Agent:
        """Return the tenant's agent; a foreign agent reads exactly like a missing one."""
        agent = self.store.get_agent(agent_id)
        if not agent or agent.tenant_id != tenant_id:
            if agent:
                logger.info(
                    "agent_access_denied",
                    tenant_id=tenant_id,
                    agent_id=agent_id,
                )
            raise AgentNotFoundError(agent_id)
        return agent

    def authorize(
        self, tenant_id: str, agent_id: str, chat_id: Optional[str] = None
    ) -> Agent:
        """Check that ``tenant_id`` may chat with ``agent_id`` (in ``chat_id``).

        Raises:
            TenantNotFoundError: Unknown tenant
            AgentNotFoundError: Unknown agent or agent owned by another tenant
            AgentInactiveError: Agent status is not ``active``
            ModelNotAllowedError: Agent model is outside the tenant's plan
            ChatAccessDeniedError: ``chat_id`` belongs to another tenant or agent
        """
        tenant = self.get_tenant(tenant_id)
        agent = self.get_agent(tenant_id, agent_id)
        if agent.status != "active":
            raise AgentInactiveError(agent_id, agent.status)
        self.check_model_allowed(tenant, agent.config.model)
        if chat_id:
            chat = self.store.get_chat(chat_id)
            if chat and (chat.tenant_id != tenant_id or chat.agent_id != agent_id):
                logger.warning(
                    "chat_access_denied",
                    tenant_id=tenant_id,
                    agent_id=agent_id,
                    chat_id=chat_id,
                )
                raise ChatAccessDeniedError(chat_id)
        return agent

    def check_model_allowed(self, tenant: Tenant, model: str) -> None:
        allowed = tenant.settings.allowed_models
        if model not in allowed:
            raise ModelNotAllowedError(model, allowed)

    def check_chat_quota(self, tenant: Tenant) -> None:
        used = self.store.count_chats_this_month(tenant.id)
        limit = tenant.settings.max_chats_per_month
        if used >= limit:
            raise PlanLimitExceededError(
                "monthly chat limit reached",
                detail={"limit": limit, "used": used, "plan": tenant.plan},
            )

    def check_agent_quota(self, tenant: Tenant) -> None:
        used = self.store.count_agents(tenant.id)
        limit = tenant.settings.max_agents
        if used >= limit:
            raise PlanLimitExceededError(
                f"agent limit reached ({limit} for {tenant.plan} plan)",
                detail={"limit": limit, "used": used, "plan": tenant.plan},
            )
