from __future__ import annotations

from dataclasses import replace
from typing import Iterable, List, Optional

from tenantchat.logging import get_logger
from tenantchat.service.access import AccessGuard
from tenantchat.service.errors import ConflictError, NotFoundError, ValidationError
from tenantchat.storage.errors import ConstraintViolation
from tenantchat.storage.memory import MemoryStore
from tenantchat.storage.models import AGENT_STATUSES, Agent, AgentConfig

logger = get_logger(__name__)


class AgentService:
    """Tenant-scoped agent management with plan enforcement."""

    def __init__(self, store: MemoryStore, guard: AccessGuard) -> None:
        self.store = store
        self.guard = guard

    def list_agents(self, tenant_id: str) -> List[Agent]:
        self.guard.get_tenant(tenant_id)
        return self.store.list_agents(tenant_id)

    def get_agent(self, tenant_id: str, agent_id: str) -> Agent:
        self.guard.get_tenant(tenant_id)
        return self.guard.get_agent(tenant_id, agent_id)

    def create_agent(
        self,
        tenant_id: str,
        *,
        name: str,
        slug: str,
        config: AgentConfig,
        description: str = "",
        status: str = "active",
    ) -> Agent:
        """Create an agent after the plan's agent count and model checks.

        Raises:
            TenantNotFoundError: Unknown tenant
            PlanLimitExceededError: ``max_agents`` reached or model not in plan
            ConflictError: ``slug`` already used by another agent of the tenant
        """
        if not name or not slug:
            raise ValidationError("name and slug are required")
        if not config.model or not config.system_prompt:
            raise ValidationError("config.model and config.system_prompt are required")
        self._check_status(status)
        tenant = self.guard.get_tenant(tenant_id)
        self.guard.check_agent_quota(tenant)
        self.guard.check_model_allowed(tenant, config.model)
        self._check_sources(tenant_id, config.knowledge_source_ids)
        try:
            agent = self.store.create_agent(
                tenant_id,
                name,
                slug,
                config,
                description=description,
                status=status,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info(
            "agent_created",
            tenant_id=tenant_id,
            agent_id=agent.id,
            model=config.model,
            status=status,
        )
        return agent

    def update_agent(
        self,
        tenant_id: str,
        agent_id: str,
        *,
        name: Optional[str] = None,
        slug: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[str] = None,
        config_changes: Optional[dict] = None,
    ) -> Agent:
        """Apply a partial update; ``id`` and ``tenant_id`` can never change.

        ``config_changes`` is merged field by field over the current config.
        """
        tenant = self.guard.get_tenant(tenant_id)
        agent = self.guard.get_agent(tenant_id, agent_id)

        changes: dict = {}
        if name is not None:
            changes["name"] = name
        if slug is not None:
            changes["slug"] = slug
        if description is not None:
            changes["description"] = description
        if status is not None:
            self._check_status(status)
            changes["status"] = status
        if config_changes:
            unknown = set(config_changes) - set(AgentConfig.__dataclass_fields__)
            if unknown:
                raise ValidationError(
                    "unknown agent config fields", detail={"fields": sorted(unknown)}
                )
            next_config = replace(agent.config, **config_changes)
            if "model" in config_changes:
                self.guard.check_model_allowed(tenant, next_config.model)
            if "knowledge_source_ids" in config_changes:
                self._check_sources(tenant_id, next_config.knowledge_source_ids)
            changes["config"] = next_config

        try:
            updated = self.store.update_agent(agent_id, **changes)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info(
            "agent_updated",
            tenant_id=tenant_id,
            agent_id=agent_id,
            fields=sorted(changes),
        )
        return updated

    def delete_agent(self, tenant_id: str, agent_id: str) -> None:
        self.guard.get_tenant(tenant_id)
        self.guard.get_agent(tenant_id, agent_id)
        self.store.delete_agent(agent_id)
        logger.info("agent_deleted", tenant_id=tenant_id, agent_id=agent_id)

    def _check_status(self, status: str) -> None:
        if status not in AGENT_STATUSES:
            raise ValidationError(
                "invalid agent status",
                detail={"status": status, "allowed": list(AGENT_STATUSES)},
            )

    def _check_sources(self, tenant_id: str, source_ids: Iterable[str]) -> None:
        for source_id in source_ids:
            source = self.store.get_knowledge_source(source_id)
            if not source or source.tenant_id != tenant_id:
                raise NotFoundError(
                    "knowledge source not found",
                    detail={"knowledge_source_id": source_id},
                )
