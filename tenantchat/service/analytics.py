from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from tenantchat.service.access import AccessGuard
from tenantchat.storage.memory import MemoryStore


def period_starts(now: datetime) -> dict:
    """Start of today, of the current week (Sunday) and of the current month."""
    start_of_day = datetime(now.year, now.month, now.day)
    # isoweekday: Monday=1 .. Sunday=7
    start_of_week = start_of_day - timedelta(days=now.isoweekday() % 7)
    start_of_month = datetime(now.year, now.month, 1)
    return {"day": start_of_day, "week": start_of_week, "month": start_of_month}


class AnalyticsService:
    def __init__(self, store: MemoryStore, guard: AccessGuard) -> None:
        self.store = store
        self.guard = guard

    def summary(
        self,
        tenant_id: str,
        *,
        agent_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        """Usage summary for a tenant, optionally narrowed to one of its agents.

        The quota block always counts the whole tenant, since the monthly chat
        limit is a tenant-wide allowance.
        """
        tenant = self.guard.get_tenant(tenant_id)
        if agent_id:
            self.guard.get_agent(tenant_id, agent_id)
        now = now or datetime.utcnow()
        starts = period_starts(now)

        agents = self.store.list_agents(tenant_id)
        chats = self.store.list_chats(tenant_id, agent_id)
        messages_by_chat = {chat.id: self.store.list_messages(chat.id) for chat in chats}

        role_counts = {"user": 0, "assistant": 0}
        total_messages = 0
        for msgs in messages_by_chat.values():
            total_messages += len(msgs)
            for msg in msgs:
                if msg.role in role_counts:
                    role_counts[msg.role] += 1

        chats_this_month = self.store.count_chats_this_month(tenant_id, now=now)
        limit = tenant.settings.max_chats_per_month
        quota_percentage = round(chats_this_month / limit * 100) if limit else 0

        agent_stats = []
        for agent in agents:
            agent_chats = [c for c in chats if c.agent_id == agent.id]
            agent_stats.append(
                {
                    "agent_id": agent.id,
                    "name": agent.name,
                    "status": agent.status,
                    "model": agent.config.model,
                    "total_chats": len(agent_chats),
                    "total_messages": sum(
                        len(messages_by_chat[c.id]) for c in agent_chats
                    ),
                }
            )

        return {
            "tenant": {"id": tenant.id, "name": tenant.name, "plan": tenant.plan},
            "summary": {
                "total_agents": len(agents),
                "active_agents": sum(1 for a in agents if a.status == "active"),
                "total_chats": len(chats),
                "total_messages": total_messages,
                "user_messages": role_counts["user"],
                "assistant_messages": role_counts["assistant"],
            },
            "period": {
                "chats_today": sum(1 for c in chats if c.created_at >= starts["day"]),
                "chats_this_week": sum(
                    1 for c in chats if c.created_at >= starts["week"]
                ),
                "chats_this_month": sum(
                    1 for c in chats if c.created_at >= starts["month"]
                ),
                "quota_used": chats_this_month,
                "quota_limit": limit,
                "quota_percentage": quota_percentage,
            },
            "agents": agent_stats,
        }
