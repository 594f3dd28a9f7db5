from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to client-visible errors.

    Every error carries a stable ``error_code`` (what the caller sees), an HTTP
    ``status_code``, and a ``kind`` used for internal classification and logs.
    ``kind`` and ``error_code`` differ only where two internal failures must
    look identical from outside (cross-tenant access vs. absence).
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_dict(self) -> dict:
        """Client-facing error object used by the stream and JSON envelopes."""
        payload = {"kind": self.error_code, "message": self.message}
        if self.detail:
            payload["details"] = self.detail
        return payload


class ValidationError(ServiceError):
    """Request shape is malformed (400)."""
    status_code = 400
    error_code = "validation_error"
    kind = "validation_error"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    kind = "not_found"


class TenantNotFoundError(NotFoundError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__("tenant not found", detail={"tenant_id": tenant_id})


class AgentNotFoundError(NotFoundError):
    """Agent absent or owned by another tenant; both cases read the same."""

    def __init__(self, agent_id: str) -> None:
        super().__init__("agent not found", detail={"agent_id": agent_id})


class ChatNotFoundError(NotFoundError):
    def __init__(self, chat_id: str) -> None:
        super().__init__("chat not found", detail={"chat_id": chat_id})


class MessageNotFoundError(NotFoundError):
    def __init__(self, message_id: Optional[str]) -> None:
        super().__init__("message not found", detail={"message_id": message_id})


class AccessDeniedError(NotFoundError):
    """Cross-tenant or cross-agent reference.

    Rendered exactly like a 404 so callers cannot probe for resources owned by
    someone else; only ``kind`` tells them apart in logs.
    """

    kind = "access_denied"


class ChatAccessDeniedError(AccessDeniedError):
    def __init__(self, chat_id: str) -> None:
        super().__init__("chat not found", detail={"chat_id": chat_id})


class AgentInactiveError(ServiceError):
    """Agent exists but is not accepting chats (409)."""
    status_code = 409
    error_code = "agent_inactive"
    kind = "agent_inactive"

    def __init__(self, agent_id: str, status: str) -> None:
        super().__init__(
            "agent is not active", detail={"agent_id": agent_id, "status": status}
        )


class PlanLimitExceededError(ServiceError):
    """Plan quota reached or feature not included in the plan (403)."""
    status_code = 403
    error_code = "plan_limit_exceeded"
    kind = "plan_limit_exceeded"

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail={**(detail or {}), "upgrade_required": True})


class ModelNotAllowedError(PlanLimitExceededError):
    def __init__(self, model: str, allowed_models: list[str]) -> None:
        super().__init__(
            f"model {model} not allowed",
            detail={"model": model, "allowed_models": list(allowed_models)},
        )


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate slug (409)."""
    status_code = 409
    error_code = "conflict"
    kind = "conflict"


class UpstreamError(ServiceError):
    """Model or embedding provider failed or timed out (502)."""
    status_code = 502
    error_code = "upstream_failure"
    kind = "upstream_failure"


class CanceledError(ServiceError):
    """Turn stopped by the client (499)."""
    status_code = 499
    error_code = "canceled"
    kind = "canceled"


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "TenantNotFoundError",
    "AgentNotFoundError",
    "ChatNotFoundError",
    "MessageNotFoundError",
    "AccessDeniedError",
    "ChatAccessDeniedError",
    "AgentInactiveError",
    "PlanLimitExceededError",
    "ModelNotAllowedError",
    "ConflictError",
    "UpstreamError",
    "CanceledError",
]
