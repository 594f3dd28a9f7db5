from __future__ import annotations

import json
from typing import Annotated, AsyncIterator, Optional

from fastapi import APIRouter, Body, Query
from fastapi.responses import StreamingResponse

from tenantchat.api.error_handling import service_error_response
from tenantchat.api.schemas import (
    AgentCreateRequest,
    AgentResponse,
    AgentUpdateRequest,
    ChatCancelRequest,
    ChatCancelResponse,
    ChatRequest,
    Envelope,
    KnowledgeReprocessRequest,
    KnowledgeSourceRequest,
    KnowledgeSourceResponse,
    MessageOut,
)
from tenantchat.logging import get_correlation_id, get_logger
from tenantchat.service.errors import CanceledError, ServiceError, UpstreamError
from tenantchat.service.runtime import get_runtime
from tenantchat.storage.models import new_id

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _ok(data) -> Envelope:
    correlation_id = get_correlation_id()
    if correlation_id:
        return Envelope(status="ok", data=data, request_id=correlation_id)
    return Envelope(status="ok", data=data)


def _sse(event: dict) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


def _terminal_error(event: dict) -> ServiceError:
    data = event["data"]
    if event["event"] == "cancel_ack":
        return CanceledError("chat turn canceled", detail=data)
    if data["kind"] == UpstreamError.error_code:
        return UpstreamError(data["message"], detail=data.get("details"))
    return ServiceError(
        data["message"],
        status_code=500,
        error_code=data["kind"],
        detail=data.get("details"),
    )


@router.post("/chat", tags=["chat"])
async def chat(body: Annotated[ChatRequest, Body(discriminator="operation")]):
    """Run one chat turn.

    With ``stream`` the response is ``text/event-stream`` where every event is
    one ``data:`` line holding ``{"event", "data"}``:
    ``turn_started`` first, then ``token`` events, then exactly one of
    ``message_done``, ``error`` or ``cancel_ack``. Request-level failures
    (unknown agent, plan limits, bad message ids) are plain JSON errors.
    """
    runtime = get_runtime()
    request_id = body.request_id or new_id("req")
    events = runtime.chat.handle_turn(
        body.tenant_id,
        body.agent_id,
        body.to_operation(),
        chat_id=body.chat_id,
        visitor_id=body.visitor_id,
        request_id=request_id,
    )
    # the first event proves authorization and reconcile succeeded
    first = await events.__anext__()

    if body.stream:

        async def event_stream() -> AsyncIterator[str]:
            try:
                yield _sse(first)
                async for event in events:
                    yield _sse(event)
            finally:
                await events.aclose()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Chat-Request-ID": request_id},
        )

    terminal: Optional[dict] = None
    async for event in events:
        if event["event"] in ("message_done", "error", "cancel_ack"):
            terminal = event
    if terminal is None or terminal["event"] != "message_done":
        return service_error_response(
            _terminal_error(terminal or {"event": "cancel_ack", "data": {}})
        )
    return _ok({"request_id": request_id, **terminal["data"]})


@router.post("/chat/cancel", response_model=Envelope, tags=["chat"])
async def cancel_chat(body: ChatCancelRequest):
    """Cancel an in-flight chat turn; the stream ends with ``cancel_ack``.

    Unknown or already finished request ids are not an error.
    """
    runtime = get_runtime()
    cancelled = runtime.chat.cancel(body.request_id)
    if not cancelled:
        logger.info("chat_cancel_request_not_found", request_id=body.request_id)
    return _ok(
        ChatCancelResponse(
            request_id=body.request_id,
            cancelled=cancelled,
            message=(
                "Request cancelled successfully"
                if cancelled
                else "Request not found or already completed"
            ),
        ).model_dump()
    )


@router.get("/chats/{chat_id}/messages", response_model=Envelope, tags=["chat"])
def list_chat_messages(
    chat_id: str,
    tenant_id: str = Query(..., min_length=1),
    agent_id: str = Query(..., min_length=1),
):
    runtime = get_runtime()
    messages = runtime.chat.get_history(tenant_id, agent_id, chat_id)
    return _ok(
        {
            "chat_id": chat_id,
            "messages": [MessageOut.from_message(m).model_dump(mode="json") for m in messages],
        }
    )


@router.get("/agents", response_model=Envelope, tags=["agents"])
def list_agents(tenant_id: str = Query(..., min_length=1)):
    runtime = get_runtime()
    agents = runtime.agents.list_agents(tenant_id)
    return _ok(
        {"agents": [AgentResponse.from_agent(a).model_dump(mode="json") for a in agents]}
    )


@router.post("/agents", response_model=Envelope, status_code=201, tags=["agents"])
def create_agent(body: AgentCreateRequest):
    runtime = get_runtime()
    agent = runtime.agents.create_agent(
        body.tenant_id,
        name=body.name,
        slug=body.slug,
        config=body.config.to_config(),
        description=body.description,
        status=body.status,
    )
    return _ok({"agent": AgentResponse.from_agent(agent).model_dump(mode="json")})


@router.get("/agents/{agent_id}", response_model=Envelope, tags=["agents"])
def get_agent(agent_id: str, tenant_id: str = Query(..., min_length=1)):
    runtime = get_runtime()
    agent = runtime.agents.get_agent(tenant_id, agent_id)
    return _ok({"agent": AgentResponse.from_agent(agent).model_dump(mode="json")})


@router.patch("/agents/{agent_id}", response_model=Envelope, tags=["agents"])
def update_agent(
    agent_id: str,
    body: AgentUpdateRequest,
    tenant_id: str = Query(..., min_length=1),
):
    runtime = get_runtime()
    agent = runtime.agents.update_agent(
        tenant_id,
        agent_id,
        name=body.name,
        slug=body.slug,
        description=body.description,
        status=body.status,
        config_changes=body.config.to_changes() if body.config else None,
    )
    return _ok({"agent": AgentResponse.from_agent(agent).model_dump(mode="json")})


@router.delete("/agents/{agent_id}", response_model=Envelope, tags=["agents"])
def delete_agent(agent_id: str, tenant_id: str = Query(..., min_length=1)):
    runtime = get_runtime()
    runtime.agents.delete_agent(tenant_id, agent_id)
    return _ok({"deleted": True, "agent_id": agent_id})


@router.post(
    "/knowledge/sources", response_model=Envelope, status_code=201, tags=["knowledge"]
)
def create_knowledge_source(body: KnowledgeSourceRequest):
    runtime = get_runtime()
    runtime.guard.get_tenant(body.tenant_id)
    source = runtime.rag.add_source(
        body.tenant_id,
        body.name,
        body.text,
        kind=body.kind,
        page_number=body.page_number,
    )
    return _ok(
        {"source": KnowledgeSourceResponse.from_source(source).model_dump(mode="json")}
    )


@router.post(
    "/knowledge/sources/{source_id}/reprocess",
    response_model=Envelope,
    tags=["knowledge"],
)
def reprocess_knowledge_source(source_id: str, body: KnowledgeReprocessRequest):
    runtime = get_runtime()
    runtime.guard.get_tenant(body.tenant_id)
    runtime.rag.reprocess_source(source_id, body.text, tenant_id=body.tenant_id)
    source = runtime.store.get_knowledge_source(source_id)
    return _ok(
        {"source": KnowledgeSourceResponse.from_source(source).model_dump(mode="json")}
    )


@router.get("/analytics", response_model=Envelope, tags=["analytics"])
def analytics(
    tenant_id: str = Query(..., min_length=1),
    agent_id: Optional[str] = Query(None),
):
    runtime = get_runtime()
    return _ok(runtime.analytics.summary(tenant_id, agent_id=agent_id))
