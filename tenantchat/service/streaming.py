from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from tenantchat.logging import get_logger, sanitize_error_message
from tenantchat.service.errors import ServiceError, UpstreamError
from tenantchat.service.llm import LLMService, SamplingParams
from tenantchat.service.prompt import build_model_messages
from tenantchat.service.rag import estimate_tokens
from tenantchat.service.reconcile import pending_writes
from tenantchat.storage.memory import MemoryStore
from tenantchat.storage.models import Message, new_id

logger = get_logger(__name__)

DEFAULT_STREAM_TIMEOUT_SECONDS = 30.0


class StreamState(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


@dataclass
class StreamTurn:
    """Everything one streamed turn needs, plus its progress.

    ``canonical`` is the reconciled history the model sees; the store is moved
    to ``canonical + [assistant]`` only when the turn completes. ``create_chat``
    is set when the chat does not exist yet and runs right before that write.
    """

    chat_id: str
    model: str
    system_prompt: str
    canonical: List[Message]
    sampling: SamplingParams = field(default_factory=SamplingParams)
    rag_sources: List[Dict[str, Any]] = field(default_factory=list)
    fallback_message: Optional[str] = None
    request_id: Optional[str] = None
    create_chat: Optional[Callable[[], Any]] = None
    state: StreamState = StreamState.PENDING
    assistant_message: Optional[Message] = None
    error: Optional[ServiceError] = None


def error_event(error: ServiceError) -> dict:
    payload = error.to_dict()
    return {
        "event": "error",
        "data": {
            "kind": payload["kind"],
            "code": payload["kind"],
            "message": payload["message"],
            "details": payload.get("details", {}),
        },
    }


class StreamCoordinator:
    """Runs one model stream and decides what becomes durable.

    Yields events:
    - {"event": "token", "data": "fragment"}
    - {"event": "message_done", "data": {"message_id", "chat_id", "content", "metadata"}}
    - {"event": "error", "data": {"kind", "code", "message", "details"}}
    - {"event": "cancel_ack", "data": {"request_id", "discarded_tokens"}}

    Exactly one terminal event is emitted. Only a completed turn writes to the
    store; failed and canceled turns leave the chat untouched.
    """

    def __init__(
        self,
        store: MemoryStore,
        llm: LLMService,
        *,
        timeout_seconds: float = DEFAULT_STREAM_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.llm = llm
        self.timeout_seconds = timeout_seconds

    async def run(
        self, turn: StreamTurn, cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[dict]:
        started = time.monotonic()
        deadline = started + self.timeout_seconds
        model_messages = build_model_messages(turn.canonical)
        buffer: List[str] = []

        try:
            fragments = self.llm.stream(
                turn.model, turn.system_prompt, model_messages, turn.sampling
            )
        except ServiceError as exc:
            yield self._fail(turn, exc)
            return

        turn.state = StreamState.STREAMING
        iterator = fragments.__aiter__()
        try:
            while True:
                if cancel_event and cancel_event.is_set():
                    yield self._cancel(turn, buffer)
                    return
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                try:
                    fragment = await asyncio.wait_for(
                        iterator.__anext__(), timeout=remaining
                    )
                except StopAsyncIteration:
                    break
                if not isinstance(fragment, str):
                    yield self._fail(
                        turn,
                        UpstreamError(
                            "malformed fragment from model provider",
                            detail={"fragment_type": type(fragment).__name__},
                        ),
                    )
                    return
                if cancel_event and cancel_event.is_set():
                    yield self._cancel(turn, buffer)
                    return
                buffer.append(fragment)
                yield {"event": "token", "data": fragment}
        except asyncio.TimeoutError:
            yield self._fail(
                turn,
                UpstreamError(
                    "model stream timed out",
                    detail={"timeout_seconds": self.timeout_seconds},
                ),
            )
            return
        except ServiceError as exc:
            yield self._fail(turn, exc)
            return
        except Exception as exc:
            logger.error(
                "stream_provider_error",
                chat_id=turn.chat_id,
                request_id=turn.request_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            yield self._fail(
                turn, UpstreamError(sanitize_error_message(str(exc)) or "model provider failed")
            )
            return
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as exc:
                    logger.debug("stream_close_failed", error=str(exc))

        content = "".join(buffer)
        if not content.strip():
            if not turn.fallback_message:
                yield self._fail(turn, UpstreamError("model returned no content"))
                return
            content = turn.fallback_message

        latency_ms = int((time.monotonic() - started) * 1000)
        prompt_tokens = estimate_tokens(turn.system_prompt) + sum(
            estimate_tokens(m["content"]) for m in model_messages
        )
        completion_tokens = estimate_tokens(content)
        assistant = Message(
            id=new_id("msg"),
            chat_id=turn.chat_id,
            role="assistant",
            parts=[{"type": "text", "text": content}],
            metadata={
                "model": turn.model,
                "latency_ms": latency_ms,
                "rag_sources": list(turn.rag_sources),
                "usage": {
                    "prompt_tokens": prompt_tokens,
                    "completion_tokens": completion_tokens,
                    "total_tokens": prompt_tokens + completion_tokens,
                },
            },
        )

        try:
            self._persist(turn, assistant)
        except ServiceError as exc:
            # quota filled up by another chat while this one streamed
            yield self._fail(turn, exc)
            return
        except Exception as exc:
            logger.error(
                "stream_persist_failed",
                chat_id=turn.chat_id,
                request_id=turn.request_id,
                error=str(exc),
            )
            yield self._fail(
                turn,
                ServiceError(
                    "failed to save chat turn", status_code=500, error_code="server_error"
                ),
            )
            return

        turn.state = StreamState.COMPLETED
        turn.assistant_message = assistant
        logger.info(
            "stream_completed",
            chat_id=turn.chat_id,
            request_id=turn.request_id,
            model=turn.model,
            latency_ms=latency_ms,
            fragments=len(buffer),
            rag_sources=len(turn.rag_sources),
        )
        yield {
            "event": "message_done",
            "data": {
                "message_id": assistant.id,
                "chat_id": turn.chat_id,
                "content": content,
                "metadata": assistant.metadata,
            },
        }

    def _persist(self, turn: StreamTurn, assistant: Message) -> None:
        if turn.create_chat is not None:
            turn.create_chat()
        final = [*turn.canonical, assistant]
        truncated, to_append = pending_writes(
            self.store.list_messages(turn.chat_id), final
        )
        if truncated is not None:
            self.store.replace_messages(turn.chat_id, truncated)
        self.store.append_messages(turn.chat_id, to_append)

    def _fail(self, turn: StreamTurn, error: ServiceError) -> dict:
        turn.state = StreamState.FAILED
        turn.error = error
        logger.warning(
            "stream_failed",
            chat_id=turn.chat_id,
            request_id=turn.request_id,
            kind=error.kind,
            error=error.message,
        )
        return error_event(error)

    def _cancel(self, turn: StreamTurn, buffer: List[str]) -> dict:
        turn.state = StreamState.CANCELED
        logger.info(
            "stream_canceled",
            chat_id=turn.chat_id,
            request_id=turn.request_id,
            discarded_tokens=len(buffer),
        )
        return {
            "event": "cancel_ack",
            "data": {"request_id": turn.request_id, "discarded_tokens": len(buffer)},
        }
