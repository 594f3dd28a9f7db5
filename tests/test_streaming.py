"""Streamed chat turns: persistence on completion, nothing on failure or cancel."""

import asyncio
import time

import pytest

from tenantchat.service.access import AccessGuard
from tenantchat.service.chat import ChatService
from tenantchat.service.embeddings import EmbeddingsService, deterministic_embedding
from tenantchat.service.errors import (
    ChatAccessDeniedError,
    MessageNotFoundError,
    ModelNotAllowedError,
    PlanLimitExceededError,
)
from tenantchat.service.llm import LLMService, SamplingParams
from tenantchat.service.rag import RAGService
from tenantchat.service.reconcile import Regenerate, Replace, Submit
from tenantchat.service.streaming import StreamCoordinator, StreamState, StreamTurn
from tenantchat.storage.memory import MemoryStore
from tenantchat.storage.models import AgentConfig, Message, RagSettings


class ScriptedBackend:
    def __init__(self, fragments=("Hel", "lo", "!"), *, fail_after=None, delay=0.0):
        self.fragments = list(fragments)
        self.fail_after = fail_after
        self.delay = delay
        self.calls = []

    async def stream(self, model, system_prompt, messages, sampling):
        self.calls.append(
            {"model": model, "system_prompt": system_prompt, "messages": messages}
        )
        for idx, fragment in enumerate(self.fragments):
            if self.fail_after is not None and idx == self.fail_after:
                raise RuntimeError("provider exploded with key sk-abcdefghijklmnopqrstuv")
            await asyncio.sleep(self.delay)
            yield fragment


def _msg(msg_id, role="user", text=None):
    return Message(
        id=msg_id, chat_id="", role=role, parts=[{"type": "text", "text": text or msg_id}]
    )


def _build(backend=None, *, timeout_seconds=5.0, embeddings=None):
    store = MemoryStore()
    store.create_tenant("Tenant A", "tenant-a", tenant_id="tenant_a")
    store.create_agent(
        "tenant_a",
        "Support",
        "support",
        AgentConfig(model="gpt-4o-mini", system_prompt="You are support."),
        agent_id="agent_a",
    )
    backend = backend or ScriptedBackend()
    llm = LLMService(backend=backend)
    guard = AccessGuard(store)
    rag = RAGService(store, embeddings or EmbeddingsService("test-embed"))
    coordinator = StreamCoordinator(store, llm, timeout_seconds=timeout_seconds)
    service = ChatService(store, guard, rag, coordinator)
    return store, service, backend


async def _drain(events):
    collected = []
    async for event in events:
        collected.append(event)
    return collected


def _seed_history(store, chat_id="chat_1"):
    store.create_chat("tenant_a", "agent_a", chat_id=chat_id)
    store.append_messages(chat_id, [_msg("u1"), _msg("a1", "assistant")])
    return store.get_chat(chat_id)


async def test_completed_turn_persists_history_and_assistant():
    store, service, backend = _build()
    events = await _drain(
        service.handle_turn(
            "tenant_a", "agent_a", Submit(new_message=_msg("u1")), chat_id="chat_1"
        )
    )
    kinds = [e["event"] for e in events]
    assert kinds == ["turn_started", "token", "token", "token", "message_done"]
    assert "".join(e["data"] for e in events if e["event"] == "token") == "Hello!"

    done = events[-1]["data"]
    history = store.list_messages("chat_1")
    assert [m.id for m in history] == ["u1", done["message_id"]]
    assistant = history[-1]
    assert assistant.role == "assistant"
    assert assistant.text == "Hello!"
    assert assistant.chat_id == "chat_1"
    assert assistant.metadata["model"] == "gpt-4o-mini"
    assert assistant.metadata["latency_ms"] >= 0
    assert assistant.metadata["rag_sources"] == []
    assert assistant.metadata["usage"]["completion_tokens"] == 2
    assert done["metadata"] == assistant.metadata
    assert backend.calls[0]["system_prompt"] == "You are support."
    assert backend.calls[0]["messages"] == [{"role": "user", "content": "u1"}]
    assert len(service.locks) == 0


async def test_canceled_stream_persists_nothing():
    store, service, _ = _build(ScriptedBackend(["t1", "t2", "t3", "t4"]))
    chat = _seed_history(store)
    updated_before = chat.updated_at

    events = []
    async for event in service.handle_turn(
        "tenant_a",
        "agent_a",
        Submit(new_message=_msg("u2")),
        chat_id="chat_1",
        request_id="req_cancel",
    ):
        events.append(event)
        if event["event"] == "token" and event["data"] == "t2":
            assert service.cancel("req_cancel") is True

    assert [e["event"] for e in events] == ["turn_started", "token", "token", "cancel_ack"]
    assert events[-1]["data"] == {"request_id": "req_cancel", "discarded_tokens": 2}
    assert [m.id for m in store.list_messages("chat_1")] == ["u1", "a1"]
    assert store.get_chat("chat_1").updated_at == updated_before
    assert not service.is_active("req_cancel")
    assert service.cancel("req_cancel") is False


async def test_provider_failure_emits_error_and_persists_nothing():
    store, service, _ = _build(ScriptedBackend(["a", "b", "c"], fail_after=1))
    chat = _seed_history(store)
    updated_before = chat.updated_at

    events = await _drain(
        service.handle_turn(
            "tenant_a", "agent_a", Submit(new_message=_msg("u2")), chat_id="chat_1"
        )
    )
    assert events[-1]["event"] == "error"
    error = events[-1]["data"]
    assert error["kind"] == "upstream_failure"
    assert "sk-abcdefghijklmnopqrstuv" not in error["message"]
    assert [m.id for m in store.list_messages("chat_1")] == ["u1", "a1"]
    assert store.get_chat("chat_1").updated_at == updated_before


async def test_stream_timeout_is_a_failure():
    store, service, _ = _build(ScriptedBackend(["slow"], delay=0.5), timeout_seconds=0.05)
    _seed_history(store)
    events = await _drain(
        service.handle_turn(
            "tenant_a", "agent_a", Submit(new_message=_msg("u2")), chat_id="chat_1"
        )
    )
    assert events[-1]["event"] == "error"
    assert events[-1]["data"]["kind"] == "upstream_failure"
    assert events[-1]["data"]["details"] == {"timeout_seconds": 0.05}
    assert [m.id for m in store.list_messages("chat_1")] == ["u1", "a1"]


async def test_malformed_fragment_is_a_failure():
    store, service, _ = _build(ScriptedBackend(["ok", {"bad": True}]))
    events = await _drain(
        service.handle_turn("tenant_a", "agent_a", Submit(new_message=_msg("u1")))
    )
    assert [e["event"] for e in events][-2:] == ["token", "error"]
    chat_id = events[0]["data"]["chat_id"]
    assert store.list_messages(chat_id) == []


async def test_empty_completion_uses_fallback_message():
    store, service, _ = _build(ScriptedBackend([]))
    agent = store.get_agent("agent_a")
    agent.config.fallback_message = "Sorry, could you rephrase?"
    events = await _drain(
        service.handle_turn("tenant_a", "agent_a", Submit(new_message=_msg("u1")), chat_id="c")
    )
    assert events[-1]["event"] == "message_done"
    assert store.list_messages("c")[-1].text == "Sorry, could you rephrase?"

    agent.config.fallback_message = None
    events = await _drain(
        service.handle_turn("tenant_a", "agent_a", Submit(new_message=_msg("u2")), chat_id="c")
    )
    assert events[-1]["event"] == "error"
    assert len(store.list_messages("c")) == 2


async def test_regenerate_replaces_trailing_assistant():
    store, service, _ = _build()
    _seed_history(store)
    events = await _drain(
        service.handle_turn("tenant_a", "agent_a", Regenerate(), chat_id="chat_1")
    )
    new_id = events[-1]["data"]["message_id"]
    assert [m.id for m in store.list_messages("chat_1")] == ["u1", new_id]
    assert new_id != "a1"


async def test_edit_truncates_durable_history():
    store, service, backend = _build()
    _seed_history(store)
    store.append_messages("chat_1", [_msg("u2"), _msg("a2", "assistant")])
    events = await _drain(
        service.handle_turn(
            "tenant_a",
            "agent_a",
            Submit(new_message=_msg("u2b", text="edited"), message_id="a1"),
            chat_id="chat_1",
        )
    )
    new_id = events[-1]["data"]["message_id"]
    assert [m.id for m in store.list_messages("chat_1")] == ["u1", "u2b", new_id]
    assert backend.calls[-1]["messages"] == [
        {"role": "user", "content": "u1"},
        {"role": "user", "content": "edited"},
    ]


async def test_replaying_replace_does_not_duplicate_messages():
    store, service, _ = _build()
    messages = (_msg("u1"),)
    await _drain(
        service.handle_turn("tenant_a", "agent_a", Replace(messages=messages), chat_id="c")
    )
    first = store.list_messages("c")
    await _drain(
        service.handle_turn(
            "tenant_a",
            "agent_a",
            Replace(messages=(first[0], first[1], _msg("u2"))),
            chat_id="c",
        )
    )
    ids = [m.id for m in store.list_messages("c")]
    assert ids[:3] == ["u1", first[1].id, "u2"]
    assert len(ids) == len(set(ids)) == 4


async def test_unknown_message_id_fails_before_model_call():
    store, service, backend = _build()
    _seed_history(store)
    events = service.handle_turn(
        "tenant_a",
        "agent_a",
        Submit(new_message=_msg("u2"), message_id="missing"),
        chat_id="chat_1",
    )
    with pytest.raises(MessageNotFoundError):
        await events.__anext__()
    assert backend.calls == []
    assert len(service.locks) == 0


async def test_disallowed_model_fails_before_model_call():
    store, service, backend = _build()
    store.get_agent("agent_a").config.model = "gpt-4o"
    events = service.handle_turn("tenant_a", "agent_a", Submit(new_message=_msg("u1")))
    with pytest.raises(ModelNotAllowedError) as exc_info:
        await events.__anext__()
    assert exc_info.value.detail["allowed_models"] == ["gpt-4o-mini"]
    assert backend.calls == []
    assert store.list_chats("tenant_a") == []


async def test_reusing_chat_with_other_agent_is_denied():
    store, service, backend = _build()
    store.get_tenant("tenant_a").settings.max_agents = 5
    store.create_agent(
        "tenant_a",
        "Other",
        "other",
        AgentConfig(model="gpt-4o-mini", system_prompt="other"),
        agent_id="agent_b",
    )
    _seed_history(store, "chat_x")
    events = service.handle_turn(
        "tenant_a", "agent_b", Submit(new_message=_msg("u2")), chat_id="chat_x"
    )
    with pytest.raises(ChatAccessDeniedError):
        await events.__anext__()
    assert backend.calls == []
    assert [m.id for m in store.list_messages("chat_x")] == ["u1", "a1"]


async def test_monthly_chat_quota_applies_only_to_new_chats():
    store, service, _ = _build()
    store.get_tenant("tenant_a").settings.max_chats_per_month = 1
    await _drain(
        service.handle_turn("tenant_a", "agent_a", Submit(new_message=_msg("u1")), chat_id="c1")
    )
    await _drain(
        service.handle_turn("tenant_a", "agent_a", Submit(new_message=_msg("u2")), chat_id="c1")
    )
    events = service.handle_turn(
        "tenant_a", "agent_a", Submit(new_message=_msg("u3")), chat_id="c2"
    )
    with pytest.raises(PlanLimitExceededError) as exc_info:
        await events.__anext__()
    assert exc_info.value.detail["limit"] == 1
    assert exc_info.value.detail["used"] == 1


async def test_rejected_turn_on_new_chat_leaves_no_chat():
    store, service, backend = _build()
    store.get_tenant("tenant_a").settings.max_chats_per_month = 1
    events = service.handle_turn(
        "tenant_a",
        "agent_a",
        Submit(new_message=_msg("u1"), message_id="missing"),
        chat_id="c_new",
    )
    with pytest.raises(MessageNotFoundError):
        await events.__anext__()
    assert store.get_chat("c_new") is None
    assert store.count_chats_this_month("tenant_a") == 0

    done = await service.complete_turn(
        "tenant_a", "agent_a", Submit(new_message=_msg("u2")), chat_id="c_other"
    )
    assert done["chat_id"] == "c_other"
    assert store.get_chat("c_other").agent_id == "agent_a"


async def test_failed_and_canceled_turns_on_new_chat_leave_no_chat():
    store, service, _ = _build(ScriptedBackend(["a", "b"], fail_after=1))
    events = await _drain(
        service.handle_turn(
            "tenant_a", "agent_a", Submit(new_message=_msg("u1")), chat_id="c_fail"
        )
    )
    assert events[-1]["event"] == "error"
    assert store.get_chat("c_fail") is None

    store, service, _ = _build(ScriptedBackend(["t1", "t2", "t3"]))
    events = []
    async for event in service.handle_turn(
        "tenant_a",
        "agent_a",
        Submit(new_message=_msg("u1")),
        chat_id="c_cancel",
        request_id="req_new",
    ):
        events.append(event)
        if event["event"] == "token":
            service.cancel("req_new")
    assert events[-1]["event"] == "cancel_ack"
    assert store.get_chat("c_cancel") is None
    assert store.list_chats("tenant_a") == []


async def test_new_chat_gets_server_id_on_completion():
    store, service, _ = _build()
    events = await _drain(
        service.handle_turn("tenant_a", "agent_a", Submit(new_message=_msg("u1")))
    )
    chat_id = events[0]["data"]["chat_id"]
    assert events[-1]["data"]["chat_id"] == chat_id
    assert [c.id for c in store.list_chats("tenant_a")] == [chat_id]
    assert [m.id for m in store.list_messages(chat_id)][0] == "u1"


async def test_quota_filled_during_stream_fails_the_later_chat():
    store, service, _ = _build(ScriptedBackend(["a", "b", "c"], delay=0.001))
    store.get_tenant("tenant_a").settings.max_chats_per_month = 1

    results = await asyncio.gather(
        _drain(
            service.handle_turn("tenant_a", "agent_a", Submit(new_message=_msg("u1")), chat_id="c1")
        ),
        _drain(
            service.handle_turn("tenant_a", "agent_a", Submit(new_message=_msg("u2")), chat_id="c2")
        ),
    )
    terminals = sorted(events[-1]["event"] for events in results)
    assert terminals == ["error", "message_done"]
    failed = next(events[-1] for events in results if events[-1]["event"] == "error")
    assert failed["data"]["kind"] == "plan_limit_exceeded"
    assert len(store.list_chats("tenant_a")) == 1


async def test_slow_query_embedding_does_not_block_other_tasks():
    slow = {"enabled": False}

    def encoder(text):
        if slow["enabled"]:
            time.sleep(0.3)
        return deterministic_embedding(text)

    store, service, _ = _build(embeddings=EmbeddingsService("test-embed", encoder=encoder))
    source = service.rag.add_source("tenant_a", "faq", "refunds within 30 days")
    agent = store.get_agent("agent_a")
    agent.config.rag_settings = RagSettings(enabled=True, min_score=-1.0)
    agent.config.knowledge_source_ids = [source.id]
    slow["enabled"] = True

    gaps = []
    finished = asyncio.Event()

    async def ticker():
        last = time.monotonic()
        while not finished.is_set():
            await asyncio.sleep(0.01)
            now = time.monotonic()
            gaps.append(now - last)
            last = now

    ticking = asyncio.ensure_future(ticker())
    events = await _drain(
        service.handle_turn("tenant_a", "agent_a", Submit(new_message=_msg("u1", text="refunds?")))
    )
    finished.set()
    await ticking

    assert events[-1]["event"] == "message_done"
    assert len(events[-1]["data"]["metadata"]["rag_sources"]) == 1
    assert max(gaps) < 0.2


async def test_concurrent_turns_on_one_chat_do_not_interleave():
    store, service, _ = _build(ScriptedBackend(["a", "b", "c"], delay=0.001))
    store.create_chat("tenant_a", "agent_a", chat_id="chat_1")

    await asyncio.gather(
        _drain(
            service.handle_turn(
                "tenant_a", "agent_a", Submit(new_message=_msg("u1")), chat_id="chat_1"
            )
        ),
        _drain(
            service.handle_turn(
                "tenant_a", "agent_a", Submit(new_message=_msg("u2")), chat_id="chat_1"
            )
        ),
    )
    history = store.list_messages("chat_1")
    assert [m.role for m in history] == ["user", "assistant", "user", "assistant"]
    assert {history[0].id, history[2].id} == {"u1", "u2"}
    assert len(service.locks) == 0


async def test_rag_sources_recorded_on_assistant_message():
    store, service, backend = _build()
    service.rag.add_source("tenant_a", "faq", "refund policy allows returns within 30 days")
    source_id = store.list_knowledge_sources("tenant_a")[0].id
    agent = store.get_agent("agent_a")
    agent.config.rag_settings = RagSettings(enabled=True, min_score=0.1)
    agent.config.knowledge_source_ids = [source_id]

    events = await _drain(
        service.handle_turn(
            "tenant_a",
            "agent_a",
            Submit(new_message=_msg("u1", text="what is the refund policy")),
            chat_id="c",
        )
    )
    metadata = events[-1]["data"]["metadata"]
    assert [s["knowledge_source_id"] for s in metadata["rag_sources"]] == [source_id]
    assert "--- BEGIN CONTEXT ---" in backend.calls[0]["system_prompt"]
    assert "refund policy allows returns" in backend.calls[0]["system_prompt"]


async def test_coordinator_state_transitions():
    store = MemoryStore()
    store.create_tenant("A", "a", tenant_id="t")
    store.create_chat("t", "agent", chat_id="c")
    coordinator = StreamCoordinator(store, LLMService(backend=ScriptedBackend(["x"])))
    turn = StreamTurn(
        chat_id="c",
        model="gpt-4o-mini",
        system_prompt="sys",
        canonical=[_msg("u1")],
        sampling=SamplingParams(temperature=0.2, max_tokens=10),
    )
    assert turn.state is StreamState.PENDING
    events = await _drain(coordinator.run(turn))
    assert turn.state is StreamState.COMPLETED
    assert turn.assistant_message.id == events[-1]["data"]["message_id"]

    canceled = StreamTurn(
        chat_id="c", model="gpt-4o-mini", system_prompt="sys", canonical=[_msg("u2")]
    )
    cancel_event = asyncio.Event()
    cancel_event.set()
    events = await _drain(coordinator.run(canceled, cancel_event))
    assert canceled.state is StreamState.CANCELED
    assert [e["event"] for e in events] == ["cancel_ack"]
    assert len(store.list_messages("c")) == 2
