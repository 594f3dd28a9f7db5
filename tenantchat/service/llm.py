from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Protocol

from openai import AsyncOpenAI

from tenantchat.config import ModelProvider, parse_model_id
from tenantchat.logging import get_logger
from tenantchat.service.errors import UpstreamError, ValidationError

logger = get_logger(__name__)


@dataclass(frozen=True)
class SamplingParams:
    temperature: float = 0.7
    max_tokens: int = 1024


class ModelBackend(Protocol):
    def stream(
        self,
        model: str,
        system_prompt: str,
        messages: List[dict],
        sampling: SamplingParams,
    ) -> AsyncIterator[str]: ...


class OpenAIChatBackend:
    """Streams chat completions from an OpenAI-compatible endpoint."""

    provider = ModelProvider.OPENAI

    def __init__(
        self,
        *,
        api_key: str,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def stream(
        self,
        model: str,
        system_prompt: str,
        messages: List[dict],
        sampling: SamplingParams,
    ) -> AsyncIterator[str]:
        response = await self.client.chat.completions.create(
            model=model,
            messages=[{"role": "system", "content": system_prompt}, *messages],
            temperature=sampling.temperature,
            max_tokens=sampling.max_tokens,
            stream=True,
        )
        async for chunk in response:
            choices = getattr(chunk, "choices", None) or []
            if not choices:
                continue
            delta = getattr(choices[0], "delta", None)
            text = getattr(delta, "content", None) if delta is not None else None
            if text:
                yield text


class EchoBackend:
    """Deterministic offline backend used when no provider key is configured.

    Replies by echoing the latest user message word by word, which keeps the
    whole pipeline runnable in tests and local development.
    """

    def __init__(self, *, delay_seconds: float = 0.0) -> None:
        self.delay_seconds = delay_seconds

    async def stream(
        self,
        model: str,
        system_prompt: str,
        messages: List[dict],
        sampling: SamplingParams,
    ) -> AsyncIterator[str]:
        last_user = next(
            (m["content"] for m in reversed(messages) if m.get("role") == "user"), ""
        )
        words = f"[{model}] {last_user}".split()
        for idx, word in enumerate(words[: max(1, sampling.max_tokens)]):
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            yield word if idx == 0 else f" {word}"


class LLMService:
    """Model executor that delegates to a pluggable streaming backend."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        backend: Optional[ModelBackend] = None,
    ) -> None:
        self.backend = backend or self._build_backend(api_key=api_key, base_url=base_url)
        self._provider_locked = backend is None and api_key is not None

    def stream(
        self,
        model_id: str,
        system_prompt: str,
        messages: List[dict],
        sampling: SamplingParams,
    ) -> AsyncIterator[str]:
        """Start one streamed completion; fragments arrive as text deltas.

        Raises:
            ValidationError: If ``model_id`` cannot be parsed
            UpstreamError: If the configured backend cannot serve the provider
        """
        try:
            provider, model_name = parse_model_id(model_id)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"model": model_id}) from exc
        if self._provider_locked and provider is not ModelProvider.OPENAI:
            raise UpstreamError(
                "model provider not configured",
                detail={"model": model_id, "provider": provider.value},
            )
        return self.backend.stream(model_name, system_prompt, messages, sampling)

    def _build_backend(
        self, *, api_key: Optional[str], base_url: Optional[str]
    ) -> ModelBackend:
        if api_key:
            logger.info("llm_backend_selected", backend="openai", base_url=base_url)
            return OpenAIChatBackend(api_key=api_key, base_url=base_url)
        logger.info("llm_backend_selected", backend="echo")
        return EchoBackend()
