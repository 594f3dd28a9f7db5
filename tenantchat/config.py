from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Tuple

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantchat.logging import get_logger

logger = get_logger(__name__)


class ModelProvider(str, Enum):
    """Model providers an agent can be configured against."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


@dataclass(frozen=True)
class ModelInfo:
    name: str
    provider: ModelProvider
    context_window: int


# Models a tenant plan may list in ``allowed_models``
MODEL_INFO: dict[str, ModelInfo] = {
    "gpt-4o": ModelInfo("GPT-4o", ModelProvider.OPENAI, 128000),
    "gpt-4o-mini": ModelInfo("GPT-4o Mini", ModelProvider.OPENAI, 128000),
    "gpt-4-turbo": ModelInfo("GPT-4 Turbo", ModelProvider.OPENAI, 128000),
    "claude-sonnet-4-20250514": ModelInfo(
        "Claude Sonnet 4", ModelProvider.ANTHROPIC, 200000
    ),
    "claude-3-5-haiku-20241022": ModelInfo(
        "Claude 3.5 Haiku", ModelProvider.ANTHROPIC, 200000
    ),
    "gemini-2.0-flash": ModelInfo("Gemini 2.0 Flash", ModelProvider.GOOGLE, 1000000),
}


def parse_model_id(model_id: str) -> Tuple[ModelProvider, str]:
    """Split a model id into ``(provider, model_name)``.

    Accepts both ``provider/model`` strings (``openai/gpt-4o-mini``) and the
    bare ids registered in ``MODEL_INFO``.

    Raises:
        ValueError: If the id is empty, malformed, or names an unknown provider
    """
    if not model_id or not model_id.strip():
        raise ValueError("model id is empty")
    if "/" in model_id:
        provider, _, name = model_id.partition("/")
        if not provider or not name:
            raise ValueError(
                f'invalid model id "{model_id}"; expected "provider/model"'
            )
        try:
            return ModelProvider(provider.lower()), name
        except ValueError as exc:
            supported = ", ".join(p.value for p in ModelProvider)
            raise ValueError(
                f'unknown provider "{provider}" in model id "{model_id}"; supported: {supported}'
            ) from exc
    info = MODEL_INFO.get(model_id)
    if info is None:
        raise ValueError(f'unknown model id "{model_id}"')
    return info.provider, model_id


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the chat pipeline."""

    default_model: str = env_field("gpt-4o-mini", "DEFAULT_MODEL")
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    embedding_model_id: str = env_field("text-embedding-3-small", "EMBEDDING_MODEL_ID")
    embedding_dim: int = env_field(64, "EMBEDDING_DIM", ge=8)
    stream_timeout_seconds: float = env_field(
        30.0,
        "STREAM_TIMEOUT_SECONDS",
        gt=0,
        description="Hard ceiling on the duration of one streamed model turn",
    )
    chunk_size_chars: int = env_field(1000, "CHUNK_SIZE_CHARS", ge=64)
    chunk_overlap_chars: int = env_field(200, "CHUNK_OVERLAP_CHARS", ge=0)
    default_top_k: int = env_field(5, "RAG_DEFAULT_TOP_K", ge=1)
    default_min_score: float = env_field(0.3, "RAG_DEFAULT_MIN_SCORE")
    seed_demo_data: bool = env_field(True, "SEED_DEMO_DATA")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("default_model")
    @classmethod
    def _validate_default_model(cls, value: str) -> str:
        parse_model_id(value)
        return value

    @field_validator("chunk_overlap_chars")
    @classmethod
    def _validate_overlap(cls, value: int, info) -> int:
        chunk_size = info.data.get("chunk_size_chars")
        if chunk_size is not None and value >= chunk_size:
            logger.warning(
                "chunk_overlap_clamped",
                chunk_size_chars=chunk_size,
                chunk_overlap_chars=value,
            )
            return chunk_size // 2
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
