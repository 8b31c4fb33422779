from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class CompletionBackendMode(str, Enum):
    """Completion backends the runtime knows how to build."""

    OPENAI = "openai"
    STUB = "stub"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the chat relay."""

    database_url: str = env_field(
        "postgresql://localhost:5432/chatrelay", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behavior for CI: stub completion backend, no network.",
    )
    completion_backend: CompletionBackendMode = env_field(
        CompletionBackendMode.OPENAI, "COMPLETION_BACKEND"
    )
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    bootstrap_api_key: str | None = env_field(
        None,
        "OPENAI_API_KEY",
        description="Seeded as a credential for every model and role when none exist",
    )
    chat_models: list[str] = env_field(
        ["gpt-3.5-turbo", "gpt-4o-mini", "gpt-4o"], "CHAT_MODELS"
    )
    default_chat_model: str = env_field("gpt-3.5-turbo", "DEFAULT_CHAT_MODEL")
    default_system_prompt: str = env_field(
        "You are a helpful assistant. Answer as concisely as possible.",
        "SYSTEM_PROMPT",
    )
    turn_timeout_seconds: float = env_field(
        600.0,
        "TURN_TIMEOUT_SECONDS",
        description="Upper bound on a whole streamed turn; expiry counts as an upstream failure",
    )
    max_context_turns: int = env_field(
        10,
        "MAX_CONTEXT_TURNS",
        description="Prior turns replayed to the backend when a room uses context",
    )
    audit_enabled: bool = env_field(False, "AUDIT_ENABLED")
    audit_sensitive_words: list[str] = env_field([], "AUDIT_SENSITIVE_WORDS")
    privileged_roles: list[str] = env_field(["admin"], "PRIVILEGED_ROLES")
    auth_required: bool = env_field(True, "AUTH_REQUIRED")
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("chatrelay", "JWT_ISSUER")
    jwt_audience: str = env_field("chatrelay-clients", "JWT_AUDIENCE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("completion_backend")
    @classmethod
    def _validate_backend(cls, value: CompletionBackendMode) -> CompletionBackendMode:
        return CompletionBackendMode(value)

    @field_validator(
        "chat_models",
        "audit_sensitive_words",
        "privileged_roles",
        "cors_allow_origins",
        mode="before",
    )
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("turn_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("turn timeout must be positive")
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
