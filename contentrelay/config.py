from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from contentrelay.logging import get_logger

logger = get_logger(__name__)


class ProviderName(str, Enum):
    """Generation providers the pipeline knows how to call."""

    GROQ = "groq"
    GEMINI = "gemini"
    OPENROUTER = "openrouter"


class CacheBackendMode(str, Enum):
    """Where memoized tool results live."""

    REDIS = "redis"
    MEMORY = "memory"
    NONE = "none"


# Fixed priority order for the fallback chain
PROVIDER_PRIORITY: tuple[str, ...] = (
    ProviderName.GROQ.value,
    ProviderName.GEMINI.value,
    ProviderName.OPENROUTER.value,
)


@dataclass(frozen=True)
class ProviderProfile:
    """Static facts about a generation provider.

    ``context_token_budget`` bounds the summarized tool context sent with a
    generation request. Providers flagged ``low_throughput`` sit on tight
    tokens-per-minute quotas, so the summarizer drops to its ultra-compact
    tier for them as soon as raw data exceeds the budget.
    """

    name: str
    default_model: str
    models: tuple[str, ...]
    context_token_budget: int
    low_throughput: bool = False
    supports_streaming: bool = True

    def supports_model(self, model: str | None) -> bool:
        return bool(model) and model in self.models


PROVIDER_PROFILES: dict[str, ProviderProfile] = {
    "groq": ProviderProfile(
        name="groq",
        default_model="llama-3.1-8b-instant",
        models=(
            "llama-3.1-8b-instant",
            "llama-3.3-70b-versatile",
            "gemma2-9b-it",
        ),
        context_token_budget=2500,
        low_throughput=True,
    ),
    "gemini": ProviderProfile(
        name="gemini",
        default_model="gemini-1.5-flash",
        models=(
            "gemini-1.5-pro",
            "gemini-1.5-flash",
            "gemini-2.5-flash-lite",
            "gemini-2.5-flash",
            "gemini-2.5-pro",
        ),
        context_token_budget=24000,
    ),
    "openrouter": ProviderProfile(
        name="openrouter",
        default_model="openai/gpt-oss-20b:free",
        models=(
            "openai/gpt-oss-20b:free",
            "mistralai/mistral-small-3.2-24b-instruct:free",
            "mistralai/mistral-7b-instruct:free",
            "mistralai/mixtral-8x7b-instruct:free",
            "mistralai/mistral-large-2407",
            "meta-llama/llama-3.1-8b-instruct:free",
        ),
        context_token_budget=8000,
    ),
}

# Conservative profile for providers registered at runtime without one
DEFAULT_PROVIDER_PROFILE = ProviderProfile(
    name="unknown",
    default_model="",
    models=(),
    context_token_budget=2000,
    low_throughput=True,
)


def get_provider_profile(provider: str) -> ProviderProfile:
    """Get the profile for a provider, with a conservative default for unknown ones."""
    return PROVIDER_PROFILES.get((provider or "").lower(), DEFAULT_PROVIDER_PROFILE)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the retrieval and generation pipeline."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    cache_backend: CacheBackendMode = env_field(
        CacheBackendMode.REDIS,
        "CACHE_BACKEND",
        description="redis, memory, or none (always miss)",
    )
    # Tool server subprocess
    tool_server_command: str = env_field("npx -y @contentstack/mcp", "TOOL_SERVER_COMMAND")
    tool_server_groups: str = env_field("cma", "TOOL_SERVER_GROUPS")
    tool_server_region: str = env_field("EU", "TOOL_SERVER_REGION")
    tool_request_timeout_seconds: float = env_field(30.0, "TOOL_REQUEST_TIMEOUT_SECONDS")
    tool_restart_grace_seconds: float = env_field(2.0, "TOOL_RESTART_GRACE_SECONDS")
    tool_handshake: bool = env_field(
        True,
        "TOOL_HANDSHAKE",
        description="Send an MCP initialize request after spawn (not awaited)",
    )
    default_branch: str = env_field("main", "DEFAULT_BRANCH")
    listing_limit: int = env_field(10, "LISTING_LIMIT")
    # Result cache TTLs
    cache_ttl_catalog_seconds: int = env_field(24 * 60 * 60, "CACHE_TTL_CATALOG_SECONDS")
    cache_ttl_schema_seconds: int = env_field(45 * 60, "CACHE_TTL_SCHEMA_SECONDS")
    cache_ttl_listing_seconds: int = env_field(35 * 60, "CACHE_TTL_LISTING_SECONDS")
    # Generation providers
    groq_api_key: str | None = env_field(None, "GROQ_API_KEY")
    gemini_api_key: str | None = env_field(None, "GEMINI_API_KEY")
    openrouter_api_key: str | None = env_field(None, "OPENROUTER_API_KEY")
    openrouter_site_url: str = env_field("http://localhost:3001", "SITE_URL")
    openrouter_site_name: str = env_field("Content Relay", "SITE_NAME")
    selection_provider: str = env_field("groq", "SELECTION_PROVIDER")
    selection_model: str = env_field("llama-3.1-8b-instant", "SELECTION_MODEL")
    default_provider: str = env_field("groq", "DEFAULT_PROVIDER")
    provider_timeout_seconds: float = env_field(60.0, "PROVIDER_TIMEOUT_SECONDS")
    # Conversation memory
    history_window: int = env_field(8, "HISTORY_WINDOW")
    memory_max_messages: int = env_field(50, "MEMORY_MAX_MESSAGES")
    memory_session_timeout_seconds: int = env_field(30 * 60, "MEMORY_SESSION_TIMEOUT_SECONDS")
    memory_sweep_interval_seconds: int = env_field(5 * 60, "MEMORY_SWEEP_INTERVAL_SECONDS")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests",
    )

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

    @field_validator("cache_backend")
    @classmethod
    def _validate_cache_backend(cls, value: CacheBackendMode) -> CacheBackendMode:
        return CacheBackendMode(value)

    @field_validator("selection_provider", "default_provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        normalized = (value or "").strip().lower()
        if normalized not in PROVIDER_PROFILES:
            logger.warning("unknown_provider_setting", provider=value)
        return normalized

    @field_validator("tool_request_timeout_seconds", "tool_restart_grace_seconds")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @field_validator("memory_max_messages", "history_window", "listing_limit")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    def tool_server_argv(self) -> List[str]:
        """Split the configured tool server command into argv."""
        return shlex.split(self.tool_server_command)

    def provider_api_keys(self) -> dict[str, str | None]:
        return {
            "groq": self.groq_api_key,
            "gemini": self.gemini_api_key,
            "openrouter": self.openrouter_api_key,
        }


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
