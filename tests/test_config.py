"""Tests for settings, provider profiles and logging helpers."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from contentrelay.config import (
    PROVIDER_PRIORITY,
    CacheBackendMode,
    Settings,
    get_provider_profile,
    get_settings,
    reset_settings_cache,
)
from contentrelay.logging import (
    _add_correlation_id,
    _redact_secrets,
    key_prefix,
    sanitize_error_message,
    set_correlation_id,
)


class TestSettingsFromEnv:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("LISTING_LIMIT", "25")
        monkeypatch.setenv("CACHE_BACKEND", "none")
        monkeypatch.setenv("DEFAULT_PROVIDER", "Gemini")
        monkeypatch.setenv("TOOL_HANDSHAKE", "false")
        settings = Settings.from_env()
        assert settings.listing_limit == 25
        assert settings.cache_backend == CacheBackendMode.NONE
        assert settings.default_provider == "gemini"
        assert settings.tool_handshake is False

    def test_defaults(self):
        settings = Settings()
        assert settings.history_window == 8
        assert settings.memory_max_messages == 50
        assert settings.memory_session_timeout_seconds == 1800
        assert settings.cache_ttl_catalog_seconds == 86400
        assert settings.cache_ttl_schema_seconds == 2700
        assert settings.cache_ttl_listing_seconds == 2100

    @pytest.mark.parametrize(
        "field,value",
        [
            ("listing_limit", 0),
            ("history_window", 0),
            ("memory_max_messages", -1),
            ("tool_request_timeout_seconds", -1.0),
        ],
    )
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(ValidationError):
            Settings(**{field: value})

    def test_unknown_cache_backend_rejected(self):
        with pytest.raises(ValidationError):
            Settings(cache_backend="memcached")

    def test_tool_server_argv(self):
        settings = Settings(tool_server_command="node '/opt/tool server/index.js' --stdio")
        assert settings.tool_server_argv() == ["node", "/opt/tool server/index.js", "--stdio"]

    def test_provider_api_keys(self):
        settings = Settings(groq_api_key="gsk", gemini_api_key=None, openrouter_api_key="or")
        assert settings.provider_api_keys() == {"groq": "gsk", "gemini": None, "openrouter": "or"}

    def test_settings_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("LISTING_LIMIT", "3")
        assert get_settings().listing_limit == first.listing_limit
        reset_settings_cache()
        assert get_settings().listing_limit == 3


class TestProviderProfiles:
    def test_priority(self):
        assert PROVIDER_PRIORITY == ("groq", "gemini", "openrouter")

    def test_budgets(self):
        assert get_provider_profile("groq").context_token_budget == 2500
        assert get_provider_profile("groq").low_throughput
        assert get_provider_profile("openrouter").context_token_budget == 8000
        assert get_provider_profile("GEMINI").context_token_budget == 24000

    def test_unknown_provider_gets_conservative_profile(self):
        profile = get_provider_profile("someone-else")
        assert profile.context_token_budget == 2000
        assert profile.low_throughput

    def test_supports_model(self):
        profile = get_provider_profile("gemini")
        assert profile.supports_model("gemini-2.5-pro")
        assert not profile.supports_model("llama-3.1-8b-instant")
        assert not profile.supports_model(None)


class TestLoggingHelpers:
    def test_key_prefix(self):
        assert key_prefix("blt1234567890abcdef") == "blt1234567"
        assert key_prefix(None) == ""

    def test_sanitize_strips_paths_and_credentials(self):
        text = sanitize_error_message("failed at /home/app/server.js with api_key=abc123 Bearer xyz.987")
        assert "/home/app" not in text
        assert "abc123" not in text
        assert "xyz.987" not in text

    def test_sanitize_caps_length(self):
        assert len(sanitize_error_message("x" * 2000)) == 500

    def test_sanitize_empty(self):
        assert sanitize_error_message("") == "An error occurred"

    def test_redact_processor(self):
        event = _redact_secrets(None, "info", {"event": "x", "api_key": "gsk_abcdef", "tool": "get_all_entries"})
        assert event["api_key"] == "gs***ef"
        assert event["tool"] == "get_all_entries"

    def test_redact_processor_masks_inline_keys(self):
        event = _redact_secrets(
            None, "error", {"event": "provider_check_failed", "error": "rejected key gsk_abcdefghijklmnop123"}
        )
        assert "abcdefghijklmnop" not in event["error"]
        assert event["error"] == "rejected key gsk_***"

    def test_redact_processor_keeps_short_source_prefix(self):
        event = _redact_secrets(None, "info", {"event": "x", "source_key": key_prefix("blt1234567890abcdef")})
        assert event["source_key"] == "blt1234567"

    def test_sanitize_strips_node_stack_frames(self):
        text = sanitize_error_message(
            "TypeError: Cannot read properties of undefined at getEntries (/app/dist/index.js:12:7)"
        )
        assert "index.js" not in text
        assert text.startswith("TypeError: Cannot read properties of undefined")

    def test_correlation_id_added_to_events(self):
        cid = set_correlation_id("query-1")
        event = _add_correlation_id(None, "info", {"event": "tools_selected"})
        assert cid == "query-1"
        assert event["correlation_id"] == "query-1"
