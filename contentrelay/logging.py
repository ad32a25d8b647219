from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# One id per visitor query, shared by the selector, executor and provider events
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Field names whose values are credentials
_SECRET_FIELDS = ("api_key", "authorization", "token", "secret", "password")

# Provider and content source keys that can surface inside free-form values
_INLINE_KEY = re.compile(r"\b(gsk_|sk-or-v1-|AIza|blt)[A-Za-z0-9_\-]{12,}")


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation id to the current query context and return it."""
    cid = correlation_id or uuid.uuid4().hex
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask(value: str) -> str:
    return value[:2] + "***" + value[-2:] if len(value) > 4 else "***"


def _redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential fields and any provider or source key pasted into a value."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        if any(fragment in key.lower() for fragment in _SECRET_FIELDS):
            event_dict[key] = _mask(value)
        elif key != "event":
            event_dict[key] = _INLINE_KEY.sub(lambda m: m.group(1) + "***", value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def _configure_structlog(log_level: str = "INFO", json_output: bool = True, development_mode: bool = False) -> None:
    """Install the processor chain used by every ``contentrelay`` logger.

    JSON lines by default; ``LOG_DEV_MODE`` or ``LOG_JSON=false`` switch to the
    coloured console renderer, which formats exceptions itself.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def key_prefix(source_api_key: Optional[str], length: int = 10) -> str:
    """Short, log-safe prefix of a content source key."""
    if not source_api_key:
        return ""
    return source_api_key[:length]


# Internal detail that must not reach model context or a visitor
_ERROR_SCRUBBERS = [
    re.compile(r"\bat\s+\S+\s+\(\S+:\d+:\d+\)"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv|root|app)/[^\s'\"]+"),
    re.compile(r"(?i)[a-z]:\\[^\s]+"),
    re.compile(r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+"),
    re.compile(r"(?i)bearer\s+[a-z0-9._\-]+"),
    _INLINE_KEY,
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]

MAX_ERROR_CHARS = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip paths, credentials and stack frames from tool or provider error text.

    Tool servers are Node processes, so their frames look like
    ``at fn (/app/dist/index.js:12:7)``; provider errors can echo request
    headers. The result is capped at ``MAX_ERROR_CHARS``.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _ERROR_SCRUBBERS:
        result = pattern.sub(replacement, result)

    if len(result) > MAX_ERROR_CHARS:
        result = result[: MAX_ERROR_CHARS - 3] + "..."
    return result
