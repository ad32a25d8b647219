from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from contentrelay.config import CacheBackendMode, Settings, get_settings, reset_settings_cache
from contentrelay.logging import get_logger
from contentrelay.service.cache import CacheBackend, NullCache, ResultCache
from contentrelay.service.executor import ToolExecutor
from contentrelay.service.llm import LLMService
from contentrelay.service.pipeline import ContentQueryPipeline
from contentrelay.service.process_manager import ToolProcessManager
from contentrelay.service.providers import build_providers
from contentrelay.service.selector import ToolSelector
from contentrelay.service.summarizer import ContextSummarizer
from contentrelay.storage.memory import ConversationMemory, MemoryCache
from contentrelay.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _build_cache_backend(settings: Settings) -> CacheBackend:
    mode = settings.cache_backend
    if mode == CacheBackendMode.MEMORY:
        return MemoryCache()
    if mode == CacheBackendMode.NONE:
        return NullCache()
    try:
        cache = RedisCache(settings.redis_url)
        cache.verify_connection()
        return cache
    except Exception as exc:
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(exc),
            message="Running without a result cache; every tool call goes to the tool server.",
        )
        return NullCache()


class Runtime:
    """Holds the wired service instances for the host application."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            cache_backend=self.settings.cache_backend.value,
            test_mode=self.settings.test_mode,
        )
        self.cache_backend = _build_cache_backend(self.settings)
        self.cache = ResultCache.from_settings(self.settings, self.cache_backend)
        self.processes = ToolProcessManager(self.settings)
        self.llm = LLMService(
            build_providers(self.settings),
            default_provider=self.settings.default_provider,
            selection_provider=self.settings.selection_provider,
            selection_model=self.settings.selection_model,
        )
        self.memory = ConversationMemory(
            max_messages=self.settings.memory_max_messages,
            session_timeout_seconds=self.settings.memory_session_timeout_seconds,
            sweep_interval_seconds=self.settings.memory_sweep_interval_seconds,
        )
        self.pipeline = ContentQueryPipeline(
            processes=self.processes,
            cache=self.cache,
            selector=ToolSelector(self.llm),
            executor=ToolExecutor(
                self.cache,
                branch=self.settings.default_branch,
                listing_limit=self.settings.listing_limit,
            ),
            summarizer=ContextSummarizer(),
            llm=self.llm,
            memory=self.memory,
            history_window=self.settings.history_window,
            branch=self.settings.default_branch,
        )
        logger.info(
            "runtime_initialized",
            cache=type(self.cache_backend).__name__,
            providers=self.llm.configured_providers(),
            tool_command=self.processes.command[0] if self.processes.command else None,
        )

    async def startup(self) -> None:
        """Start background work; call from the host app's event loop."""
        self.memory.start()

    async def shutdown(self) -> None:
        await self.processes.shutdown_all()
        await self.memory.stop()
        await self.llm.close()
        close = getattr(self.cache_backend, "close", None)
        if close is not None:
            await close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache_backend, RedisCache):
            try:
                try:
                    asyncio.get_running_loop().create_task(runtime.cache_backend.close())
                except RuntimeError:
                    asyncio.run(runtime.cache_backend.close())
            except Exception as exc:
                # Connection may already be closed or bound to a finished loop
                logger.debug("runtime_cache_close_failed", error=str(exc))
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
