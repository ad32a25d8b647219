from __future__ import annotations

import re
from typing import Any, Optional, Protocol

from contentrelay.config import Settings
from contentrelay.logging import get_logger, key_prefix, sanitize_error_message
from contentrelay.service.tools import CATALOG_METHOD, SCHEMA_TOOL

logger = get_logger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.\-]")


class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...


class NullCache:
    """Backend that never stores anything; every read is a miss."""

    async def get(self, key: str) -> Optional[Any]:
        return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        return None

    async def close(self) -> None:
        return None


class ResultCache:
    """Memoizes read-only tool results under ``tenant:sourceKeyPrefix:tool:branch``.

    Backend failures are logged and treated as misses; the pipeline keeps
    working with no cache at all.
    """

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        *,
        ttl_catalog_seconds: int = 24 * 60 * 60,
        ttl_schema_seconds: int = 45 * 60,
        ttl_listing_seconds: int = 35 * 60,
    ) -> None:
        self.backend: CacheBackend = backend if backend is not None else NullCache()
        self.ttl_catalog_seconds = ttl_catalog_seconds
        self.ttl_schema_seconds = ttl_schema_seconds
        self.ttl_listing_seconds = ttl_listing_seconds

    @classmethod
    def from_settings(cls, settings: Settings, backend: Optional[CacheBackend]) -> "ResultCache":
        return cls(
            backend,
            ttl_catalog_seconds=settings.cache_ttl_catalog_seconds,
            ttl_schema_seconds=settings.cache_ttl_schema_seconds,
            ttl_listing_seconds=settings.cache_ttl_listing_seconds,
        )

    @staticmethod
    def make_key(tenant_id: str, source_api_key: str, tool: str, branch: str = "main") -> str:
        safe_tool = _UNSAFE_KEY_CHARS.sub("_", tool)
        return f"{tenant_id}:{key_prefix(source_api_key)}:{safe_tool}:{branch}"

    def ttl_for(self, tool: str) -> int:
        # Catalogs change least, listings most
        if tool == CATALOG_METHOD:
            return self.ttl_catalog_seconds
        if tool == SCHEMA_TOOL:
            return self.ttl_schema_seconds
        return self.ttl_listing_seconds

    async def get(self, key: str) -> Optional[Any]:
        try:
            value = await self.backend.get(key)
        except Exception as exc:
            logger.warning(
                "cache_get_failed",
                key=key,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            return None
        logger.debug("cache_lookup", key=key, hit=value is not None)
        return value

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if value is None:
            return
        try:
            await self.backend.set(key, value, ttl_seconds)
        except Exception as exc:
            logger.warning(
                "cache_set_failed",
                key=key,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )

    async def lookup(
        self,
        tenant_id: str,
        source_api_key: str,
        tool: str,
        branch: str = "main",
    ) -> Optional[Any]:
        return await self.get(self.make_key(tenant_id, source_api_key, tool, branch))

    async def store(
        self,
        tenant_id: str,
        source_api_key: str,
        tool: str,
        value: Any,
        branch: str = "main",
        *,
        ttl_tool: Optional[str] = None,
    ) -> None:
        """Store a successful read; ``ttl_tool`` picks the TTL when ``tool`` is a derived key."""
        ttl = self.ttl_for(ttl_tool or tool)
        await self.set(self.make_key(tenant_id, source_api_key, tool, branch), value, ttl)
