from __future__ import annotations

import asyncio
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from contentrelay.config import Settings
from contentrelay.logging import get_logger, key_prefix
from contentrelay.service.transport import ConnectionState, ToolProcess

logger = get_logger(__name__)

ProcessKey = Tuple[str, str]
ProcessFactory = Callable[[ProcessKey, Optional[str]], ToolProcess]


def build_tool_env(
    settings: Settings, source_api_key: str, project_id: Optional[str] = None
) -> Dict[str, str]:
    """Environment for a tenant's tool server: credentials, tool groups and region."""

    env = {
        "CONTENTSTACK_API_KEY": source_api_key,
        "GROUPS": settings.tool_server_groups,
        "CONTENTSTACK_REGION": settings.tool_server_region,
    }
    if project_id:
        env["CONTENTSTACK_LAUNCH_PROJECT_ID"] = project_id
    return env


class ToolProcessManager:
    """Registry of live tool processes, at most one per (tenant, source key).

    Callers go through ``acquire``; concurrent acquires for the same key are
    serialized on a per-key lock so a second query never spawns a duplicate.
    An instance whose connection state is uncertain is restarted before it is
    handed out again.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        command: Optional[Sequence[str]] = None,
        process_factory: Optional[ProcessFactory] = None,
    ) -> None:
        self.settings = settings
        self.command = list(command) if command else settings.tool_server_argv()
        self._factory = process_factory or self._default_factory
        self._processes: Dict[ProcessKey, ToolProcess] = {}
        self._locks: Dict[ProcessKey, asyncio.Lock] = {}

    def _default_factory(self, key: ProcessKey, project_id: Optional[str]) -> ToolProcess:
        tenant_id, source_api_key = key
        return ToolProcess(
            self.command,
            env=build_tool_env(self.settings, source_api_key, project_id),
            request_timeout=self.settings.tool_request_timeout_seconds,
            restart_grace_seconds=self.settings.tool_restart_grace_seconds,
            handshake=self.settings.tool_handshake,
            label=f"{tenant_id}:{key_prefix(source_api_key)}",
        )

    def _lock_for(self, key: ProcessKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def acquire(
        self, tenant_id: str, source_api_key: str, *, project_id: Optional[str] = None
    ) -> ToolProcess:
        key = (tenant_id, source_api_key)
        async with self._lock_for(key):
            process = self._processes.get(key)
            if process is None:
                process = self._factory(key, project_id)
                await process.start()
                self._processes[key] = process
                logger.info(
                    "tool_process_registered",
                    tenant_id=tenant_id,
                    source_key=key_prefix(source_api_key),
                    active=len(self._processes),
                )
            elif process.state == ConnectionState.UNCERTAIN:
                logger.info(
                    "tool_process_restart_before_reuse",
                    tenant_id=tenant_id,
                    source_key=key_prefix(source_api_key),
                )
                await process.restart()
            elif not process.is_running():
                await process.start()
            return process

    def get(self, tenant_id: str, source_api_key: str) -> Optional[ToolProcess]:
        return self._processes.get((tenant_id, source_api_key))

    async def shutdown(self, tenant_id: str, source_api_key: str) -> bool:
        key = (tenant_id, source_api_key)
        async with self._lock_for(key):
            process = self._processes.pop(key, None)
            if process is None:
                return False
            await process.stop()
        self._locks.pop(key, None)
        logger.info(
            "tool_process_unregistered",
            tenant_id=tenant_id,
            source_key=key_prefix(source_api_key),
            active=len(self._processes),
        )
        return True

    async def shutdown_all(self) -> int:
        keys = list(self._processes)
        for tenant_id, source_api_key in keys:
            await self.shutdown(tenant_id, source_api_key)
        return len(keys)

    def active_keys(self) -> List[Tuple[str, str]]:
        """Live (tenant, source-key prefix) pairs; full keys never leave the registry."""
        return [(tenant, key_prefix(source)) for tenant, source in self._processes]
