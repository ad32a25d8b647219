"""Tests for the per-(tenant, source key) tool process registry."""

from __future__ import annotations

import asyncio

import pytest

from contentrelay.config import Settings
from contentrelay.service.errors import ToolConnectionError
from contentrelay.service.process_manager import ToolProcessManager, build_tool_env
from contentrelay.service.results import unwrap_tool_payload
from contentrelay.service.transport import ConnectionState


def make_settings(**overrides) -> Settings:
    values = {
        "tool_request_timeout_seconds": 5.0,
        "tool_restart_grace_seconds": 0.0,
        "tool_handshake": False,
        "tool_server_region": "EU",
        "tool_server_groups": "cma",
    }
    values.update(overrides)
    return Settings(**values)


class MockProcess:
    """Stand-in for ToolProcess that records lifecycle calls."""

    def __init__(self, fail_start: bool = False):
        self.state = ConnectionState.STOPPED
        self.fail_start = fail_start
        self.starts = 0
        self.restarts = 0
        self.stops = 0

    def is_running(self) -> bool:
        return self.state != ConnectionState.STOPPED

    async def start(self):
        self.starts += 1
        if self.fail_start:
            raise ToolConnectionError("spawn failed")
        self.state = ConnectionState.CONNECTED

    async def restart(self):
        self.restarts += 1
        self.state = ConnectionState.CONNECTED

    async def stop(self):
        self.stops += 1
        self.state = ConnectionState.STOPPED


# ==============================================================================
# Environment
# ==============================================================================


class TestToolEnvironment:
    def test_credentials_groups_and_region(self):
        env = build_tool_env(make_settings(), "blt_source_key")
        assert env == {
            "CONTENTSTACK_API_KEY": "blt_source_key",
            "GROUPS": "cma",
            "CONTENTSTACK_REGION": "EU",
        }

    def test_project_scope_is_optional(self):
        env = build_tool_env(make_settings(), "blt_source_key", "proj-1")
        assert env["CONTENTSTACK_LAUNCH_PROJECT_ID"] == "proj-1"


# ==============================================================================
# Registry Behaviour
# ==============================================================================


class TestRegistry:
    """At most one process per key, restarted when its state is uncertain."""

    @pytest.mark.asyncio
    async def test_concurrent_acquire_spawns_once(self):
        created = []

        def factory(key, project_id):
            process = MockProcess()
            created.append((key, process))
            return process

        manager = ToolProcessManager(make_settings(), command=["unused"], process_factory=factory)
        processes = await asyncio.gather(
            *(manager.acquire("tenant-a", "blt_key_one") for _ in range(5))
        )
        assert len(created) == 1
        assert all(process is processes[0] for process in processes)
        assert processes[0].starts == 1

    @pytest.mark.asyncio
    async def test_distinct_keys_get_distinct_processes(self):
        manager = ToolProcessManager(
            make_settings(), command=["unused"], process_factory=lambda key, project: MockProcess()
        )
        first = await manager.acquire("tenant-a", "blt_key_one")
        second = await manager.acquire("tenant-a", "blt_key_two")
        third = await manager.acquire("tenant-b", "blt_key_one")
        assert len({id(first), id(second), id(third)}) == 3
        assert manager.get("tenant-a", "blt_key_one") is first

    @pytest.mark.asyncio
    async def test_uncertain_process_restarted_before_reuse(self):
        manager = ToolProcessManager(
            make_settings(), command=["unused"], process_factory=lambda key, project: MockProcess()
        )
        process = await manager.acquire("tenant-a", "blt_key_one")
        process.state = ConnectionState.UNCERTAIN
        again = await manager.acquire("tenant-a", "blt_key_one")
        assert again is process
        assert process.restarts == 1

    @pytest.mark.asyncio
    async def test_exited_process_started_again(self):
        manager = ToolProcessManager(
            make_settings(), command=["unused"], process_factory=lambda key, project: MockProcess()
        )
        process = await manager.acquire("tenant-a", "blt_key_one")
        process.state = ConnectionState.STOPPED
        await manager.acquire("tenant-a", "blt_key_one")
        assert process.starts == 2
        assert process.restarts == 0

    @pytest.mark.asyncio
    async def test_failed_start_is_not_registered(self):
        manager = ToolProcessManager(
            make_settings(),
            command=["unused"],
            process_factory=lambda key, project: MockProcess(fail_start=True),
        )
        with pytest.raises(ToolConnectionError):
            await manager.acquire("tenant-a", "blt_key_one")
        assert manager.get("tenant-a", "blt_key_one") is None
        assert manager.active_keys() == []

    @pytest.mark.asyncio
    async def test_active_keys_hide_full_source_key(self):
        manager = ToolProcessManager(
            make_settings(), command=["unused"], process_factory=lambda key, project: MockProcess()
        )
        await manager.acquire("tenant-a", "blt1234567890abcdef")
        assert manager.active_keys() == [("tenant-a", "blt1234567")]

    @pytest.mark.asyncio
    async def test_shutdown_and_shutdown_all(self):
        manager = ToolProcessManager(
            make_settings(), command=["unused"], process_factory=lambda key, project: MockProcess()
        )
        first = await manager.acquire("tenant-a", "blt_key_one")
        await manager.acquire("tenant-a", "blt_key_two")
        await manager.acquire("tenant-b", "blt_key_three")

        assert await manager.shutdown("tenant-a", "blt_key_one") is True
        assert first.stops == 1
        assert await manager.shutdown("tenant-a", "blt_key_one") is False

        assert await manager.shutdown_all() == 2
        assert manager.active_keys() == []


# ==============================================================================
# Real Subprocess
# ==============================================================================


class TestManagedSubprocess:
    @pytest.mark.asyncio
    async def test_spawned_process_receives_source_key(self, fake_server_command):
        manager = ToolProcessManager(make_settings(), command=fake_server_command("normal"))
        try:
            process = await manager.acquire("tenant-a", "blt_env_check", project_id="proj-9")
            result = await process.request("tools/call", {"name": "echo_env", "arguments": {}})
            payload, _ = unwrap_tool_payload(result)
            assert payload["CONTENTSTACK_API_KEY"] == "blt_env_check"
            assert payload["CONTENTSTACK_LAUNCH_PROJECT_ID"] == "proj-9"
            assert process.label.startswith("tenant-a:")
        finally:
            assert await manager.shutdown_all() == 1
