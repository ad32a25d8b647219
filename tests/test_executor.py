"""Tests for concurrent tool execution with caching and partial failure."""

from __future__ import annotations

import json

import pytest

from contentrelay.service.cache import ResultCache
from contentrelay.service.errors import ToolConnectionError, ToolExecutionError
from contentrelay.service.executor import ToolExecutor
from contentrelay.service.results import ErrorResult, ListingResult, SchemaCatalogResult
from contentrelay.service.tools import ASSETS_TOOL, ENTRIES_TOOL, SCHEMA_TOOL
from contentrelay.storage.memory import MemoryCache

SAFE = [SCHEMA_TOOL, ENTRIES_TOOL, ASSETS_TOOL]


def text_result(payload, is_error=False):
    result = {"content": [{"type": "text", "text": json.dumps(payload)}]}
    if is_error:
        result["isError"] = True
    return result


class MockToolProcess:
    """Answers tools/call from a table keyed by (tool, content_type_uid)."""

    def __init__(self, answers=None):
        self.answers = answers or {}
        self.calls = []

    async def request(self, method, params=None):
        self.calls.append((method, params))
        name = params["name"]
        uid = params["arguments"].get("content_type_uid")
        answer = self.answers.get((name, uid), self.answers.get(name))
        if isinstance(answer, Exception):
            raise answer
        if answer is None:
            return text_result({"entries": [], "count": 0})
        return answer


def make_executor(backend=None) -> ToolExecutor:
    return ToolExecutor(ResultCache(backend if backend is not None else MemoryCache()), branch="main", listing_limit=10)


# ==============================================================================
# Planning
# ==============================================================================


class TestPlan:
    def test_listing_tool_runs_once_per_category(self):
        calls = make_executor().plan([ENTRIES_TOOL, SCHEMA_TOOL], ["blog_post", "page"])
        assert [c.result_key for c in calls] == [
            "get_all_entries:blog_post",
            "get_all_entries:page",
            "get_all_content_types",
        ]
        assert calls[0].arguments["content_type_uid"] == "blog_post"
        assert calls[0].cache_tool == "get_all_entries__blog_post"

    def test_listing_tool_without_categories_runs_once(self):
        calls = make_executor().plan([ENTRIES_TOOL], [])
        assert [c.result_key for c in calls] == [ENTRIES_TOOL]


# ==============================================================================
# Execution
# ==============================================================================


class TestExecute:
    @pytest.mark.asyncio
    async def test_results_keyed_and_classified(self):
        process = MockToolProcess(
            {
                SCHEMA_TOOL: text_result({"content_types": [{"uid": "blog_post", "title": "Blog"}], "count": 1}),
                (ENTRIES_TOOL, "blog_post"): text_result({"entries": [{"uid": "e1"}], "count": 12}),
            }
        )
        report = await make_executor().execute(
            [SCHEMA_TOOL, ENTRIES_TOOL], ["blog_post"], "tenant-a", "blt_key", process=process, safe_tools=SAFE
        )
        schema = report.results[SCHEMA_TOOL]
        listing = report.results["get_all_entries:blog_post"]
        assert isinstance(schema, SchemaCatalogResult)
        assert schema.content_types[0].uid == "blog_post"
        assert isinstance(listing, ListingResult)
        assert listing.total == 12
        assert listing.content_type_uid == "blog_post"
        assert not report.all_failed

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_others(self):
        process = MockToolProcess(
            {
                (ENTRIES_TOOL, "blog_post"): ToolExecutionError("bad content type", rpc_code=-32000),
                (ENTRIES_TOOL, "page"): text_result({"entries": [{"uid": "p1"}], "count": 1}),
            }
        )
        report = await make_executor().execute(
            [ENTRIES_TOOL], ["blog_post", "page"], "tenant-a", "blt_key", process=process, safe_tools=SAFE
        )
        failed = report.results["get_all_entries:blog_post"]
        assert isinstance(failed, ErrorResult)
        assert failed.error_code == "tool_execution_error"
        assert isinstance(report.results["get_all_entries:page"], ListingResult)
        assert list(report.failures) == ["get_all_entries:blog_post"]
        assert not report.all_failed

    @pytest.mark.asyncio
    async def test_is_error_result_becomes_error(self):
        process = MockToolProcess({ASSETS_TOOL: text_result({"error_message": "Access denied"}, is_error=True)})
        report = await make_executor().execute(
            [ASSETS_TOOL], [], "tenant-a", "blt_key", process=process, safe_tools=SAFE
        )
        result = report.results[ASSETS_TOOL]
        assert isinstance(result, ErrorResult)
        assert result.message == "Access denied"
        assert report.all_failed
        assert not report.connection_lost

    @pytest.mark.asyncio
    async def test_all_connection_failures_flagged(self):
        process = MockToolProcess(
            {
                SCHEMA_TOOL: ToolConnectionError("process exited"),
                ENTRIES_TOOL: ToolConnectionError("process exited"),
            }
        )
        report = await make_executor().execute(
            [SCHEMA_TOOL, ENTRIES_TOOL], ["page"], "tenant-a", "blt_key", process=process, safe_tools=SAFE
        )
        assert report.all_failed
        assert report.connection_lost

    @pytest.mark.asyncio
    async def test_unsafe_tool_rejected_before_any_call(self):
        process = MockToolProcess()
        report = await make_executor().execute(
            ["delete_entry", ENTRIES_TOOL], ["page"], "tenant-a", "blt_key", process=process, safe_tools=SAFE
        )
        assert report.rejected == ["delete_entry"]
        assert [params["name"] for _, params in process.calls] == [ENTRIES_TOOL]

    @pytest.mark.asyncio
    async def test_mutating_tool_rejected_even_when_listed_safe(self):
        process = MockToolProcess()
        report = await make_executor().execute(
            ["delete_entry"], [], "tenant-a", "blt_key", process=process, safe_tools=["delete_entry"]
        )
        assert report.rejected == ["delete_entry"]
        assert process.calls == []
        assert report.results == {}

    @pytest.mark.asyncio
    async def test_default_allow_list_when_safe_tools_omitted(self):
        process = MockToolProcess()
        report = await make_executor().execute(
            ["get_single_entry", ENTRIES_TOOL], ["page"], "tenant-a", "blt_key", process=process
        )
        assert report.rejected == ["get_single_entry"]
        assert [params["name"] for _, params in process.calls] == [ENTRIES_TOOL]


# ==============================================================================
# Caching
# ==============================================================================


class TestExecutorCaching:
    @pytest.mark.asyncio
    async def test_second_run_served_from_cache(self):
        backend = MemoryCache()
        executor = make_executor(backend)
        process = MockToolProcess({(ENTRIES_TOOL, "page"): text_result({"entries": [{"uid": "p1"}]})})

        await executor.execute([ENTRIES_TOOL], ["page"], "tenant-a", "blt_key", process=process, safe_tools=SAFE)
        report = await executor.execute(
            [ENTRIES_TOOL], ["page"], "tenant-a", "blt_key", process=process, safe_tools=SAFE
        )
        assert len(process.calls) == 1
        assert report.cache_hits == 1
        assert report.results["get_all_entries:page"].items == [{"uid": "p1"}]

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self):
        backend = MemoryCache()
        executor = make_executor(backend)
        process = MockToolProcess({ASSETS_TOOL: ToolExecutionError("boom")})

        await executor.execute([ASSETS_TOOL], [], "tenant-a", "blt_key", process=process, safe_tools=SAFE)
        assert len(backend) == 0

    @pytest.mark.asyncio
    async def test_categories_cached_separately(self):
        backend = MemoryCache()
        executor = make_executor(backend)
        process = MockToolProcess()
        await executor.execute(
            [ENTRIES_TOOL], ["page", "blog_post"], "tenant-a", "blt_key", process=process, safe_tools=SAFE
        )
        assert len(backend) == 2
