from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from contentrelay.logging import get_logger, key_prefix, sanitize_error_message
from contentrelay.service.cache import ResultCache
from contentrelay.service.errors import (
    SecurityViolation,
    ServiceError,
    ToolConnectionError,
    ToolTimeoutError,
)
from contentrelay.service.results import (
    ErrorResult,
    ToolResult,
    classify_payload,
    error_text,
    unwrap_tool_payload,
)
from contentrelay.service.tools import (
    CALL_METHOD,
    PER_CATEGORY_TOOLS,
    READ_ONLY_ALLOW_LIST,
    build_tool_arguments,
    ensure_read_only,
)

logger = get_logger(__name__)

_CONNECTION_CODES = {ToolConnectionError.error_code, ToolTimeoutError.error_code}


class ToolRequester(Protocol):
    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any: ...


@dataclass
class PlannedCall:
    result_key: str
    tool: str
    cache_tool: str
    arguments: Dict[str, Any]
    content_type_uid: Optional[str] = None


@dataclass
class ExecutionReport:
    results: Dict[str, ToolResult] = field(default_factory=dict)
    cache_hits: int = 0
    rejected: List[str] = field(default_factory=list)

    @property
    def failures(self) -> Dict[str, ErrorResult]:
        return {k: r for k, r in self.results.items() if isinstance(r, ErrorResult)}

    @property
    def successes(self) -> Dict[str, ToolResult]:
        return {k: r for k, r in self.results.items() if not isinstance(r, ErrorResult)}

    @property
    def all_failed(self) -> bool:
        return not self.successes

    @property
    def connection_lost(self) -> bool:
        """Every call failed and every failure was a connection fault."""
        failures = self.failures
        return bool(failures) and self.all_failed and all(
            r.error_code in _CONNECTION_CODES for r in failures.values()
        )


class ToolExecutor:
    """Runs selected tools through the cache and the tool process.

    Calls run concurrently; one failure never aborts the others and is kept
    as an ``ErrorResult`` under its own key. Only successful reads are cached.
    """

    def __init__(self, cache: ResultCache, *, branch: str = "main", listing_limit: int = 10) -> None:
        self.cache = cache
        self.branch = branch
        self.listing_limit = listing_limit

    def plan(self, tools: Sequence[str], content_type_ids: Sequence[str]) -> List[PlannedCall]:
        calls: List[PlannedCall] = []
        for tool in tools:
            if tool in PER_CATEGORY_TOOLS and content_type_ids:
                for uid in content_type_ids:
                    calls.append(
                        PlannedCall(
                            result_key=f"{tool}:{uid}",
                            tool=tool,
                            cache_tool=f"{tool}__{uid}",
                            arguments=build_tool_arguments(
                                tool,
                                branch=self.branch,
                                limit=self.listing_limit,
                                content_type_uid=uid,
                            ),
                            content_type_uid=uid,
                        )
                    )
            else:
                calls.append(
                    PlannedCall(
                        result_key=tool,
                        tool=tool,
                        cache_tool=tool,
                        arguments=build_tool_arguments(
                            tool, branch=self.branch, limit=self.listing_limit
                        ),
                    )
                )
        return calls

    async def execute(
        self,
        tools: Sequence[str],
        content_type_ids: Sequence[str],
        tenant_id: str,
        source_api_key: str,
        *,
        process: ToolRequester,
        safe_tools: Optional[Iterable[str]] = None,
    ) -> ExecutionReport:
        report = ExecutionReport()
        allowed = list(safe_tools) if safe_tools is not None else list(READ_ONLY_ALLOW_LIST)
        runnable: List[str] = []
        for tool in tools:
            try:
                ensure_read_only(tool, allowed)
            except SecurityViolation as exc:
                logger.error(
                    "tool_rejected",
                    tool=exc.tool,
                    tenant_id=tenant_id,
                    error_code=exc.error_code,
                )
                report.rejected.append(tool)
                continue
            runnable.append(tool)

        calls = self.plan(runnable, content_type_ids)
        outcomes = await asyncio.gather(
            *(self._run(call, tenant_id, source_api_key, process, report) for call in calls)
        )
        for call, outcome in zip(calls, outcomes):
            report.results[call.result_key] = outcome

        logger.info(
            "tools_executed",
            tenant_id=tenant_id,
            source_key=key_prefix(source_api_key),
            calls=len(calls),
            failed=len(report.failures),
            cache_hits=report.cache_hits,
        )
        return report

    async def _run(
        self,
        call: PlannedCall,
        tenant_id: str,
        source_api_key: str,
        process: ToolRequester,
        report: ExecutionReport,
    ) -> ToolResult:
        payload = await self.cache.lookup(tenant_id, source_api_key, call.cache_tool, self.branch)
        if payload is not None:
            report.cache_hits += 1
            return classify_payload(call.tool, payload, content_type_uid=call.content_type_uid)

        try:
            raw = await process.request(
                CALL_METHOD, {"name": call.tool, "arguments": call.arguments}
            )
        except ServiceError as exc:
            logger.warning(
                "tool_call_failed",
                tool=call.tool,
                result_key=call.result_key,
                error_code=exc.error_code,
                error=sanitize_error_message(exc.message),
            )
            return ErrorResult(
                tool=call.tool,
                message=sanitize_error_message(exc.message),
                error_code=exc.error_code,
                content_type_uid=call.content_type_uid,
            )

        payload, is_error = unwrap_tool_payload(raw)
        if is_error:
            message = sanitize_error_message(error_text(payload))
            logger.warning("tool_call_reported_error", tool=call.tool, result_key=call.result_key, error=message)
            return ErrorResult(tool=call.tool, message=message, content_type_uid=call.content_type_uid)

        await self.cache.store(
            tenant_id,
            source_api_key,
            call.cache_tool,
            payload,
            self.branch,
            ttl_tool=call.tool,
        )
        return classify_payload(call.tool, payload, content_type_uid=call.content_type_uid)
