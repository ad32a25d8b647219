from __future__ import annotations

import inspect
import time
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from contentrelay.logging import get_logger, key_prefix, sanitize_error_message, set_correlation_id
from contentrelay.service.cache import ResultCache
from contentrelay.service.errors import (
    CONTENT_UNAVAILABLE_MESSAGE,
    GENERATION_FAILED_MESSAGE,
    GENERIC_ERROR_MESSAGE,
    SERVICE_UNAVAILABLE_MESSAGE,
    ServiceError,
)
from contentrelay.service.executor import ExecutionReport, ToolExecutor
from contentrelay.service.llm import LLMService
from contentrelay.service.process_manager import ToolProcessManager
from contentrelay.service.results import unwrap_tool_payload
from contentrelay.service.selector import ToolSelector
from contentrelay.service.summarizer import ContextSummarizer
from contentrelay.service.tools import (
    CALL_METHOD,
    CATALOG_METHOD,
    SCHEMA_TOOL,
    build_tool_arguments,
    filter_read_only,
    parse_content_types,
    parse_tool_catalog,
)
from contentrelay.service.transport import ToolProcess
from contentrelay.storage.memory import ConversationMemory
from contentrelay.storage.models import ContentTypeDescriptor, ToolDescriptor

logger = get_logger(__name__)

StatusCallback = Callable[[str], Any]


class QueryPhase(str, Enum):
    CONNECTING = "connecting"
    LOADING_TOOLS = "loading_tools"
    SELECTING_TOOLS = "selecting_tools"
    GATHERING_CONTENT = "gathering_content"
    GENERATING = "generating"


SYSTEM_PROMPT = """You are a helpful assistant for this website. Help visitors find information and answer questions using only the website content provided below.

Guardrails:
- Use ONLY information from the provided website content.
- Never invent product details, prices, availability or contact information.
- If the content does not contain the answer, say so plainly.
- Do not discuss the content management system or any technical backend details.
- For questions unrelated to this website, reply: "I can only help with questions about this website's content."

Formatting:
- Use markdown: ## for main topics, ### for subtopics, - for lists, **bold** for key terms.
- Format links as [text](url) and keep image references like ![title](url) so they render.
- Keep answers concise, conversational and well organized."""

NO_CONTENT_NOTE = (
    "No website content is available for this question. Tell the visitor you could not "
    "find matching information and suggest they ask about another topic on the site."
)


def build_messages(
    query: str,
    context: str,
    history: Optional[List[Dict[str, str]]] = None,
) -> List[Dict[str, str]]:
    """System instructions with context, then recent history, then the query."""

    system = SYSTEM_PROMPT
    if context:
        system += f"\n\nWEBSITE CONTENT DATA:\n{context}"
    else:
        system += f"\n\n{NO_CONTENT_NOTE}"
    messages = [{"role": "system", "content": system}]
    messages.extend(history or [])
    messages.append({"role": "user", "content": query})
    return messages


class ContentQueryPipeline:
    """Turns a visitor question into a streamed, content-grounded answer.

    connect -> load safe tools and content types -> select -> execute ->
    summarize into the provider's budget -> stream with fallback. Every
    failure path ends in a plain-language chunk; nothing raises into the
    caller's stream.
    """

    def __init__(
        self,
        *,
        processes: ToolProcessManager,
        cache: ResultCache,
        selector: ToolSelector,
        executor: ToolExecutor,
        summarizer: ContextSummarizer,
        llm: LLMService,
        memory: ConversationMemory,
        history_window: int = 8,
        branch: str = "main",
    ) -> None:
        self.processes = processes
        self.cache = cache
        self.selector = selector
        self.executor = executor
        self.summarizer = summarizer
        self.llm = llm
        self.memory = memory
        self.history_window = history_window
        self.branch = branch

    async def _emit(self, on_status: Optional[StatusCallback], phase: QueryPhase) -> None:
        if on_status is None:
            return
        try:
            outcome = on_status(phase.value)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.warning("status_callback_failed", phase=phase.value, error=str(exc))

    async def _load_safe_tools(
        self, process: ToolProcess, tenant_id: str, source_api_key: str
    ) -> List[ToolDescriptor]:
        catalog = await self.cache.lookup(tenant_id, source_api_key, CATALOG_METHOD, self.branch)
        if catalog is None:
            result = await process.request(CATALOG_METHOD, {})
            catalog = parse_tool_catalog(result)
            if catalog:
                await self.cache.store(tenant_id, source_api_key, CATALOG_METHOD, catalog, self.branch)
        return filter_read_only(parse_tool_catalog(catalog))

    async def _load_content_types(
        self,
        process: ToolProcess,
        tenant_id: str,
        source_api_key: str,
        safe_tools: List[ToolDescriptor],
    ) -> List[ContentTypeDescriptor]:
        if SCHEMA_TOOL not in {tool.name for tool in safe_tools}:
            return []
        payload = await self.cache.lookup(tenant_id, source_api_key, SCHEMA_TOOL, self.branch)
        if payload is None:
            try:
                raw = await process.request(
                    CALL_METHOD,
                    {"name": SCHEMA_TOOL, "arguments": build_tool_arguments(SCHEMA_TOOL, branch=self.branch)},
                )
            except ServiceError as exc:
                logger.warning("content_types_unavailable", error_code=exc.error_code)
                return []
            payload, is_error = unwrap_tool_payload(raw)
            if is_error:
                logger.warning("content_types_unavailable", error_code="tool_reported_error")
                return []
            await self.cache.store(tenant_id, source_api_key, SCHEMA_TOOL, payload, self.branch)
        return parse_content_types(payload)

    async def get_tool_catalog(
        self, tenant_id: str, source_api_key: str, *, project_id: Optional[str] = None
    ) -> List[Dict[str, str]]:
        """Safe tools for a source as ``{name, description}``; raises ``ServiceError`` when unreachable."""

        process = await self.processes.acquire(tenant_id, source_api_key, project_id=project_id)
        tools = await self._load_safe_tools(process, tenant_id, source_api_key)
        return [tool.as_dict() for tool in tools]

    async def shutdown(self, tenant_id: str, source_api_key: str) -> None:
        await self.processes.shutdown(tenant_id, source_api_key)

    async def _gather(
        self,
        text: str,
        tenant_id: str,
        source_api_key: str,
        project_id: Optional[str],
        on_status: Optional[StatusCallback],
    ) -> ExecutionReport:
        await self._emit(on_status, QueryPhase.CONNECTING)
        process = await self.processes.acquire(tenant_id, source_api_key, project_id=project_id)

        await self._emit(on_status, QueryPhase.LOADING_TOOLS)
        safe_tools = await self._load_safe_tools(process, tenant_id, source_api_key)
        content_types = await self._load_content_types(process, tenant_id, source_api_key, safe_tools)

        await self._emit(on_status, QueryPhase.SELECTING_TOOLS)
        selection = await self.selector.select(text, safe_tools, content_types)

        await self._emit(on_status, QueryPhase.GATHERING_CONTENT)
        return await self.executor.execute(
            selection.tools,
            selection.content_type_ids,
            tenant_id,
            source_api_key,
            process=process,
            safe_tools=[tool.name for tool in safe_tools],
        )

    async def query(
        self,
        text: str,
        tenant_id: str,
        source_api_key: str,
        *,
        project_id: Optional[str] = None,
        session_id: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> AsyncIterator[str]:
        correlation_id = set_correlation_id()
        started = time.monotonic()
        logger.info(
            "query_started",
            tenant_id=tenant_id,
            source_key=key_prefix(source_api_key),
            session_id=session_id,
            provider=provider,
            correlation_id=correlation_id,
        )

        failure: Optional[str] = None
        report: Optional[ExecutionReport] = None
        try:
            report = await self._gather(text, tenant_id, source_api_key, project_id, on_status)
        except ServiceError as exc:
            logger.error(
                "query_retrieval_failed",
                tenant_id=tenant_id,
                error_code=exc.error_code,
                error=sanitize_error_message(exc.message),
            )
            failure = exc.user_message
        except Exception as exc:
            logger.exception(
                "query_unexpected_error",
                tenant_id=tenant_id,
                error_type=type(exc).__name__,
            )
            failure = GENERIC_ERROR_MESSAGE

        if report is not None and report.all_failed:
            failure = SERVICE_UNAVAILABLE_MESSAGE if report.connection_lost else CONTENT_UNAVAILABLE_MESSAGE
            logger.warning(
                "query_content_unavailable",
                tenant_id=tenant_id,
                failures={k: r.error_code for k, r in report.failures.items()},
            )
        if failure is not None:
            yield failure
            return

        active = self.llm.resolve_provider(provider)
        context = self.summarizer.summarize_for(report.results, self.llm.profile(active or provider))
        history = (
            self.memory.get_recent(tenant_id, session_id, self.history_window) if session_id else []
        )
        messages = build_messages(text, context, history)

        await self._emit(on_status, QueryPhase.GENERATING)
        collected: List[str] = []
        try:
            async for chunk in self.llm.stream_with_fallback(messages, provider=active, model=model):
                collected.append(chunk)
                yield chunk
        except Exception as exc:
            logger.exception("query_generation_error", error_type=type(exc).__name__)
            yield GENERIC_ERROR_MESSAGE
            return

        answer = "".join(collected)
        # The fixed apology is never stored as an assistant turn
        if session_id and answer != GENERATION_FAILED_MESSAGE:
            self.memory.add_message(tenant_id, session_id, "user", text)
            self.memory.add_message(tenant_id, session_id, "assistant", answer)
        logger.info(
            "query_completed",
            tenant_id=tenant_id,
            provider=active,
            chunks=len(collected),
            chars=len(answer),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
