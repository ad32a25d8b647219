from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

import jsonschema

from contentrelay.logging import get_logger
from contentrelay.service.errors import ProviderError, SelectionError
from contentrelay.service.llm import LLMService
from contentrelay.service.tools import (
    ASSETS_TOOL,
    ENTRIES_TOOL,
    PER_CATEGORY_TOOLS,
    SCHEMA_TOOL,
)
from contentrelay.storage.models import ContentTypeDescriptor, ToolDescriptor

logger = get_logger(__name__)

MAX_SELECTED_TOOLS = 3
MAX_SELECTED_CATEGORIES = 3

SELECTION_SCHEMA = {
    "oneOf": [
        {"type": "array", "items": {"type": "string"}},
        {
            "type": "object",
            "properties": {
                "tools": {"type": "array", "items": {"type": "string"}},
                "content_type_ids": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["tools"],
        },
    ]
}

SCHEMA_PHRASES = (
    "content type",
    "content types",
    "what types",
    "available content",
    "what kind of content",
    "site structure",
)
MEDIA_WORDS = frozenset(
    {
        "image",
        "images",
        "photo",
        "photos",
        "picture",
        "pictures",
        "media",
        "asset",
        "assets",
        "file",
        "files",
        "download",
        "downloads",
        "video",
        "videos",
        "logo",
        "logos",
    }
)
CATEGORY_WORDS = ("blog", "post", "article", "product", "page", "news", "event")
_STOP_WORDS = frozenset(
    {
        "show", "me", "the", "what", "are", "all", "get", "find", "list", "tell",
        "about", "give", "your", "any", "some", "fetch", "search", "for", "with",
        "and", "from", "you", "have", "can", "there", "latest", "recent", "our",
        "which", "how", "many", "please",
    }
)
_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass
class Selection:
    tools: List[str] = field(default_factory=list)
    content_type_ids: List[str] = field(default_factory=list)
    source: str = "model"


def _query_terms(query: str) -> List[str]:
    terms = []
    for word in re.findall(r"[a-z0-9]+", query.lower()):
        if len(word) < 3 or word in _STOP_WORDS:
            continue
        terms.append(word[:-1] if word.endswith("s") and len(word) > 3 else word)
    return terms


def match_content_types(
    query: str, content_types: Sequence[ContentTypeDescriptor], *, limit: int = MAX_SELECTED_CATEGORIES
) -> List[str]:
    """Content type uids whose uid or title shares a term with the query.

    Common category words are tried first so "blog posts" prefers ``blog``
    over an incidental match.
    """

    lowered = query.lower()
    terms = _query_terms(query)
    ordered = [w for w in CATEGORY_WORDS if w in lowered] + [t for t in terms if t not in CATEGORY_WORDS]
    matched: List[str] = []
    for term in ordered:
        for content_type in content_types:
            haystack = f"{content_type.uid} {content_type.title}".lower()
            if term in haystack and content_type.uid not in matched:
                matched.append(content_type.uid)
    for content_type in content_types:
        name = content_type.title.lower()
        if name and name in lowered and content_type.uid not in matched:
            matched.append(content_type.uid)
    return matched[:limit]


def parse_selection_reply(reply: str) -> Selection:
    """Parse the model reply into a ``Selection``; raises ``SelectionError``."""

    text = _FENCE.sub("", (reply or "").strip())
    data: Any = None
    try:
        data = json.loads(text)
    except ValueError:
        found = re.search(r"(\{.*\}|\[.*\])", text, re.DOTALL)
        if found:
            try:
                data = json.loads(found.group(1))
            except ValueError:
                data = None
    if data is None:
        raise SelectionError("selection reply is not JSON", detail={"reply": text[:200]})
    try:
        jsonschema.validate(data, SELECTION_SCHEMA)
    except jsonschema.ValidationError as exc:
        raise SelectionError(
            "selection reply has an unexpected shape", detail={"reason": exc.message}
        ) from exc
    if isinstance(data, list):
        return Selection(tools=list(data))
    return Selection(tools=list(data["tools"]), content_type_ids=list(data.get("content_type_ids") or []))


class ToolSelector:
    """Picks the tools and content types a query needs.

    The selection model is asked first; any failure, unparseable reply or
    empty choice falls back to keyword heuristics. Either way the result is
    restricted to the safe tools it was given.
    """

    def __init__(self, llm: LLMService) -> None:
        self.llm = llm

    def build_messages(
        self,
        query: str,
        safe_tools: Sequence[ToolDescriptor],
        content_types: Sequence[ContentTypeDescriptor],
    ) -> List[dict]:
        tools = [tool.as_dict() for tool in safe_tools]
        categories = [{"uid": ct.uid, "title": ct.title} for ct in content_types]
        system = (
            "You are a content retrieval planner for a website backed by a headless CMS. "
            "Choose the minimal set of read-only tools needed to answer a visitor's question.\n\n"
            f"Available tools:\n{json.dumps(tools, indent=2)}\n\n"
            f"Content types:\n{json.dumps(categories, indent=2)}\n\n"
            "Guidelines:\n"
            "1. Navigation or general questions: content types describe the site structure.\n"
            "2. Specific content (blogs, products, pages): entries from the relevant content types.\n"
            "3. Images, files or downloads: assets, only when explicitly asked.\n"
            "4. Avoid environments unless the question is about publishing setup.\n\n"
            f"Select 1-{MAX_SELECTED_TOOLS} tool names and 1-{MAX_SELECTED_CATEGORIES} content type uids.\n"
            'Return ONLY JSON: {"tools": ["tool_name"], "content_type_ids": ["uid"]}'
        )
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": query},
        ]

    async def select(
        self,
        query: str,
        safe_tools: Sequence[ToolDescriptor],
        content_types: Sequence[ContentTypeDescriptor],
    ) -> Selection:
        if not safe_tools:
            return Selection(source="empty")
        try:
            selection = await self._select_with_model(query, safe_tools, content_types)
        except SelectionError as exc:
            logger.warning("tool_selection_fallback", reason=exc.message, detail=exc.detail)
            selection = self.heuristic_select(query, safe_tools, content_types)
        selection = self._complete_categories(query, selection, content_types)
        logger.info(
            "tools_selected",
            tools=selection.tools,
            content_type_ids=selection.content_type_ids,
            source=selection.source,
        )
        return selection

    async def _select_with_model(
        self,
        query: str,
        safe_tools: Sequence[ToolDescriptor],
        content_types: Sequence[ContentTypeDescriptor],
    ) -> Selection:
        try:
            reply = await self.llm.complete_for_selection(
                self.build_messages(query, safe_tools, content_types)
            )
        except ProviderError as exc:
            raise SelectionError("selection model call failed", detail={"provider": exc.provider}) from exc
        except Exception as exc:
            raise SelectionError(
                "selection model call raised unexpectedly", detail={"error_type": type(exc).__name__}
            ) from exc
        if not isinstance(reply, str):
            raise SelectionError("selection reply is not text", detail={"type": type(reply).__name__})
        parsed = parse_selection_reply(reply)
        safe_names = [tool.name for tool in safe_tools]
        tools = _ordered_subset(parsed.tools, safe_names, MAX_SELECTED_TOOLS)
        if not tools:
            raise SelectionError("selection model chose no usable tools", detail={"chosen": parsed.tools[:5]})
        known = [ct.uid for ct in content_types]
        ids = _ordered_subset(parsed.content_type_ids, known, MAX_SELECTED_CATEGORIES)
        return Selection(tools=tools, content_type_ids=ids, source="model")

    def heuristic_select(
        self,
        query: str,
        safe_tools: Sequence[ToolDescriptor],
        content_types: Sequence[ContentTypeDescriptor],
    ) -> Selection:
        safe_names = [tool.name for tool in safe_tools]
        lowered = query.lower()
        words = set(re.findall(r"[a-z]+", lowered))
        wanted: List[str] = []
        if any(phrase in lowered for phrase in SCHEMA_PHRASES):
            wanted.append(SCHEMA_TOOL)
        if words & MEDIA_WORDS:
            wanted.append(ASSETS_TOOL)
        if not wanted or any(word in lowered for word in CATEGORY_WORDS):
            wanted.append(ENTRIES_TOOL)
        tools = _ordered_subset(wanted, safe_names, MAX_SELECTED_TOOLS)
        if not tools:
            tools = _ordered_subset([SCHEMA_TOOL, ENTRIES_TOOL], safe_names, MAX_SELECTED_TOOLS)
        if not tools:
            tools = safe_names[:1]
        return Selection(
            tools=tools,
            content_type_ids=match_content_types(query, content_types),
            source="heuristic",
        )

    def _complete_categories(
        self,
        query: str,
        selection: Selection,
        content_types: Sequence[ContentTypeDescriptor],
    ) -> Selection:
        # Listing tools run per category, so they always need at least one
        needs_ids = any(tool in PER_CATEGORY_TOOLS for tool in selection.tools)
        if not needs_ids or selection.content_type_ids or not content_types:
            return selection
        ids = match_content_types(query, content_types) or [
            ct.uid for ct in content_types[:MAX_SELECTED_CATEGORIES]
        ]
        return Selection(tools=selection.tools, content_type_ids=ids, source=selection.source)


def _ordered_subset(candidates: Sequence[Any], allowed: Sequence[str], limit: int) -> List[str]:
    allowed_set = set(allowed)
    picked: List[str] = []
    for name in candidates:
        if isinstance(name, str) and name in allowed_set and name not in picked:
            picked.append(name)
    return picked[:limit]
