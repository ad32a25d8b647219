from __future__ import annotations

import re
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Union

from contentrelay.logging import get_logger
from contentrelay.service.errors import SecurityViolation
from contentrelay.storage.models import ContentTypeDescriptor, ToolDescriptor

logger = get_logger(__name__)

CATALOG_METHOD = "tools/list"
CALL_METHOD = "tools/call"

SCHEMA_TOOL = "get_all_content_types"
ENTRIES_TOOL = "get_all_entries"
ASSETS_TOOL = "get_all_assets"
ENVIRONMENTS_TOOL = "get_all_environments"
GLOBAL_FIELDS_TOOL = "get_all_global_fields"
LANGUAGES_TOOL = "get_all_languages"

# Bulk "get" operations; anything else is never shown to the selector.
READ_ONLY_ALLOW_LIST: FrozenSet[str] = frozenset(
    {
        SCHEMA_TOOL,
        ENTRIES_TOOL,
        ASSETS_TOOL,
        ENVIRONMENTS_TOOL,
        GLOBAL_FIELDS_TOOL,
        LANGUAGES_TOOL,
    }
)

# Tools called once per selected content type
PER_CATEGORY_TOOLS: FrozenSet[str] = frozenset({ENTRIES_TOOL})

_MUTATING_VERBS = (
    "create",
    "update",
    "delete",
    "publish",
    "unpublish",
    "merge",
    "remove",
    "upload",
    "import",
    "deploy",
    "restore",
    "revert",
    "rollback",
    "trigger",
    "rename",
    "edit",
    "write",
    "replace",
    "localize",
    "unlocalize",
    "archive",
    "purge",
    "destroy",
    "erase",
    "overwrite",
)


def _inflections(verb: str) -> str:
    if verb.endswith("e"):
        stem = verb[:-1]
        return f"{stem}(?:e|es|ed|ing|ion|ions)"
    return f"{verb}(?:s|es|ed|ing)?"


_MUTATING_PATTERN = re.compile(
    r"\b(?:"
    + "|".join(_inflections(v) for v in _MUTATING_VERBS)
    + r"|modif(?:y|ies|ied|ying|ication))\b",
    re.IGNORECASE,
)
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def _words(text: str) -> str:
    """Split identifiers like ``bulkDelete_entries`` into space-separated words."""
    spaced = _CAMEL_BOUNDARY.sub(" ", text or "")
    return re.sub(r"[^A-Za-z0-9]+", " ", spaced)


def mentions_mutation(text: str) -> bool:
    return bool(_MUTATING_PATTERN.search(_words(text)))


def is_read_only(tool: ToolDescriptor, allow_list: Iterable[str] = READ_ONLY_ALLOW_LIST) -> bool:
    """Both checks must pass: no mutating verb anywhere, and allow-listed by name."""

    if mentions_mutation(tool.name) or mentions_mutation(tool.description):
        return False
    return tool.name in set(allow_list)


ToolLike = Union[ToolDescriptor, Mapping[str, Any]]


def to_descriptor(raw: ToolLike) -> Optional[ToolDescriptor]:
    if isinstance(raw, ToolDescriptor):
        return raw
    if isinstance(raw, Mapping) and isinstance(raw.get("name"), str):
        return ToolDescriptor(
            name=raw["name"],
            description=str(raw.get("description") or ""),
            input_schema=raw.get("inputSchema") if isinstance(raw.get("inputSchema"), dict) else None,
        )
    return None


def filter_read_only(
    raw_tools: Iterable[ToolLike],
    *,
    allow_list: Optional[Iterable[str]] = None,
) -> List[ToolDescriptor]:
    """Reduce an advertised tool list to the safe, bulk-retrieval subset.

    ``allow_list`` may widen or narrow the default names, but a tool whose
    name or description carries a mutating verb is dropped even if listed.
    """

    allowed = set(allow_list) if allow_list is not None else set(READ_ONLY_ALLOW_LIST)
    safe: List[ToolDescriptor] = []
    rejected: List[str] = []
    for raw in raw_tools:
        tool = to_descriptor(raw)
        if tool is None:
            continue
        if is_read_only(tool, allowed):
            safe.append(tool)
        else:
            rejected.append(tool.name)
    if rejected:
        logger.debug("tools_filtered_out", rejected=rejected, kept=[t.name for t in safe])
    return safe


def ensure_read_only(name: str, safe_names: Iterable[str]) -> None:
    """Raise ``SecurityViolation`` unless ``name`` is in the filtered set and non-mutating."""

    if name not in set(safe_names) or mentions_mutation(name):
        raise SecurityViolation(f"tool {name!r} is not an allowed read-only tool", tool=name)


def parse_tool_catalog(result: Any) -> List[Dict[str, Any]]:
    """Raw tool dicts from a ``tools/list`` result."""

    if isinstance(result, Mapping):
        tools = result.get("tools")
    else:
        tools = result
    if not isinstance(tools, list):
        return []
    return [tool for tool in tools if isinstance(tool, Mapping) and tool.get("name")]


def parse_content_types(payload: Any) -> List[ContentTypeDescriptor]:
    """Content type descriptors from a decoded ``get_all_content_types`` payload."""

    if isinstance(payload, Mapping):
        items = payload.get("content_types")
        if items is None:
            items = payload.get("items")
    else:
        items = payload
    if not isinstance(items, list):
        return []
    descriptors = []
    for item in items:
        if not isinstance(item, Mapping) or not item.get("uid"):
            continue
        descriptors.append(
            ContentTypeDescriptor(
                uid=str(item["uid"]),
                title=str(item.get("title") or item["uid"]),
                description=str(item.get("description") or ""),
            )
        )
    return descriptors


def build_tool_arguments(
    tool: str,
    *,
    branch: str = "main",
    limit: int = 10,
    content_type_uid: Optional[str] = None,
) -> Dict[str, Any]:
    if tool == SCHEMA_TOOL:
        return {"branch": branch}
    if tool == ENTRIES_TOOL:
        args: Dict[str, Any] = {"limit": str(limit), "include_count": True, "branch": branch}
        if content_type_uid:
            args["content_type_uid"] = content_type_uid
        return args
    if tool == ASSETS_TOOL:
        return {"limit": str(limit), "include_count": True, "branch": branch}
    if tool == ENVIRONMENTS_TOOL:
        return {"include_count": True}
    if tool in (GLOBAL_FIELDS_TOOL, LANGUAGES_TOOL):
        return {"include_count": True, "branch": branch}
    return {}
