from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple, Union

from contentrelay.service.tools import SCHEMA_TOOL, parse_content_types
from contentrelay.storage.models import ContentTypeDescriptor

# Payload keys that hold a bulk listing, in lookup order
LISTING_KEYS = ("entries", "assets", "environments", "global_fields", "locales", "languages", "items")


@dataclass
class ListingResult:
    tool: str
    items: List[Dict[str, Any]]
    listing: str = "items"
    count: Optional[int] = None
    content_type_uid: Optional[str] = None
    # Unwrapped tool output, every top-level key included
    payload: Any = None
    kind: Literal["listing"] = "listing"

    @property
    def total(self) -> int:
        return self.count if self.count is not None else len(self.items)


@dataclass
class SchemaCatalogResult:
    tool: str
    content_types: List[ContentTypeDescriptor] = field(default_factory=list)
    count: Optional[int] = None
    payload: Any = None
    kind: Literal["schema"] = "schema"


@dataclass
class ErrorResult:
    tool: str
    message: str
    error_code: str = "tool_execution_error"
    content_type_uid: Optional[str] = None
    kind: Literal["error"] = "error"


@dataclass
class RawResult:
    """Payload with no recognized shape; rendered as plain JSON."""

    tool: str
    payload: Any
    content_type_uid: Optional[str] = None
    kind: Literal["raw"] = "raw"


ToolResult = Union[ListingResult, SchemaCatalogResult, ErrorResult, RawResult]


def _decode_text(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return text


def unwrap_tool_payload(result: Any) -> Tuple[Any, bool]:
    """Pull the data out of a ``tools/call`` result.

    Tool servers wrap output in ``content`` parts; text parts holding JSON are
    decoded, other text is kept as is. Returns ``(payload, is_error)``.
    """

    if not isinstance(result, Mapping) or "content" not in result:
        return result, False
    is_error = bool(result.get("isError"))
    parts = [
        _decode_text(part.get("text", ""))
        for part in result.get("content") or []
        if isinstance(part, Mapping) and part.get("type") == "text"
    ]
    if not parts:
        return None, is_error
    if len(parts) == 1:
        return parts[0], is_error
    return parts, is_error


def _count(payload: Mapping[str, Any]) -> Optional[int]:
    value = payload.get("count")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def classify_payload(
    tool: str, payload: Any, *, content_type_uid: Optional[str] = None
) -> ToolResult:
    if isinstance(payload, Mapping):
        if tool == SCHEMA_TOOL or "content_types" in payload:
            return SchemaCatalogResult(
                tool=tool,
                content_types=parse_content_types(payload),
                count=_count(payload),
                payload=payload,
            )
        for key in LISTING_KEYS:
            items = payload.get(key)
            if isinstance(items, list):
                return ListingResult(
                    tool=tool,
                    items=[item for item in items if isinstance(item, Mapping)],
                    listing=key,
                    count=_count(payload),
                    content_type_uid=content_type_uid,
                    payload=payload,
                )
    elif isinstance(payload, list) and all(isinstance(item, Mapping) for item in payload):
        return ListingResult(
            tool=tool, items=list(payload), content_type_uid=content_type_uid, payload=payload
        )
    return RawResult(tool=tool, payload=payload, content_type_uid=content_type_uid)


def error_text(payload: Any) -> str:
    if isinstance(payload, Mapping):
        for key in ("error_message", "message", "error"):
            if payload.get(key):
                return str(payload[key])
    if isinstance(payload, str) and payload:
        return payload
    return "tool call failed"
