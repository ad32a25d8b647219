from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Mapping, Tuple

from contentrelay.config import ProviderProfile
from contentrelay.logging import get_logger
from contentrelay.service.errors import BudgetExceeded
from contentrelay.service.results import (
    ErrorResult,
    ListingResult,
    SchemaCatalogResult,
    ToolResult,
)
from contentrelay.service.tokenizer_utils import (
    estimate_token_count,
    fits_budget,
    truncate_to_budget,
)

logger = get_logger(__name__)

MAX_ITEMS_PER_SECTION = 10
DESCRIPTION_CHARS = 160
COMPACT_TITLE_CHARS = 40
COMPACT_TITLES = 3
# Raw size at this multiple of the budget skips straight to the compact tier
COMPACT_RATIO = 8
TRUNCATION_MARKER = "\n[truncated]"
EMPTY_CONTEXT = "No website content was retrieved for this question."

_IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".avif", ".bmp")
_TITLE_FIELDS = ("title", "name", "filename", "uid")
_DESCRIPTION_FIELDS = ("description", "summary", "excerpt", "body", "content", "text")
_TAG = re.compile(r"<[^>]+>")
_SPACE = re.compile(r"\s+")


def section_label(result_key: str) -> str:
    tool, _, uid = result_key.partition(":")
    label = tool.replace("_", " ").upper()
    return f"{label} ({uid})" if uid else label


def _clip(text: str, limit: int) -> str:
    text = _SPACE.sub(" ", _TAG.sub(" ", text)).strip()
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)].rstrip() + "..."


def _title(item: Mapping[str, Any]) -> str:
    for name in _TITLE_FIELDS:
        value = item.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return "untitled"


def _description(item: Mapping[str, Any]) -> str:
    for name in _DESCRIPTION_FIELDS:
        value = item.get(name)
        if isinstance(value, str) and value.strip():
            return _clip(value, DESCRIPTION_CHARS)
    return ""


def _is_file(value: Mapping[str, Any]) -> bool:
    url = value.get("url")
    return isinstance(url, str) and url.startswith(("http://", "https://", "//")) and (
        "filename" in value or "content_type" in value or "file_size" in value
    )


def _is_image(value: Mapping[str, Any]) -> bool:
    content_type = str(value.get("content_type") or "")
    if content_type.startswith("image/"):
        return True
    url = str(value.get("url") or "").split("?", 1)[0].lower()
    return url.endswith(_IMAGE_EXTENSIONS)


def media_reference(value: Mapping[str, Any]) -> str:
    """Markdown link for a file-like object; images render inline."""
    label = str(value.get("title") or value.get("filename") or "file").replace("]", "")
    if _is_image(value):
        return f"![{label}]({value['url']})"
    return f"[{label}]({value['url']})"


def find_media(value: Any, *, limit: int = 20) -> List[str]:
    """Media references found anywhere in a payload, de-duplicated in order."""

    found: List[str] = []

    def walk(node: Any) -> None:
        if len(found) >= limit:
            return
        if isinstance(node, Mapping):
            if _is_file(node):
                ref = media_reference(node)
                if ref not in found:
                    found.append(ref)
                return
            for child in node.values():
                walk(child)
        elif isinstance(node, list):
            for child in node:
                walk(child)

    walk(value)
    return found


def result_payload(result: ToolResult) -> Any:
    """JSON form of a result for the verbatim tier; the tool output itself when kept."""
    if isinstance(result, (ListingResult, SchemaCatalogResult)) and result.payload is not None:
        return result.payload
    if isinstance(result, ListingResult):
        payload: Dict[str, Any] = {result.listing: result.items}
        if result.count is not None:
            payload["count"] = result.count
        return payload
    if isinstance(result, SchemaCatalogResult):
        return {
            "content_types": [
                {"uid": ct.uid, "title": ct.title, "description": ct.description}
                for ct in result.content_types
            ]
        }
    if isinstance(result, ErrorResult):
        return {"error": result.message}
    return result.payload


class ContextSummarizer:
    """Renders tool results into model context that fits a token budget.

    Tiers, most to least detailed: verbatim JSON (only when it already fits),
    a structured summary listing the first few items of each section, an
    ultra-compact line per section, and finally a short notice asking for a
    narrower question. The output never exceeds the budget.
    """

    def summarize(
        self,
        results: Mapping[str, ToolResult],
        token_budget: int,
        *,
        low_throughput: bool = False,
    ) -> str:
        if token_budget <= 0:
            return ""
        if not results:
            return truncate_to_budget(EMPTY_CONTEXT, token_budget)

        verbatim = self.render_verbatim(results)
        raw_tokens = estimate_token_count(verbatim)
        if raw_tokens <= token_budget:
            logger.debug("context_tier_selected", tier="verbatim", tokens=raw_tokens, budget=token_budget)
            return verbatim

        tier, text = self._compress(results, token_budget, raw_tokens, low_throughput)
        logger.info(
            "context_compressed",
            tier=tier,
            raw_tokens=raw_tokens,
            tokens=estimate_token_count(text),
            budget=token_budget,
        )
        return truncate_to_budget(text, token_budget, marker=TRUNCATION_MARKER)

    def summarize_for(self, results: Mapping[str, ToolResult], profile: ProviderProfile) -> str:
        return self.summarize(
            results,
            profile.context_token_budget,
            low_throughput=profile.low_throughput,
        )

    def _compress(
        self,
        results: Mapping[str, ToolResult],
        token_budget: int,
        raw_tokens: int,
        low_throughput: bool,
    ) -> Tuple[str, str]:
        if not low_throughput and raw_tokens < token_budget * COMPACT_RATIO:
            try:
                return "structured", self.render_structured(results, token_budget)
            except BudgetExceeded:
                pass
        compact = self.render_compact(results)
        if fits_budget(compact, token_budget):
            return "compact", compact
        return "notice", self.render_notice(results)

    def render_verbatim(self, results: Mapping[str, ToolResult]) -> str:
        sections = []
        for key, result in results.items():
            payload = result_payload(result)
            body = json.dumps(payload, indent=2, ensure_ascii=False, default=str)
            section = f"=== {section_label(key)} DATA ===\n{body}"
            media = find_media(payload)
            if media:
                section += "\nMedia:\n" + "\n".join(media)
            sections.append(section)
        return "\n\n".join(sections)

    def render_structured(self, results: Mapping[str, ToolResult], token_budget: int) -> str:
        """Largest per-section item count (10 down to 1) whose rendering fits."""

        for limit in range(MAX_ITEMS_PER_SECTION, 0, -1):
            text = "\n\n".join(
                self._structured_section(key, result, limit) for key, result in results.items()
            )
            if fits_budget(text, token_budget):
                return text
        raise BudgetExceeded(
            "structured summary does not fit",
            tokens=estimate_token_count(text),
            budget=token_budget,
        )

    def _structured_section(self, key: str, result: ToolResult, limit: int) -> str:
        header = f"=== {section_label(key)} ==="
        if isinstance(result, ErrorResult):
            return f"{header}\nUnavailable: {_clip(result.message, DESCRIPTION_CHARS)}"
        if isinstance(result, SchemaCatalogResult):
            shown = result.content_types[:limit]
            lines = [f"{header}", f"{len(result.content_types)} content types"]
            for ct in shown:
                line = f"- {ct.uid} ({ct.title})"
                if ct.description:
                    line += f": {_clip(ct.description, DESCRIPTION_CHARS)}"
                lines.append(line)
            hidden = len(result.content_types) - len(shown)
            if hidden > 0:
                lines.append(f"... {hidden} more not shown")
            return "\n".join(lines)
        if isinstance(result, ListingResult):
            shown = result.items[:limit]
            lines = [header, f"Showing {len(shown)} of {result.total} {result.listing}"]
            for item in shown:
                description = _description(item)
                line = f"- {_clip(_title(item), 120)}"
                if description:
                    line += f": {description}"
                lines.append(line)
                for ref in find_media(item, limit=2):
                    lines.append(f"  {ref}")
            hidden = result.total - len(shown)
            if hidden > 0:
                lines.append(f"... {hidden} more not shown")
            return "\n".join(lines)
        raw = json.dumps(result_payload(result), ensure_ascii=False, default=str)
        return f"{header}\n{_clip(raw, DESCRIPTION_CHARS * limit)}"

    def render_compact(self, results: Mapping[str, ToolResult]) -> str:
        lines = []
        for key, result in results.items():
            label = section_label(key)
            if isinstance(result, ErrorResult):
                lines.append(f"{label}: unavailable")
            elif isinstance(result, SchemaCatalogResult):
                uids = ", ".join(ct.uid for ct in result.content_types[:COMPACT_TITLES])
                lines.append(f"{label}: {len(result.content_types)} types: {uids}")
            elif isinstance(result, ListingResult):
                titles = "; ".join(
                    _clip(_title(item), COMPACT_TITLE_CHARS) for item in result.items[:COMPACT_TITLES]
                )
                lines.append(f"{label}: {result.total} {result.listing}: {titles}")
            else:
                lines.append(f"{label}: data available")
        return "\n".join(lines)

    def render_notice(self, results: Mapping[str, ToolResult]) -> str:
        total = sum(_size(result) for result in results.values())
        return (
            f"Large dataset available ({total} items across {len(results)} sources). "
            "Ask a more specific question to narrow the results."
        )


def _size(result: ToolResult) -> int:
    if isinstance(result, ListingResult):
        return result.total
    if isinstance(result, SchemaCatalogResult):
        return len(result.content_types)
    return 0

