"""Tests for the read-only tool filter and tool argument helpers."""

from __future__ import annotations

import pytest

from contentrelay.service.errors import SecurityViolation
from contentrelay.service.tools import (
    ASSETS_TOOL,
    ENTRIES_TOOL,
    SCHEMA_TOOL,
    build_tool_arguments,
    ensure_read_only,
    filter_read_only,
    mentions_mutation,
    parse_content_types,
    parse_tool_catalog,
)


ADVERTISED = [
    {"name": "get_all_content_types", "description": "Get all content types in the stack"},
    {"name": "get_all_entries", "description": "Get all entries of a content type"},
    {"name": "get_all_assets", "description": "Get all assets"},
    {"name": "get_single_entry", "description": "Get one entry by uid"},
    {"name": "delete_entry", "description": "Delete an entry"},
    {"name": "create_entry", "description": "Create an entry"},
    {"name": "publish_entry", "description": "Publish an entry"},
    {"name": "bulkUpdateEntries", "description": "Bulk operations on entries"},
]


# ==============================================================================
# Mutation Detection
# ==============================================================================


class TestMutationDetection:
    @pytest.mark.parametrize(
        "text",
        [
            "delete_entry",
            "bulkUpdateEntries",
            "Creates a new entry",
            "Publishing workflow",
            "Modifies the stack",
            "unpublish-asset",
        ],
    )
    def test_mutating_text(self, text):
        assert mentions_mutation(text)

    @pytest.mark.parametrize(
        "text",
        ["get_all_entries", "Get all content types in the stack", "List assets", ""],
    )
    def test_read_text(self, text):
        assert not mentions_mutation(text)


# ==============================================================================
# Filtering
# ==============================================================================


class TestFilterReadOnly:
    def test_keeps_only_allow_listed_bulk_reads(self):
        safe = filter_read_only(ADVERTISED)
        assert [tool.name for tool in safe] == [SCHEMA_TOOL, ENTRIES_TOOL, ASSETS_TOOL]

    def test_read_name_is_not_enough_without_allow_list(self):
        safe = filter_read_only(ADVERTISED)
        assert "get_single_entry" not in {tool.name for tool in safe}

    def test_mutating_tool_rejected_even_when_allow_listed(self):
        safe = filter_read_only(ADVERTISED, allow_list={"delete_entry", ENTRIES_TOOL})
        assert [tool.name for tool in safe] == [ENTRIES_TOOL]

    def test_mutating_description_rejected(self):
        tools = [{"name": ENTRIES_TOOL, "description": "Get entries, or delete them in bulk"}]
        assert filter_read_only(tools) == []

    def test_malformed_entries_skipped(self):
        tools = [{"description": "no name"}, "get_all_entries", None, ADVERTISED[1]]
        assert [tool.name for tool in filter_read_only(tools)] == [ENTRIES_TOOL]

    def test_input_schema_preserved(self):
        schema = {"type": "object", "properties": {"content_type_uid": {"type": "string"}}}
        tools = [{"name": ENTRIES_TOOL, "description": "Get entries", "inputSchema": schema}]
        assert filter_read_only(tools)[0].input_schema == schema


class TestEnsureReadOnly:
    def test_safe_tool_passes(self):
        ensure_read_only(ENTRIES_TOOL, [ENTRIES_TOOL, SCHEMA_TOOL])

    def test_unknown_tool_raises(self):
        with pytest.raises(SecurityViolation) as exc_info:
            ensure_read_only("delete_entry", [ENTRIES_TOOL])
        assert exc_info.value.tool == "delete_entry"

    def test_mutating_name_raises_even_if_listed(self):
        with pytest.raises(SecurityViolation):
            ensure_read_only("delete_entry", ["delete_entry"])


# ==============================================================================
# Catalog Parsing and Arguments
# ==============================================================================


class TestCatalogParsing:
    def test_tools_list_result(self):
        tools = parse_tool_catalog({"tools": ADVERTISED + [{"name": ""}, "junk"]})
        assert len(tools) == len(ADVERTISED)

    def test_bad_result_is_empty(self):
        assert parse_tool_catalog({"tools": "nope"}) == []
        assert parse_tool_catalog(None) == []

    def test_content_types(self):
        payload = {
            "content_types": [
                {"uid": "blog_post", "title": "Blog Post", "description": "Articles"},
                {"uid": "page"},
                {"title": "missing uid"},
            ]
        }
        descriptors = parse_content_types(payload)
        assert [d.uid for d in descriptors] == ["blog_post", "page"]
        assert descriptors[1].title == "page"


class TestToolArguments:
    def test_entries_arguments(self):
        args = build_tool_arguments(ENTRIES_TOOL, branch="dev", limit=5, content_type_uid="blog_post")
        assert args == {
            "limit": "5",
            "include_count": True,
            "branch": "dev",
            "content_type_uid": "blog_post",
        }

    def test_schema_arguments(self):
        assert build_tool_arguments(SCHEMA_TOOL) == {"branch": "main"}

    def test_unknown_tool_has_no_arguments(self):
        assert build_tool_arguments("get_something_else") == {}
