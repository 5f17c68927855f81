"""
Tests for tool declaration normalization and argument validation.
"""

import pytest
from pydantic import ValidationError

from ouroboros.core.tool_schemas import (
    ToolDeclaration,
    ToolSchemaRegistry,
    normalize_tools,
    to_anthropic_tools,
    to_openai_tools,
)

READ_FILE = {
    "name": "read_file",
    "description": "Read a file",
    "parameters": {
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "limit": {"type": "integer"},
            "mode": {"enum": ["text", "binary"]},
        },
        "required": ["path"],
    },
}


class TestNormalizeTools:
    """Tests for normalize_tools."""

    def test_accepts_every_format(self):
        """Gemini groups, OpenAI function tools and bare declarations all normalize."""
        tools = normalize_tools([
            {"functionDeclarations": [{"name": "a", "parametersJsonSchema": {"type": "object"}}]},
            {"type": "function", "function": {"name": "b", "description": "B"}},
            {"name": "c", "input_schema": {"type": "object", "properties": {}}},
            ToolDeclaration(name="d"),
        ])

        assert [t.name for t in tools] == ["a", "b", "c", "d"]
        assert tools[1].description == "B"
        assert tools[0].parameters == {"type": "object"}

    def test_first_declaration_wins(self):
        """Duplicate names keep the first declaration."""
        tools = normalize_tools([{"name": "a", "description": "first"}, {"name": "a", "description": "second"}])

        assert len(tools) == 1
        assert tools[0].description == "first"

    def test_unrecognized_entries_skipped(self):
        """Entries with no recognizable shape are ignored."""
        assert normalize_tools([{"something": "else"}]) == []
        assert normalize_tools(None) == []

    def test_provider_formats(self):
        """Declarations format to OpenAI function tools and Anthropic tools."""
        declaration = normalize_tools([READ_FILE])

        openai = to_openai_tools(declaration)[0]
        anthropic = to_anthropic_tools(declaration)[0]

        assert openai["type"] == "function"
        assert openai["function"]["name"] == "read_file"
        assert anthropic["input_schema"]["properties"]["path"] == {"type": "string"}


class TestToolSchemaRegistry:
    """Tests for load-time schema compilation and validation."""

    def test_valid_arguments_are_coerced(self):
        """Lax pydantic coercion turns '3' into 3."""
        registry = ToolSchemaRegistry(normalize_tools([READ_FILE]))

        args = registry.validate("read_file", {"path": "/a.txt", "limit": "3"})

        assert args == {"path": "/a.txt", "limit": 3}

    def test_missing_required(self):
        """A missing required property fails validation."""
        registry = ToolSchemaRegistry(normalize_tools([READ_FILE]))

        with pytest.raises(ValidationError):
            registry.validate("read_file", {"limit": 3})

    def test_enum_violation(self):
        """Values outside an enum fail validation."""
        registry = ToolSchemaRegistry(normalize_tools([READ_FILE]))

        with pytest.raises(ValidationError):
            registry.validate("read_file", {"path": "/a", "mode": "hex"})

    def test_additional_properties_false(self):
        """Extra keys are rejected only when the schema forbids them."""
        strict = {
            "name": "strict",
            "parameters": {
                "type": "object",
                "properties": {"x": {"type": "string"}},
                "additionalProperties": False,
            },
        }
        registry = ToolSchemaRegistry(normalize_tools([strict, READ_FILE]))

        with pytest.raises(ValidationError):
            registry.validate("strict", {"x": "1", "y": "2"})
        assert registry.validate("read_file", {"path": "/a", "extra": True})["extra"] is True

    def test_non_identifier_property_names(self):
        """Property names that aren't Python identifiers still validate."""
        tool = {
            "name": "odd",
            "parameters": {
                "type": "object",
                "properties": {"file-path": {"type": "string"}, "class": {"type": "string"}},
                "required": ["file-path"],
            },
        }
        registry = ToolSchemaRegistry(normalize_tools([tool]))

        assert registry.validate("odd", {"file-path": "a", "class": "b"}) == {"file-path": "a", "class": "b"}

    def test_uncompilable_schema_is_permissive(self):
        """Unsupported schemas register a permissive validator instead of failing."""
        tool = {
            "name": "weird",
            "parameters": {"type": "object", "properties": {"x": {"type": "frobnicate"}}},
        }
        registry = ToolSchemaRegistry(normalize_tools([tool]))

        assert registry.is_permissive("weird")
        assert registry.validate("weird", {"x": object}) == {"x": object}

    def test_unknown_tool_passes_through(self):
        """Tools that were never registered are not validated."""
        registry = ToolSchemaRegistry()

        assert registry.validate("anything", {"a": 1}) == {"a": 1}
        assert "anything" not in registry
        assert len(registry) == 0
