"""
Tests for tolerant tool-argument and model-reply JSON handling.
"""

import json

import pytest

from ouroboros.core.json_repair import (
    extract_json_object,
    find_balanced_object,
    iter_balanced_objects,
    parse_tool_arguments,
    repair_tool_arguments,
)


class TestRepairToolArguments:
    """Tests for repair_tool_arguments."""

    def test_valid_object_passes_through(self):
        """Well-formed arguments are returned unchanged."""
        assert repair_tool_arguments('{"path": "/a.txt"}') == {"path": "/a.txt"}

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_empty_input(self, raw):
        """Missing argument text means no arguments."""
        assert repair_tool_arguments(raw) == {}

    def test_missing_opening_brace(self):
        """A fragment stream that lost its first chunk is patched with '{'."""
        assert repair_tool_arguments('"path": "/a.txt"}') == {"path": "/a.txt"}

    def test_missing_closing_brace(self):
        """Truncated objects are closed."""
        assert repair_tool_arguments('{"path": "/a.txt"') == {"path": "/a.txt"}

    def test_unterminated_string(self):
        """A string cut mid-value is terminated before closing the object."""
        assert repair_tool_arguments('{"path": "/a') == {"path": "/a"}

    def test_nested_truncation(self):
        """Open arrays and objects are closed innermost first."""
        assert repair_tool_arguments('{"files": ["a", "b"') == {"files": ["a", "b"]}

    def test_trailing_comma(self):
        """A trailing comma left by truncation is dropped."""
        assert repair_tool_arguments('{"a": 1,') == {"a": 1}

    def test_dangling_key(self):
        """A key whose value never arrived becomes null."""
        assert repair_tool_arguments('{"key":') == {"key": None}

    def test_non_object_is_wrapped(self):
        """Valid JSON that isn't an object is wrapped under 'value'."""
        assert repair_tool_arguments("[1, 2]") == {"value": [1, 2]}

    def test_object_embedded_in_text(self):
        """An object surrounded by prose is recovered."""
        assert repair_tool_arguments('Sure: {"a": 1} thanks') == {"a": 1}

    def test_garbage_yields_empty_object(self):
        """Hopeless input degrades to {} instead of raising."""
        assert repair_tool_arguments("definitely not json") == {}

    def test_never_raises_on_any_truncation(self):
        """Every prefix of a valid argument string repairs to a dict."""
        original = json.dumps({"path": "/tmp/x y.txt", "lines": [1, 2, {"deep": "va\\\"l"}], "flag": True})
        for cut in range(len(original) + 1):
            result = repair_tool_arguments(original[:cut])
            assert isinstance(result, dict)
        assert repair_tool_arguments(original) == json.loads(original)


class TestParseToolArguments:
    """Tests for parse_tool_arguments."""

    def test_dict_passes_through(self):
        """Already-parsed arguments are not touched."""
        args = {"a": 1}
        assert parse_tool_arguments(args) is args

    def test_string_is_repaired(self):
        """Argument text goes through repair."""
        assert parse_tool_arguments('{"a": 1') == {"a": 1}

    def test_scalar_is_wrapped(self):
        """A bare scalar payload is wrapped."""
        assert parse_tool_arguments(5) == {"value": 5}
        assert parse_tool_arguments(None) == {}


class TestExtractJsonObject:
    """Tests for extract_json_object and the balanced-block scanner."""

    def test_bare_object(self):
        """A reply that is just JSON parses directly."""
        assert extract_json_object('{"agentIds": ["a"]}') == {"agentIds": ["a"]}

    def test_fenced_object(self):
        """A ```json fenced block is unwrapped."""
        text = 'Here you go:\n```json\n{"agentIds": ["a", "b"]}\n```'
        assert extract_json_object(text) == {"agentIds": ["a", "b"]}

    def test_braces_inside_strings(self):
        """Braces inside string literals don't break the balance count."""
        text = 'Result {"reasoning": "use {braces} and \\"quotes\\" carefully", "agentIds": ["a"]} done'
        assert extract_json_object(text) == {
            "reasoning": 'use {braces} and "quotes" carefully',
            "agentIds": ["a"],
        }

    def test_apostrophes_in_prose(self):
        """Quotes in the surrounding prose don't confuse the scanner."""
        assert extract_json_object("Don't worry, here's the answer: {\"a\": 1}") == {"a": 1}

    def test_skips_unparsable_blocks(self):
        """The first block that parses wins."""
        assert extract_json_object("{not json} then {\"b\": 2}") == {"b": 2}

    def test_no_object(self):
        """Text without an object yields None."""
        assert extract_json_object("no json here") is None
        assert extract_json_object("") is None
        assert extract_json_object(None) is None

    def test_array_is_not_an_object(self):
        """A top-level array is not accepted as a selection object."""
        assert extract_json_object("[1, 2, 3]") is None

    def test_iter_balanced_objects_order(self):
        """Blocks are yielded left to right, including nested starts."""
        blocks = list(iter_balanced_objects('a {"x": {"y": 1}} b {"z": 2}'))
        assert blocks[0] == '{"x": {"y": 1}}'
        assert '{"z": 2}' in blocks
        assert find_balanced_object("nothing") is None
