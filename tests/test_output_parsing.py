# tests/test_output_parsing.py
"""Tests for extracting declared outputs from model responses."""
import pytest

pytestmark = pytest.mark.unit

from keel_engine.exceptions import ValidationFailure
from keel_engine.output_parsing import extract_json_object, parse_stage_outputs, sanitize


class TestExtractJsonObject:

    @pytest.mark.parametrize("content,expected", [
        ('```json\n{"a": 1}\n```', {"a": 1}),
        ('Here you go:\n```\n{"a": 2}\n```\nThanks', {"a": 2}),
        ('{"a": 3}', {"a": 3}),
        ('Result: {"a": {"b": "}"}} and more text', {"a": {"b": "}"}}),
        ('```json\n{"a": 4,}\n```', {"a": 4}),
        ('```python\nprint(1)\n```\n```json\n{"a": 5}\n```', {"a": 5}),
        ("\x1b[32m{\"a\": 6}\x1b[0m", {"a": 6}),
    ])
    def test_finds_object(self, content, expected):
        assert extract_json_object(content) == expected

    @pytest.mark.parametrize("content", ["", "no braces here", "[1, 2, 3]", "{broken"])
    def test_nothing_found(self, content):
        assert extract_json_object(content) is None

    def test_sanitize_keeps_newlines(self):
        assert sanitize("a\x07b\n\tc\x1b[1m") == "ab\n\tc"


class TestParseStageOutputs:

    def test_declared_outputs_picked(self):
        content = '```json\n{"summary": "s", "risk": "low", "extra": true}\n```'
        assert parse_stage_outputs(content, ("summary", "risk"), "review") == {"summary": "s", "risk": "low"}

    def test_missing_outputs(self):
        with pytest.raises(ValidationFailure) as exc_info:
            parse_stage_outputs('{"summary": "s"}', ("summary", "risk"), "review")
        assert exc_info.value.missing == ["risk"]
        assert exc_info.value.stage == "review"

    def test_no_json_with_several_outputs(self):
        with pytest.raises(ValidationFailure, match="no JSON object"):
            parse_stage_outputs("plain text", ("a", "b"), "s")

    def test_single_output_takes_plain_text(self):
        assert parse_stage_outputs("  The plan is simple.  ", ("plan",)) == {"plan": "The plan is simple."}

    def test_single_output_under_other_key(self):
        assert parse_stage_outputs('{"result": [1, 2]}', ("items",)) == {"items": [1, 2]}

    def test_no_declared_outputs(self):
        assert parse_stage_outputs('{"k": "v"}', ()) == {"k": "v"}
        assert parse_stage_outputs(" done ", ()) == {"response": "done"}

    def test_empty_content_single_output(self):
        with pytest.raises(ValidationFailure):
            parse_stage_outputs("   ", ("plan",))
