"""
Unit Tests for JSON Extraction

Covers each shape of completion output the pipeline has to survive.
"""

import pytest

from deepsearch.json_extract import extract_json_object


class TestExtractJsonObject:
    """Tests for extract_json_object()."""

    @pytest.mark.parametrize("text", [None, "", "   \n  "])
    def test_empty_input_returns_none(self, text):
        """Test that empty or missing completions yield None."""
        assert extract_json_object(text) is None

    def test_valid_json(self):
        """Test a completion that is exactly one object."""
        assert extract_json_object('{"domain": "history", "entities": []}') == {
            "domain": "history",
            "entities": [],
        }

    def test_prose_wrapped_json(self):
        """Test an object surrounded by explanation."""
        text = 'Sure! Here is the analysis:\n{"keyDates": ["1989-11-09"]}\nLet me know if you need more.'
        assert extract_json_object(text) == {"keyDates": ["1989-11-09"]}

    def test_fenced_json(self):
        """Test an object inside a markdown code fence."""
        text = 'Result:\n```json\n{"queryType": "factual"}\n```'
        assert extract_json_object(text) == {"queryType": "factual"}

    def test_braces_inside_strings(self):
        """Test that braces in string values do not break the scan."""
        text = 'Output: {"description": "use {curly} braces", "n": 1} trailing'
        assert extract_json_object(text) == {"description": "use {curly} braces", "n": 1}

    def test_truncated_json_returns_none(self):
        """Test that an object cut off mid-way is rejected."""
        assert extract_json_object('{"entities": [{"name": "Berlin Wall", "type": "loc') is None

    def test_prose_without_json(self):
        """Test plain prose with no object at all."""
        assert extract_json_object("I could not analyze these results.") is None

    def test_top_level_array_is_not_an_object(self):
        """Test that a bare JSON array is not accepted."""
        assert extract_json_object('["a", "b"]') is None

    def test_first_parseable_object_wins(self):
        """Test that the first balanced, parseable object is returned."""
        text = 'not json {oops} then {"ok": true} and {"second": 2}'
        assert extract_json_object(text) == {"ok": True}

    def test_nested_objects(self):
        """Test that a nested object is returned whole, not its inner part."""
        text = 'prefix {"outer": {"inner": 1}} suffix'
        assert extract_json_object(text) == {"outer": {"inner": 1}}
