"""Tests for the mode-independent helpers shared by both automation variants."""

import json

import pytest

from anybrowser_mcp import js
from anybrowser_mcp.automation import describe_condition, image_format, require_timeout, truncate, url_matches
from anybrowser_mcp.errors import InvalidArgumentError


class TestHelpers:
    def test_truncate(self):
        assert truncate("a" * 100) == "a" * 100
        assert truncate("a" * 101) == "a" * 100 + "..."
        assert truncate(12345) == 12345

    def test_url_matches(self):
        assert url_matches("https://x.example/a", "https://x.example/a")
        assert url_matches("https://x.example/a?b=1", "https://x.example/a*")
        assert not url_matches("https://x.example/a?b=1", "https://x.example/a")
        assert not url_matches("https://x.example/b", "https://x.example/a*")

    def test_image_format(self):
        assert image_format("shot.JPG", None) == "jpeg"
        assert image_format("shot.png", 80) == "png"
        assert image_format(None, 80) == "jpeg"
        assert image_format(None, None) == "png"

    def test_negative_timeout(self):
        with pytest.raises(InvalidArgumentError, match="timeout"):
            require_timeout(-1)

    def test_describe_condition_names_every_part(self):
        described = describe_condition("#a", "visible", "Done", None)
        assert "#a" in described and "Done" in described


class TestPageFunctions:
    def test_call_expression_passes_one_json_argument(self):
        expression = js.call_expression(js.GET_TEXT, {"selector": 'a[title="x"]', "kind": "innerText"})
        assert expression.startswith(f"({js.GET_TEXT})(")
        assert json.loads(expression[len(js.GET_TEXT) + 3:-1]) == {"selector": 'a[title="x"]', "kind": "innerText"}

    def test_missing_argument_is_empty_object(self):
        assert js.call_expression(js.LOCATION, None).endswith("({})")
