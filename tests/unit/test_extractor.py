"""Tests for webhook response normalization."""

from __future__ import annotations

import pytest

from src.models import NormalizedResponse
from src.webhook.extractor import extract_response, looks_like_html, strip_html


class TestPlainValues:
    def test_plain_string_is_trimmed(self) -> None:
        assert extract_response("  hello  ") == NormalizedResponse(content="hello")

    @pytest.mark.parametrize("body", ["", "   ", None, 42, 3.5, True, []])
    def test_empty_or_unsupported_yields_nothing(self, body: object) -> None:
        assert extract_response(body) == NormalizedResponse()

    def test_same_input_same_result(self) -> None:
        body = {"output": "  A ", "source": "agent"}
        assert extract_response(body) == extract_response(body)


class TestObjects:
    def test_first_candidate_field_wins(self) -> None:
        result = extract_response({"output": "A", "message": "B"})
        assert result.content == "A"

    def test_falls_through_blank_and_non_string_fields(self) -> None:
        result = extract_response({"output": "   ", "message": 5, "text": "from text"})
        assert result.content == "from text"

    def test_source_is_trimmed(self) -> None:
        result = extract_response({"message": "hi", "source": "  crm  "})
        assert result == NormalizedResponse(content="hi", source="crm")

    def test_source_without_content(self) -> None:
        result = extract_response({"source": "crm", "status": "ok"})
        assert result == NormalizedResponse(source="crm")

    def test_nested_objects_are_not_searched(self) -> None:
        assert extract_response({"data": {"message": "deep"}}).content is None

    def test_html_field_without_text_is_skipped(self) -> None:
        result = extract_response({"output": "<div></div>", "message": "fallback"})
        assert result.content == "fallback"

    def test_html_field_with_text_is_sanitized(self) -> None:
        result = extract_response({"output": "<p>Hello &amp; welcome</p>"})
        assert result.content == "Hello & welcome"


class TestStrings:
    def test_html_without_text_yields_nothing(self) -> None:
        assert extract_response("<div></div>") == NormalizedResponse()

    def test_html_with_text(self) -> None:
        assert extract_response("<p>Hello</p>") == NormalizedResponse(content="Hello")

    def test_html_document(self) -> None:
        page = "<!DOCTYPE html><html><body><h1>Bad Gateway</h1></body></html>"
        assert extract_response(page).content == "Bad Gateway"

    def test_json_object_in_string(self) -> None:
        assert extract_response('{"message":"hi"}') == NormalizedResponse(content="hi")

    def test_json_string_array_in_string(self) -> None:
        assert extract_response('["  first ", "second"]').content == "first"

    def test_json_object_array_in_string(self) -> None:
        assert extract_response('[{"content":"X"}]').content == "X"

    def test_malformed_json_is_plain_text(self) -> None:
        assert extract_response("{not json").content == "{not json"

    def test_angle_brackets_are_not_html(self) -> None:
        assert extract_response("a < b > c").content == "a < b > c"


class TestArrays:
    def test_first_element_is_used(self) -> None:
        assert extract_response([{"content": "X"}]) == NormalizedResponse(content="X")

    def test_later_elements_are_ignored(self) -> None:
        result = extract_response([{"content": "X"}, {"content": "Y"}])
        assert result == NormalizedResponse(content="X")

    def test_first_element_without_content_does_not_fall_back(self) -> None:
        assert extract_response([{}, {"content": "Y"}]).content is None

    def test_deep_nesting_does_not_raise(self) -> None:
        body: object = "deep"
        for _ in range(500):
            body = [body]
        assert extract_response(body) == NormalizedResponse()


class TestHtmlHelpers:
    def test_json_text_is_never_html(self) -> None:
        assert not looks_like_html('{"html": "<p>x</p>"}')

    def test_paired_tag_is_html(self) -> None:
        assert looks_like_html("<b>bold</b>")

    def test_strip_html_decodes_entities_once(self) -> None:
        assert strip_html("<i>&amp;lt;</i>") == "&lt;"

    def test_strip_html_quotes(self) -> None:
        assert strip_html("<p>&quot;x&quot; &#x27;y&#x27;</p>") == "\"x\" 'y'"
