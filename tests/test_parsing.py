"""Structured-answer extraction."""
from __future__ import annotations

import pytest

from bookmind.errors import EmptyArtifact, MalformedArtifact
from bookmind.parsing import extract_fenced_block, parse_json_response, require_text


class TestParseJsonResponse:
    def test_direct_json(self):
        assert parse_json_response('{"a": 1}', "mind map") == {"a": 1}

    def test_fenced_block_after_prose(self):
        raw = 'Here is the result:\n```json\n{"nodeData": {"topic": "T", "id": "1"}}\n```'
        assert parse_json_response(raw, "mind map") == {"nodeData": {"topic": "T", "id": "1"}}

    def test_fence_without_language(self):
        assert parse_json_response("```\n[1, 2]\n```", "list") == [1, 2]

    def test_first_fence_wins(self):
        raw = '```json\n{"n": 1}\n```\nand\n```json\n{"n": 2}\n```'
        assert parse_json_response(raw, "x") == {"n": 1}

    @pytest.mark.parametrize("raw", [None, "", "   \n"])
    def test_empty_raises(self, raw):
        with pytest.raises(MalformedArtifact, match="mind map"):
            parse_json_response(raw, "mind map")

    def test_no_json_names_label(self):
        with pytest.raises(MalformedArtifact, match="chapter 3 mind map"):
            parse_json_response("sorry, I cannot do that", "chapter 3 mind map")

    def test_broken_fence_names_label(self):
        with pytest.raises(MalformedArtifact, match="book mind map"):
            parse_json_response("```json\n{not json}\n```", "book mind map")


class TestHelpers:
    def test_require_text_strips(self):
        assert require_text("  hi \n", "summary") == "hi"

    def test_extract_specific_language(self):
        raw = "```text\nno\n```\n```mermaid\ngraph TD\nA-->B\n```"
        assert extract_fenced_block(raw, "mermaid") == "graph TD\nA-->B"

    def test_extract_missing(self):
        assert extract_fenced_block("plain") is None

    def test_require_text_empty(self):
        with pytest.raises(EmptyArtifact, match="empty summary"):
            require_text("  ", "summary")
