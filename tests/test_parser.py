"""Tests for tolerant model-output parsing."""

from __future__ import annotations

import json

import pytest

from gridsight.ai.parser import (
    EMPTY_RESPONSE_SUMMARY,
    FALLBACK_CONFIDENCE,
    UNKNOWN_IMAGE_ID,
    ResponseParser,
    extract_json_object,
    truncate_summary,
)
from gridsight.core.grid import PositionMap
from gridsight.errors import ParseError


# Deeper than the JSON decoder's recursion limit on any supported interpreter.
NESTING_DEPTH = 20_000


@pytest.fixture
def parser() -> ResponseParser:
    return ResponseParser()


@pytest.fixture
def abc() -> PositionMap:
    return PositionMap.from_image_ids(["a", "b", "c"])


FENCED_THREE = """```json
{
  "results": [
    {"position": "A1", "classification": "dark", "confidence": 0.7},
    {"position": "A2", "classification": "bright", "confidence": 0.95},
    {"position": "A3", "classification": "medium", "confidence": 0.8}
  ],
  "summary": "Sorted by brightness",
  "primaryCategories": ["dark", "bright"]
}
```"""


class TestStructuredParsing:
    def test_fenced_block_with_three_entries(
        self, parser: ResponseParser, abc: PositionMap
    ) -> None:
        parsed = parser.parse(FENCED_THREE, abc)

        assert parsed.structured is True
        assert len(parsed.results) == 3
        assert {r.image_id: r.classification for r in parsed.results} == {
            "a": "dark",
            "b": "bright",
            "c": "medium",
        }
        assert parsed.summary == "Sorted by brightness"
        assert parsed.primary_categories == ["dark", "bright"]

    def test_single_answer_maps_to_image_b(self, parser: ResponseParser, abc: PositionMap) -> None:
        raw = '{"results":[{"position":"A2","classification":"brightest"}],"summary":"done"}'
        parsed = parser.parse(raw, abc)

        assert len(parsed.results) == 1
        result = parsed.results[0]
        assert (result.image_id, result.classification) == ("b", "brightest")
        assert result.position == "A2"
        assert parsed.summary == "done"

    def test_json_surrounded_by_prose(self, parser: ResponseParser, abc: PositionMap) -> None:
        raw = 'Here you go: {"results":[{"position":"a3","classification":"x"}]} hope it helps'
        parsed = parser.parse(raw, abc)

        assert parsed.results[0].image_id == "c"
        assert parsed.summary == "Analyzed 1 images"

    def test_unknown_position(self, parser: ResponseParser, abc: PositionMap) -> None:
        raw = json.dumps({"results": [{"position": "C3", "classification": "ghost"}]})
        parsed = parser.parse(raw, abc)

        assert parsed.results[0].image_id == UNKNOWN_IMAGE_ID
        assert parsed.results[0].position == "C3"

    def test_duplicate_positions_first_wins(
        self, parser: ResponseParser, abc: PositionMap
    ) -> None:
        raw = json.dumps(
            {
                "results": [
                    {"position": "A1", "classification": "first"},
                    {"position": "A1", "classification": "second"},
                ]
            }
        )
        parsed = parser.parse(raw, abc)

        assert [r.classification for r in parsed.results] == ["first"]

    def test_results_capped_at_occupied_count(self, parser: ResponseParser) -> None:
        pm = PositionMap.from_image_ids(["only"])
        raw = json.dumps(
            {
                "results": [
                    {"position": "B2", "classification": "hallucinated"},
                    {"position": "A1", "classification": "real"},
                ]
            }
        )
        parsed = parser.parse(raw, pm)

        assert len(parsed.results) == 1
        assert parsed.results[0].image_id == "only"

    @pytest.mark.parametrize("raw_confidence,expected", [(0.5, 0.5), (85, 0.85), ("90%", 0.9)])
    def test_confidence_normalized(
        self, parser: ResponseParser, abc: PositionMap, raw_confidence, expected: float
    ) -> None:
        raw = json.dumps(
            {"results": [{"position": "A1", "classification": "x", "confidence": raw_confidence}]}
        )
        assert parser.parse(raw, abc).results[0].confidence == pytest.approx(expected)

    def test_invalid_shape_falls_back(self, parser: ResponseParser, abc: PositionMap) -> None:
        raw = '{"results": "A1 cat"}'
        parsed = parser.parse(raw, abc)

        assert parsed.structured is False


class TestFallbackParsing:
    def test_no_json_no_positions(self, parser: ResponseParser, abc: PositionMap) -> None:
        raw = "I'm sorry, I could not see any images clearly. " * 10
        parsed = parser.parse(raw, abc)

        assert parsed.results == []
        assert parsed.structured is False
        assert parsed.summary
        assert len(parsed.summary) <= 203
        assert parsed.summary.endswith("...")

    def test_position_tokens_extracted(self, parser: ResponseParser, abc: PositionMap) -> None:
        raw = "A1: a sunny beach\nA2 - a dark forest\nB1: nothing here"
        parsed = parser.parse(raw, abc)

        by_position = {r.position: r for r in parsed.results}
        assert by_position["A1"].classification == "a sunny beach"
        assert by_position["A1"].image_id == "a"
        assert by_position["A2"].classification == "a dark forest"
        assert by_position["B1"].image_id == UNKNOWN_IMAGE_ID
        assert all(r.confidence == FALLBACK_CONFIDENCE for r in parsed.results)

    def test_empty_response(self, parser: ResponseParser, abc: PositionMap) -> None:
        parsed = parser.parse("", abc)

        assert parsed.results == []
        assert parsed.summary == EMPTY_RESPONSE_SUMMARY

    def test_none_response(self, parser: ResponseParser, abc: PositionMap) -> None:
        assert parser.parse(None, abc).results == []

    @pytest.mark.parametrize(
        "raw",
        [
            "[" * NESTING_DEPTH + "]" * NESTING_DEPTH,
            '{"results": ' + "[" * NESTING_DEPTH + "]" * NESTING_DEPTH + "}",
            "```json\n" + "{\"a\": " * NESTING_DEPTH + "1" + "}" * NESTING_DEPTH + "\n```",
        ],
    )
    def test_deeply_nested_json_falls_back(
        self, parser: ResponseParser, abc: PositionMap, raw: str
    ) -> None:
        parsed = parser.parse(raw, abc)

        assert parsed.structured is False
        assert parsed.results == []
        assert parsed.summary.endswith("...")


class TestSingleImageParsing:
    def test_structured(self, parser: ResponseParser) -> None:
        raw = json.dumps(
            {"classification": "cat", "confidence": 0.9, "description": "A cat on a sofa"}
        )
        parsed = parser.parse_single(raw, "img-1")

        assert parsed.result.image_id == "img-1"
        assert parsed.result.classification == "cat"
        assert parsed.summary == "A cat on a sofa"

    def test_unstructured_uses_first_line(self, parser: ResponseParser) -> None:
        parsed = parser.parse_single("\nA tabby cat\nmore text", "img-1")

        assert parsed.structured is False
        assert parsed.result.classification == "A tabby cat"

    def test_empty(self, parser: ResponseParser) -> None:
        parsed = parser.parse_single("", "img-1")

        assert parsed.result.classification == "unclassified"
        assert parsed.result.confidence == 0.0

    def test_deeply_nested_json(self, parser: ResponseParser) -> None:
        parsed = parser.parse_single("[" * NESTING_DEPTH + "]" * NESTING_DEPTH, "img-1")

        assert parsed.structured is False
        assert parsed.result.image_id == "img-1"


class TestHelpers:
    def test_extract_rejects_arrays(self) -> None:
        with pytest.raises(ParseError):
            extract_json_object("[1, 2, 3]")

    def test_extract_skips_undecodable_nesting(self) -> None:
        with pytest.raises(ParseError):
            extract_json_object("{\"a\": " * NESTING_DEPTH + "1" + "}" * NESTING_DEPTH)

    def test_truncate_summary(self) -> None:
        assert truncate_summary("short") == "short"
        assert truncate_summary("x" * 250) == "x" * 200 + "..."
        assert truncate_summary("   ") == EMPTY_RESPONSE_SUMMARY
