"""Tests for prompt templates and rendering."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from gridsight.ai.prompts import (
    ATLAS_ANALYSIS_PROMPT,
    PROMPT_REGISTRY,
    TASK_DESCRIPTIONS,
    PromptTemplate,
    describe_grid_layout,
    format_metadata_context,
    get_prompt,
    register_prompt,
    render_atlas_prompt,
    render_single_image_prompt,
)
from gridsight.core.grid import PositionMap
from gridsight.core.models import AnalysisType


@pytest.fixture
def position_map() -> PositionMap:
    return PositionMap.from_image_ids(["a", "b", "c"])


class TestGridLayout:
    def test_three_images(self, position_map: PositionMap) -> None:
        layout = describe_grid_layout(position_map)

        assert layout.splitlines() == [
            "A1: Image a | A2: Image b | A3: Image c",
            "B1: Empty | B2: Empty | B3: Empty",
            "C1: Empty | C2: Empty | C3: Empty",
        ]

    def test_long_ids_are_shortened(self) -> None:
        pm = PositionMap.from_image_ids(["photo-0000-1234abcd"])
        assert "A1: Image 1234abcd" in describe_grid_layout(pm)


class TestAtlasPrompt:
    def test_contains_query_task_and_layout(self, position_map: PositionMap) -> None:
        prompt = render_atlas_prompt("find the brightest photo", AnalysisType.SORT, position_map)

        assert "3x3 grid of 3 images" in prompt
        assert 'USER QUERY: "find the brightest photo"' in prompt
        assert f"TASK: {TASK_DESCRIPTIONS[AnalysisType.SORT]}" in prompt
        assert "A2: Image b" in prompt
        assert "Do not return entries for empty positions" in prompt
        assert '"primaryCategories"' in prompt

    @pytest.mark.parametrize("analysis_type", list(AnalysisType))
    def test_every_analysis_type_has_a_task(
        self, position_map: PositionMap, analysis_type: AnalysisType
    ) -> None:
        prompt = render_atlas_prompt("q", analysis_type.value, position_map)
        assert TASK_DESCRIPTIONS[analysis_type] in prompt

    def test_custom_prompt(self, position_map: PositionMap) -> None:
        prompt = render_atlas_prompt(
            "q", "classify", position_map, custom_prompt="  Prefer broad categories  "
        )
        assert "ADDITIONAL INSTRUCTIONS: Prefer broad categories" in prompt

    def test_blank_custom_prompt_is_omitted(self, position_map: PositionMap) -> None:
        prompt = render_atlas_prompt("q", "classify", position_map, custom_prompt="   ")
        assert "ADDITIONAL INSTRUCTIONS" not in prompt

    def test_metadata_context(self, position_map: PositionMap) -> None:
        metadata = {
            "b": {
                "filename": "beach.jpg",
                "timestamp": "2023-07-04T12:00:00Z",
                "location": "Lisbon",
                "tags": ["sea", "sun"],
            }
        }
        prompt = render_atlas_prompt("q", "sort", position_map, metadata=metadata)

        assert "IMAGE METADATA CONTEXT:" in prompt
        assert (
            "A2: Filename: beach.jpg, Date: 2023-07-04, Location: Lisbon, Tags: sea, sun" in prompt
        )

    def test_rendering_is_deterministic(self, position_map: PositionMap) -> None:
        first = render_atlas_prompt("q", "describe", position_map, custom_prompt="x")
        second = render_atlas_prompt("q", "describe", position_map, custom_prompt="x")
        assert first == second

    def test_query_with_dollar_sign_is_verbatim(self, position_map: PositionMap) -> None:
        prompt = render_atlas_prompt("items under $5", "sort", position_map)
        assert 'USER QUERY: "items under $5"' in prompt


class TestMetadataContext:
    def test_empty_when_nothing_known(self, position_map: PositionMap) -> None:
        assert format_metadata_context({"a": {"unrelated": 1}}, position_map) == ""

    def test_epoch_milliseconds(self, position_map: PositionMap) -> None:
        millis = int(datetime(2021, 3, 1, tzinfo=timezone.utc).timestamp() * 1000)
        context = format_metadata_context({"a": {"timestamp": millis}}, position_map)
        assert "A1: Date: 2021-03-01" in context

    def test_grid_order(self, position_map: PositionMap) -> None:
        context = format_metadata_context(
            {"c": {"location": "Oslo"}, "a": {"location": "Rome"}}, position_map
        )
        assert context.index("A1:") < context.index("A3:")


class TestSingleImagePrompt:
    def test_contains_query_and_task(self) -> None:
        prompt = render_single_image_prompt("is this a cat?", AnalysisType.DETECT)

        assert 'based on the query: "is this a cat?"' in prompt
        assert TASK_DESCRIPTIONS[AnalysisType.DETECT] in prompt
        assert '"classification"' in prompt


class TestRegistry:
    def test_builtins_registered(self) -> None:
        assert get_prompt("atlas_analysis_v1") is ATLAS_ANALYSIS_PROMPT
        assert "single_image_v1" in PROMPT_REGISTRY

    def test_unknown_prompt(self) -> None:
        with pytest.raises(KeyError):
            get_prompt("nope")

    def test_duplicate_registration(self) -> None:
        with pytest.raises(ValueError):
            register_prompt(ATLAS_ANALYSIS_PROMPT)

    def test_missing_variables(self) -> None:
        template = PromptTemplate(
            id="t", version="1", template="$a $b", required_variables={"a", "b"}
        )
        with pytest.raises(ValueError) as exc_info:
            template.render(a="x")
        assert "['b']" in str(exc_info.value)
