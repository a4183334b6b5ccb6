"""Prompt templates for vision calls.

This module is the single source of every prompt sent to the model. Two
templates are registered:

- ``atlas_analysis_v1``: one prompt for a whole 3x3 atlas. It lays out the
  grid, states the task, quotes the user query verbatim, adds optional
  instructions and per-position metadata, and ends with the JSON contract.
- ``single_image_v1``: one prompt per image on the individual path.

Rendering is a pure function of its inputs (no clock, no randomness), so
the output can be checked with plain substring assertions.

Example:
    >>> pm = PositionMap.from_image_ids(["a", "b", "c"])
    >>> prompt = render_atlas_prompt("find the brightest photo", AnalysisType.SORT, pm)
    >>> "A2: Image b" in prompt
    True
"""

from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from string import Template
from typing import Any

from gridsight.core.grid import GRID_COLUMNS, GridPosition, PositionMap
from gridsight.core.models import AnalysisType

SHORT_ID_LENGTH = 8


# =============================================================================
# Data Structures
# =============================================================================


@dataclass
class PromptTemplate:
    """Metadata and content for a prompt template.

    Attributes:
        id: Unique identifier (e.g., "atlas_analysis_v1").
        version: Semantic version string for tracking changes.
        template: Prompt text with ``$placeholder`` variables.
        output_schema: Example JSON the model must follow.
        required_variables: Variables that MUST be provided.
        description: Human-readable purpose.
    """

    id: str
    version: str
    template: str
    output_schema: dict[str, Any] | None = None
    required_variables: set[str] = field(default_factory=set)
    description: str = ""

    def render(self, **variables: Any) -> str:
        """Substitute variables into the template.

        Raises:
            ValueError: If required variables are missing.
        """
        missing = self.validate_variables(variables)
        if missing:
            raise ValueError(f"Missing required variables for prompt '{self.id}': {missing}")

        if self.output_schema and "output_schema" not in variables:
            variables["output_schema"] = render_output_schema(self.output_schema)

        return Template(self.template).substitute(variables)

    def validate_variables(self, variables: dict[str, Any]) -> list[str]:
        return sorted(self.required_variables - set(variables))


# =============================================================================
# Task Vocabulary
# =============================================================================


TASK_DESCRIPTIONS: dict[AnalysisType, str] = {
    AnalysisType.SORT: (
        "Sort and categorize the images based on the user query. Group similar images together."
    ),
    AnalysisType.CLASSIFY: (
        "Classify each image into appropriate categories based on content, style, or theme."
    ),
    AnalysisType.DETECT: (
        "Detect and identify specific objects, people, or elements in each image."
    ),
    AnalysisType.DESCRIBE: (
        "Provide detailed descriptions of each image including content, mood, and context."
    ),
    AnalysisType.COMPARE: (
        "Compare images and identify similarities, differences, and relationships between them."
    ),
}


# =============================================================================
# Output Schemas
# =============================================================================


ATLAS_OUTPUT_SCHEMA: dict[str, Any] = {
    "results": [
        {
            "position": "A1",
            "classification": "specific category based on query",
            "confidence": 0.85,
            "reasoning": "brief explanation",
            "attributes": {"key": "value"},
        }
    ],
    "summary": "Overall summary of the analysis and patterns found",
    "primaryCategories": ["category1", "category2"],
}

SINGLE_IMAGE_OUTPUT_SCHEMA: dict[str, Any] = {
    "classification": "primary category",
    "confidence": 0.85,
    "description": "detailed description",
    "attributes": {"key": "value"},
    "reasoning": "explanation of classification",
}


# =============================================================================
# Prompt Templates
# =============================================================================


ATLAS_ANALYSIS_PROMPT = PromptTemplate(
    id="atlas_analysis_v1",
    version="1.0.0",
    description="Classify every image of a 3x3 atlas in one call.",
    template=textwrap.dedent(
        """
        You are analyzing a 3x3 grid of $image_count images for image sorting and organization.

        GRID LAYOUT:
        $grid_layout

        TASK: $task_description
        USER QUERY: "$query"
        $extra_sections
        IMPORTANT GUIDELINES:
        - Analyze each visible image in the grid carefully
        - Reference images by their grid position (A1, A2, A3, B1, B2, B3, C1, C2, C3)
        - Provide clear, specific classifications
        - Consider the user's natural language query when categorizing
        - Include confidence scores (0-1) for each classification
        - Focus on visual content, composition, and apparent context
        - Do not return entries for empty positions

        Respond with a single JSON object. "results" must contain exactly one entry
        per visible (non-empty) position, and "summary" must be a string:
        $output_schema
        """
    ).strip(),
    output_schema=ATLAS_OUTPUT_SCHEMA,
    required_variables={"image_count", "grid_layout", "task_description", "query"},
)


SINGLE_IMAGE_PROMPT = PromptTemplate(
    id="single_image_v1",
    version="1.0.0",
    description="Analyze one image on the individual path.",
    template=textwrap.dedent(
        """
        Analyze this image based on the query: "$query"

        TASK: $task_description
        $extra_sections
        Provide a detailed analysis including:
        - Primary classification/category
        - Key visual elements and content
        - Mood, style, and context
        - Relevance to the query

        Include a confidence score (0-1) for the classification.

        Respond in JSON format:
        $output_schema
        """
    ).strip(),
    output_schema=SINGLE_IMAGE_OUTPUT_SCHEMA,
    required_variables={"query", "task_description"},
)


# =============================================================================
# Registry
# =============================================================================


PROMPT_REGISTRY: dict[str, PromptTemplate] = {}


def register_prompt(template: PromptTemplate) -> None:
    """Register a prompt template.

    Raises:
        ValueError: If a prompt with the same ID is already registered.
    """
    if template.id in PROMPT_REGISTRY:
        raise ValueError(f"Prompt '{template.id}' is already registered")
    PROMPT_REGISTRY[template.id] = template


def get_prompt(prompt_id: str) -> PromptTemplate:
    """Retrieve a prompt template by ID.

    Raises:
        KeyError: If no prompt with the given ID exists.
    """
    if prompt_id not in PROMPT_REGISTRY:
        available = ", ".join(sorted(PROMPT_REGISTRY.keys()))
        raise KeyError(f"Prompt '{prompt_id}' not found. Available prompts: {available}")
    return PROMPT_REGISTRY[prompt_id]


def _register_builtin_prompts() -> None:
    for template in [ATLAS_ANALYSIS_PROMPT, SINGLE_IMAGE_PROMPT]:
        register_prompt(template)


_register_builtin_prompts()


# =============================================================================
# Rendering
# =============================================================================


def render_atlas_prompt(
    query: str,
    analysis_type: AnalysisType | str,
    position_map: PositionMap,
    metadata: Mapping[str, Mapping[str, Any] | None] | None = None,
    custom_prompt: str | None = None,
) -> str:
    """Render the prompt for one atlas.

    Args:
        query: The user's query, embedded verbatim.
        analysis_type: Selects the task sentence.
        position_map: Image id -> position for this atlas.
        metadata: Optional per-image metadata keyed by image id.
        custom_prompt: Optional extra instructions.

    Returns:
        The full prompt text.
    """
    sections = []
    if custom_prompt and custom_prompt.strip():
        sections.append(f"ADDITIONAL INSTRUCTIONS: {custom_prompt.strip()}")
    if metadata:
        context = format_metadata_context(metadata, position_map)
        if context:
            sections.append(context)

    return get_prompt("atlas_analysis_v1").render(
        image_count=len(position_map),
        grid_layout=describe_grid_layout(position_map),
        task_description=TASK_DESCRIPTIONS[AnalysisType(analysis_type)],
        query=query,
        extra_sections=_join_sections(sections),
    )


def render_single_image_prompt(
    query: str,
    analysis_type: AnalysisType | str,
    custom_prompt: str | None = None,
) -> str:
    """Render the prompt for one image on the individual path."""
    sections = []
    if custom_prompt and custom_prompt.strip():
        sections.append(f"ADDITIONAL INSTRUCTIONS: {custom_prompt.strip()}")

    return get_prompt("single_image_v1").render(
        query=query,
        task_description=TASK_DESCRIPTIONS[AnalysisType(analysis_type)],
        extra_sections=_join_sections(sections),
    )


def _join_sections(sections: list[str]) -> str:
    return "".join(f"\n{section}\n" for section in sections)


def describe_grid_layout(position_map: PositionMap) -> str:
    """One line per row, e.g. ``A1: Image a | A2: Image b | A3: Empty``."""
    cells = []
    for position in GridPosition.ordered():
        image_id = position_map.image_at(position)
        if image_id is None:
            cells.append(f"{position.value}: Empty")
        else:
            cells.append(f"{position.value}: Image {image_id[-SHORT_ID_LENGTH:]}")

    rows = [cells[i : i + GRID_COLUMNS] for i in range(0, len(cells), GRID_COLUMNS)]
    return "\n".join(" | ".join(row) for row in rows)


def format_metadata_context(
    metadata: Mapping[str, Mapping[str, Any] | None],
    position_map: PositionMap,
) -> str:
    """Render per-position metadata lines, in grid order.

    Images without metadata, or without any known field, are skipped.
    Returns an empty string when nothing is rendered.
    """
    lines = []
    for image_id, position in sorted(position_map.items(), key=lambda kv: kv[1].index):
        fields = _metadata_fields(metadata.get(image_id) or {})
        if fields:
            lines.append(f"{position.value}: {', '.join(fields)}")

    if not lines:
        return ""
    return "IMAGE METADATA CONTEXT:\n" + "\n".join(lines)


def _metadata_fields(meta: Mapping[str, Any]) -> list[str]:
    fields = []
    if meta.get("filename"):
        fields.append(f"Filename: {meta['filename']}")
    if meta.get("timestamp"):
        fields.append(f"Date: {_format_date(meta['timestamp'])}")
    if meta.get("location"):
        fields.append(f"Location: {meta['location']}")
    tags = meta.get("tags")
    if tags:
        tag_text = ", ".join(str(t) for t in tags) if isinstance(tags, (list, tuple)) else str(tags)
        fields.append(f"Tags: {tag_text}")
    return fields


def _format_date(value: Any) -> str:
    """ISO date for datetimes, ISO strings and epoch numbers; else ``str(value)``."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Values this large are epoch milliseconds.
        seconds = value / 1000 if abs(value) > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).date().isoformat()
        except (OverflowError, OSError, ValueError):
            return str(value)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date().isoformat()
        except ValueError:
            return value
    return str(value)


def render_output_schema(schema: dict[str, Any]) -> str:
    """Pretty JSON for prompt insertion."""
    return json.dumps(schema, indent=2)
