"""Tolerant parsing of model output.

The model is asked for JSON but is not guaranteed to return it. Parsing
therefore runs in two modes:

1. Structured: find a JSON object (the whole body, a fenced code block, or
   the outermost ``{...}``), validate it with pydantic, and map each entry's
   grid position back to an image id.
2. Fallback: scan the raw text for ``A1``..``C3`` tokens followed by words
   and emit one low-confidence entry per match.

``ResponseParser.parse`` never raises. At worst it returns no results and a
summary cut from the raw text.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from gridsight.core.grid import GridPosition, PositionMap
from gridsight.core.models import PerImageResult
from gridsight.errors import ParseError

logger = logging.getLogger(__name__)

UNKNOWN_IMAGE_ID = "unknown"
FALLBACK_CONFIDENCE = 0.8
FALLBACK_REASONING = "Extracted from unstructured response"
SUMMARY_MAX_CHARS = 200
EMPTY_RESPONSE_SUMMARY = "The model returned no analysis text"

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_OUTER_OBJECT = re.compile(r"\{[\s\S]*\}")

# A position token, any non-letters on the same line, then descriptive words
# up to (not including) the next position token.
_POSITION_NOT_NEXT = r"(?!\b[A-C][1-3]\b)"
_FALLBACK_ENTRY = re.compile(
    r"\b([A-C][1-3])\b[^A-Za-z\n]*"
    rf"((?:{_POSITION_NOT_NEXT}[A-Za-z])(?:{_POSITION_NOT_NEXT}[A-Za-z \t'/-])*)"
)


# =============================================================================
# Expected Shapes
# =============================================================================


def _coerce_confidence(value: Any) -> float | None:
    """Accept 0..1 floats, 0..100 percentages and numeric strings."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip().rstrip("%"))
    except ValueError:
        return None
    if number != number:  # NaN
        return None
    if 1.0 < number <= 100.0:
        number /= 100.0
    return min(max(number, 0.0), 1.0)


class AtlasEntry(BaseModel):
    """One ``results`` entry of an atlas response."""

    model_config = ConfigDict(extra="ignore")

    position: str = Field(..., min_length=1)
    classification: str = Field(..., min_length=1)
    confidence: float | None = None
    reasoning: str | None = None
    attributes: dict[str, Any] | None = None

    @field_validator("position")
    @classmethod
    def normalize_position(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("classification")
    @classmethod
    def strip_classification(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("classification must not be blank")
        return v

    @field_validator("confidence", mode="before")
    @classmethod
    def coerce_confidence(cls, v: Any) -> float | None:
        return _coerce_confidence(v)


class AtlasPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    results: list[AtlasEntry]
    summary: str = ""
    primary_categories: list[str] = Field(default_factory=list, alias="primaryCategories")

    @field_validator("summary", mode="before")
    @classmethod
    def summary_as_text(cls, v: Any) -> str:
        return "" if v is None else str(v)


class SingleImagePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    classification: str = Field(..., min_length=1)
    confidence: float | None = None
    description: str | None = None
    reasoning: str | None = None
    attributes: dict[str, Any] | None = None

    @field_validator("confidence", mode="before")
    @classmethod
    def coerce_confidence(cls, v: Any) -> float | None:
        return _coerce_confidence(v)


# =============================================================================
# Parse Results
# =============================================================================


@dataclass
class ParsedResponse:
    """Parser output for an atlas response.

    Attributes:
        results: One entry per answered position (join on ``image_id``).
        summary: Model summary, or a truncated prefix of the raw text.
        structured: False when the fallback extractor produced the results.
        primary_categories: Categories the model listed, if any.
    """

    results: list[PerImageResult]
    summary: str
    structured: bool = True
    primary_categories: list[str] = field(default_factory=list)


@dataclass
class ParsedSingleResponse:
    result: PerImageResult
    summary: str
    structured: bool = True


# =============================================================================
# Parser
# =============================================================================


class ResponseParser:
    """Turns raw model text into ``PerImageResult`` objects.

    Example:
        >>> parser = ResponseParser()
        >>> pm = PositionMap.from_image_ids(["a", "b", "c"])
        >>> parsed = parser.parse('{"results":[{"position":"A2","classification":"x"}]}', pm)
        >>> parsed.results[0].image_id
        'b'
    """

    def parse(self, raw: str | None, position_map: PositionMap) -> ParsedResponse:
        """Parse an atlas response. Never raises."""
        text = (raw or "").strip()
        try:
            payload = AtlasPayload.model_validate(extract_json_object(text))
        except (ParseError, ValidationError) as e:
            logger.debug(f"Structured parse failed, using fallback extractor: {type(e).__name__}")
            return self._parse_unstructured(text, position_map)

        results = self._map_structured(payload.results, position_map)
        summary = payload.summary.strip() or f"Analyzed {len(results)} images"
        return ParsedResponse(
            results=results,
            summary=summary,
            structured=True,
            primary_categories=payload.primary_categories,
        )

    def parse_single(self, raw: str | None, image_id: str) -> ParsedSingleResponse:
        """Parse a single-image response. Never raises."""
        text = (raw or "").strip()
        try:
            payload = SingleImagePayload.model_validate(extract_json_object(text))
        except (ParseError, ValidationError):
            return self._parse_single_unstructured(text, image_id)

        result = PerImageResult(
            image_id=image_id,
            classification=payload.classification.strip(),
            confidence=payload.confidence,
            reasoning=payload.reasoning or payload.description,
            attributes=payload.attributes,
        )
        summary = payload.description or payload.reasoning or "Single image analysis completed"
        return ParsedSingleResponse(result=result, summary=summary)

    def _map_structured(
        self, entries: list[AtlasEntry], position_map: PositionMap
    ) -> list[PerImageResult]:
        """First entry per position wins; capped at the occupied cell count."""
        seen: set[str] = set()
        known: list[PerImageResult] = []
        unknown: list[PerImageResult] = []

        for entry in entries:
            if entry.position in seen:
                continue
            seen.add(entry.position)

            result = _to_result(
                entry.position,
                entry.classification,
                position_map,
                confidence=entry.confidence,
                reasoning=entry.reasoning,
                attributes=entry.attributes,
            )
            if result.image_id == UNKNOWN_IMAGE_ID:
                unknown.append(result)
            else:
                known.append(result)

        return (known + unknown)[: len(position_map)]

    def _parse_unstructured(self, text: str, position_map: PositionMap) -> ParsedResponse:
        results = [
            _to_result(
                match.group(1),
                match.group(2).strip(),
                position_map,
                confidence=FALLBACK_CONFIDENCE,
                reasoning=FALLBACK_REASONING,
            )
            for match in _FALLBACK_ENTRY.finditer(text)
        ]
        return ParsedResponse(results=results, summary=truncate_summary(text), structured=False)

    def _parse_single_unstructured(self, text: str, image_id: str) -> ParsedSingleResponse:
        first_line = next((line.strip() for line in text.splitlines() if line.strip()), "")
        if first_line:
            result = PerImageResult(
                image_id=image_id,
                classification=first_line[:100],
                confidence=FALLBACK_CONFIDENCE,
                reasoning=FALLBACK_REASONING,
            )
        else:
            result = PerImageResult(
                image_id=image_id, classification="unclassified", confidence=0.0
            )
        return ParsedSingleResponse(result=result, summary=truncate_summary(text), structured=False)


def _to_result(
    label: str,
    classification: str,
    position_map: PositionMap,
    **extra: Any,
) -> PerImageResult:
    position = GridPosition.parse(label)
    image_id = position_map.image_at(position) if position is not None else None
    return PerImageResult(
        image_id=image_id or UNKNOWN_IMAGE_ID,
        classification=classification,
        position=position.value if position is not None else label,
        **extra,
    )


def extract_json_object(text: str) -> dict[str, Any]:
    """Locate and decode a JSON object in model output.

    Tries the whole body, then a fenced code block, then the outermost
    ``{...}`` span.

    Raises:
        ParseError: If no candidate decodes to a JSON object.
    """
    candidates = [text]
    fenced = _FENCED_BLOCK.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    braces = _OUTER_OBJECT.search(text)
    if braces:
        candidates.append(braces.group(0))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except (json.JSONDecodeError, RecursionError):
            continue
        if isinstance(data, dict):
            return data

    raise ParseError("No JSON object found in model response")


def truncate_summary(text: str, limit: int = SUMMARY_MAX_CHARS) -> str:
    """Raw text cut to ``limit`` characters (with an ellipsis), never empty."""
    text = text.strip()
    if not text:
        return EMPTY_RESPONSE_SUMMARY
    if len(text) > limit:
        return text[:limit] + "..."
    return text
