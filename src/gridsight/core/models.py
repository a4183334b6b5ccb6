"""Core data models for GridSight.

Models follow the request/response cycle:
1. REQUEST (ImageRef, AnalysisOptions, AnalysisRequest)
2. PER-IMAGE OUTPUT (PerImageResult)
3. RESPONSE (OptimizationStats, AtlasInfo, ResponseMetadata, AnalysisResponse)

All models serialize with camelCase aliases (``imageId``, ``cacheHit``) so
``model_dump(by_alias=True)`` produces the wire shape expected by callers,
while Python code uses snake_case attribute names.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

ENGINE_VERSION = "1.0.0"

_DATA_URI_PREFIX = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,")


# =============================================================================
# Enums
# =============================================================================


class AnalysisType(str, Enum):
    """Task vocabulary understood by the prompt builder."""

    SORT = "sort"
    CLASSIFY = "classify"
    DETECT = "detect"
    DESCRIBE = "describe"
    COMPARE = "compare"


class QualityLevel(str, Enum):
    """Caller's cost/quality trade-off.

    Attributes:
        FAST: Cheapest. Atlas calls use low detail and lower encode quality.
        BALANCED: Default.
        HIGH: Highest encode quality.
    """

    FAST = "fast"
    BALANCED = "balanced"
    HIGH = "high"


class DetailLevel(str, Enum):
    """Detail hint passed to the vision model for each call."""

    LOW = "low"
    HIGH = "high"


class WireModel(BaseModel):
    """Base for models exchanged with callers (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Request Models
# =============================================================================


class ImageRef(WireModel):
    """A caller-supplied image: a URL or inline base64 data, never both.

    Attributes:
        id: Caller's identifier; the join key for results.
        url: Remote location to fetch the image from.
        inline_data: Base64 text (optionally a ``data:image/...`` URI) or raw bytes.
        metadata: Optional caller metadata (filename, timestamp, location, tags).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(..., min_length=1)
    url: str | None = None
    inline_data: str | bytes | None = None
    metadata: dict[str, Any] | None = None

    @model_validator(mode="after")
    def exactly_one_source(self) -> "ImageRef":
        has_url = bool(self.url)
        has_inline = bool(self.inline_data)
        if has_url == has_inline:
            raise ValueError(f"Image {self.id!r} must have exactly one of url or inlineData")
        return self

    def decode_inline(self) -> bytes:
        """Return the inline payload as raw bytes.

        Raises:
            ValueError: If there is no inline data or it is not valid base64.
        """
        if self.inline_data is None:
            raise ValueError(f"Image {self.id!r} has no inline data")
        if isinstance(self.inline_data, bytes):
            return self.inline_data
        payload = _DATA_URI_PREFIX.sub("", self.inline_data.strip())
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Image {self.id!r} inline data is not valid base64") from e

    def source_fingerprint(self) -> str:
        """Stable identifier of the image source, for cache keys."""
        if self.url:
            return f"url:{self.url}"
        data = self.inline_data
        raw = data if isinstance(data, bytes) else (data or "").encode("utf-8")
        return f"inline:{hashlib.sha256(raw).hexdigest()[:32]}"


class AnalysisOptions(WireModel):
    """Per-request options.

    Attributes:
        force_atlas: Always use the atlas path, even below the threshold.
        cache_ttl_seconds: TTL for this response in the cache.
        quality_level: fast | balanced | high.
        include_metrics: Attach performance/cost/accuracy metrics.
        custom_prompt: Extra instructions appended to the prompt.
        cost_budget: Caller's budget in USD; must be at least $0.01 if set.
    """

    force_atlas: bool = False
    cache_ttl_seconds: int | None = Field(default=None, ge=1)
    quality_level: QualityLevel = QualityLevel.BALANCED
    include_metrics: bool = False
    custom_prompt: str | None = None
    cost_budget: float | None = None


class AnalysisRequest(WireModel):
    """One request to the engine.

    Size and content constraints (1..50 images, non-empty query) are enforced
    by the orchestrator so that they surface as ``ValidationError``.
    """

    images: list[ImageRef]
    query: str
    analysis_type: AnalysisType
    options: AnalysisOptions = Field(default_factory=AnalysisOptions)
    user_id: str | None = None


# =============================================================================
# Result Models
# =============================================================================


class PerImageResult(WireModel):
    """The model's answer for one input image.

    ``image_id`` is the join key; result order is not meaningful. Atlas
    entries whose position matched no image carry ``image_id="unknown"``.
    """

    image_id: str
    classification: str
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    reasoning: str | None = None
    attributes: dict[str, Any] | None = None
    position: str | None = None
    failed: bool = False
    error: str | None = None


class OptimizationStats(WireModel):
    """Savings of this request compared to an all-individual run."""

    cost_savings: float = 0.0
    token_savings: int = 0
    atlas_used: bool = False
    cache_hit: bool = False
    estimated_individual_tokens: int = 0
    actual_tokens: int = 0
    token_reduction_pct: float = 0.0


class CompressionStats(WireModel):
    original_count: int
    atlas_size: int
    compression_ratio: float


class AtlasInfo(WireModel):
    """Public description of the atlas used for a request."""

    id: str
    position_map: dict[str, str]
    byte_size: int
    format: str
    url: str | None = None
    compression_stats: CompressionStats | None = None


class QualityMetrics(WireModel):
    """Heuristic scores returned when ``includeMetrics`` is requested."""

    performance_score: float
    cost_efficiency: float
    accuracy_estimate: float


class ResponseMetadata(WireModel):
    request_id: str
    processing_time_ms: float
    model_used: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = ENGINE_VERSION
    strategy: str | None = None
    detail_level: DetailLevel | None = None
    degraded: bool = False
    fallback_reason: str | None = None


class AnalysisResponse(WireModel):
    """Full engine response for one request."""

    success: bool = True
    results: list[PerImageResult] = Field(default_factory=list)
    summary: str = ""
    atlas: AtlasInfo | None = None
    optimization: OptimizationStats = Field(default_factory=OptimizationStats)
    metrics: QualityMetrics | None = None
    metadata: ResponseMetadata

    @field_validator("summary")
    @classmethod
    def strip_summary(cls, v: str) -> str:
        return v.strip()

    def to_wire(self) -> dict[str, Any]:
        """JSON-compatible dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
