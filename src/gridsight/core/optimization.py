"""Cost and optimization bookkeeping.

Estimates what an all-individual run would have cost and compares it with
the tokens the atlas call actually used. The individual path reports zero
savings. All figures are ESTIMATES built from ``PricingSettings``.
"""

from __future__ import annotations

from collections.abc import Sequence

from gridsight.config import PricingSettings
from gridsight.core.models import (
    CompressionStats,
    OptimizationStats,
    PerImageResult,
    QualityMetrics,
)

BYTES_PER_ORIGINAL_IMAGE = 1024 * 1024
ATLAS_COST_EFFICIENCY = 90.0
INDIVIDUAL_COST_EFFICIENCY = 50.0
DEFAULT_ACCURACY_ESTIMATE = 85.0


class OptimizationCalculator:
    """Computes the ``optimization`` and ``metrics`` blocks of a response."""

    def __init__(self, pricing: PricingSettings | None = None) -> None:
        self.pricing = pricing or PricingSettings()

    def estimate_individual_tokens(self, image_count: int) -> int:
        return image_count * self.pricing.per_image_base_tokens

    def for_atlas(self, image_count: int, actual_tokens: int | None) -> OptimizationStats:
        """Savings of one atlas call over ``image_count`` individual calls.

        When the model did not report usage, the atlas call is assumed to
        cost one image's base tokens.
        """
        estimated = self.estimate_individual_tokens(image_count)
        actual = actual_tokens if actual_tokens else self.pricing.per_image_base_tokens
        token_savings = max(0, estimated - actual)

        return OptimizationStats(
            cost_savings=round(token_savings * self.pricing.cost_per_token_usd, 6),
            token_savings=token_savings,
            atlas_used=True,
            cache_hit=False,
            estimated_individual_tokens=estimated,
            actual_tokens=actual,
            token_reduction_pct=round(token_savings / estimated * 100, 2) if estimated else 0.0,
        )

    def for_individual(self, image_count: int, actual_tokens: int) -> OptimizationStats:
        return OptimizationStats(
            cost_savings=0.0,
            token_savings=0,
            atlas_used=False,
            cache_hit=False,
            estimated_individual_tokens=self.estimate_individual_tokens(image_count),
            actual_tokens=actual_tokens,
            token_reduction_pct=0.0,
        )


def compression_stats(original_count: int, atlas_size: int) -> CompressionStats:
    """Atlas bytes relative to a nominal 1 MiB per original image."""
    baseline = original_count * BYTES_PER_ORIGINAL_IMAGE
    return CompressionStats(
        original_count=original_count,
        atlas_size=atlas_size,
        compression_ratio=round(atlas_size / baseline, 4) if baseline else 0.0,
    )


def quality_metrics(
    processing_time_ms: float,
    atlas_used: bool,
    results: Sequence[PerImageResult],
) -> QualityMetrics:
    """Heuristic 0-100 scores.

    - performance: 100 minus 10 points per second of processing
    - cost efficiency: fixed per path
    - accuracy: mean reported confidence, or a fixed estimate without any
    """
    performance = max(0.0, 100.0 - (processing_time_ms / 1000.0) * 10.0)

    confidences = [r.confidence for r in results if r.confidence is not None and not r.failed]
    if confidences:
        accuracy = sum(confidences) / len(confidences) * 100.0
    else:
        accuracy = DEFAULT_ACCURACY_ESTIMATE

    return QualityMetrics(
        performance_score=round(performance, 2),
        cost_efficiency=ATLAS_COST_EFFICIENCY if atlas_used else INDIVIDUAL_COST_EFFICIENCY,
        accuracy_estimate=round(accuracy, 2),
    )
