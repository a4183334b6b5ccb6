"""Tests for cost/optimization bookkeeping."""

from __future__ import annotations

import pytest

from gridsight.config import PricingSettings
from gridsight.core.models import PerImageResult
from gridsight.core.optimization import (
    DEFAULT_ACCURACY_ESTIMATE,
    OptimizationCalculator,
    compression_stats,
    quality_metrics,
)


@pytest.fixture
def calculator() -> OptimizationCalculator:
    pricing = PricingSettings(per_image_base_tokens=765, cost_per_token_usd=1e-5)
    return OptimizationCalculator(pricing)


class TestOptimizationCalculator:
    def test_atlas_savings(self, calculator: OptimizationCalculator) -> None:
        stats = calculator.for_atlas(9, actual_tokens=1200)

        assert stats.atlas_used is True
        assert stats.estimated_individual_tokens == 6885
        assert stats.actual_tokens == 1200
        assert stats.token_savings == 5685
        assert stats.cost_savings == pytest.approx(0.05685)
        assert stats.token_reduction_pct == pytest.approx(82.57)

    def test_atlas_without_reported_usage(self, calculator: OptimizationCalculator) -> None:
        stats = calculator.for_atlas(3, actual_tokens=None)

        assert stats.actual_tokens == 765
        assert stats.token_savings == 1530

    def test_savings_never_negative(self, calculator: OptimizationCalculator) -> None:
        assert calculator.for_atlas(1, actual_tokens=5000).token_savings == 0

    def test_individual_reports_no_savings(self, calculator: OptimizationCalculator) -> None:
        stats = calculator.for_individual(2, actual_tokens=1700)

        assert stats.atlas_used is False
        assert (stats.token_savings, stats.cost_savings) == (0, 0.0)
        assert stats.estimated_individual_tokens == 1530


class TestCompressionStats:
    def test_ratio(self) -> None:
        stats = compression_stats(4, 1024 * 1024)
        assert stats.compression_ratio == 0.25

    def test_zero_images(self) -> None:
        assert compression_stats(0, 100).compression_ratio == 0.0


class TestQualityMetrics:
    def test_atlas_metrics(self) -> None:
        results = [
            PerImageResult(image_id="a", classification="x", confidence=0.8),
            PerImageResult(image_id="b", classification="y", confidence=0.6),
        ]
        metrics = quality_metrics(2500, True, results)

        assert metrics.performance_score == 75.0
        assert metrics.cost_efficiency == 90.0
        assert metrics.accuracy_estimate == 70.0

    def test_individual_without_confidence(self) -> None:
        metrics = quality_metrics(20000, False, [])

        assert metrics.performance_score == 0.0
        assert metrics.cost_efficiency == 50.0
        assert metrics.accuracy_estimate == DEFAULT_ACCURACY_ESTIMATE

    def test_failed_results_ignored(self) -> None:
        results = [
            PerImageResult(image_id="a", classification="x", confidence=0.9),
            PerImageResult(
                image_id="b", classification="unclassified", confidence=0.0, failed=True
            ),
        ]
        assert quality_metrics(0, False, results).accuracy_estimate == 90.0
