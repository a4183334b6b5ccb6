"""Tests for atlas-vs-individual strategy selection."""

from __future__ import annotations

import pytest

from gridsight.core.models import DetailLevel, QualityLevel
from gridsight.core.strategy import AtlasStrategy, IndividualStrategy, StrategySelector


@pytest.fixture
def selector() -> StrategySelector:
    return StrategySelector(threshold=3)


class TestStrategySelector:
    def test_below_threshold_is_individual(self, selector: StrategySelector) -> None:
        strategy = selector.decide(2, False, "balanced")

        assert isinstance(strategy, IndividualStrategy)
        assert strategy.use_atlas is False
        assert strategy.detail_level is DetailLevel.HIGH
        assert strategy.name == "individual_processing"

    def test_at_threshold_is_atlas(self, selector: StrategySelector) -> None:
        strategy = selector.decide(3, False, "balanced")

        assert isinstance(strategy, AtlasStrategy)
        assert strategy.use_atlas is True
        assert strategy.detail_level is DetailLevel.HIGH
        assert strategy.name == "cost_optimized_atlas"

    def test_fast_quality_uses_low_detail(self, selector: StrategySelector) -> None:
        strategy = selector.decide(5, False, QualityLevel.FAST)

        assert isinstance(strategy, AtlasStrategy)
        assert strategy.detail_level is DetailLevel.LOW

    def test_high_quality_uses_high_detail(self, selector: StrategySelector) -> None:
        strategy = selector.decide(5, False, "high")
        assert strategy.detail_level is DetailLevel.HIGH

    def test_force_atlas_single_image(self, selector: StrategySelector) -> None:
        strategy = selector.decide(1, True, "balanced")

        assert isinstance(strategy, AtlasStrategy)
        assert strategy.forced is True
        assert strategy.name == "forced_atlas"

    def test_force_atlas_always_high_detail(self, selector: StrategySelector) -> None:
        strategy = selector.decide(5, True, "fast")
        assert strategy.detail_level is DetailLevel.HIGH

    def test_custom_threshold(self) -> None:
        selector = StrategySelector(threshold=5)

        assert isinstance(selector.decide(4), IndividualStrategy)
        assert isinstance(selector.decide(5), AtlasStrategy)

    def test_invalid_threshold(self) -> None:
        with pytest.raises(ValueError):
            StrategySelector(threshold=0)

    def test_decision_is_pure(self, selector: StrategySelector) -> None:
        assert selector.decide(4, False, "fast") == selector.decide(4, False, "fast")

    def test_force_overrides_fast_detail_downgrade(self, selector: StrategySelector) -> None:
        strategy = selector.decide(1, True, "fast")

        assert strategy.use_atlas is True
        assert strategy.detail_level is DetailLevel.HIGH
