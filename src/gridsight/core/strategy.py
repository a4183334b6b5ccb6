"""Atlas-vs-individual strategy selection.

The decision is a pure function of (image count, force flag, quality level):

1. ``force_atlas`` -> atlas, detail high.
2. ``image_count >= threshold`` -> atlas; detail low for "fast", else high.
3. otherwise -> individual processing, detail high.

The result is a closed set of variants (``AtlasStrategy`` or
``IndividualStrategy``); callers dispatch on the type, never by probing for
attributes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from gridsight.core.models import DetailLevel, QualityLevel

DEFAULT_ATLAS_THRESHOLD = 3


@dataclass(frozen=True)
class AtlasStrategy:
    """Merge the images into one composite and call the model once."""

    detail_level: DetailLevel
    reason: str
    forced: bool = False

    use_atlas: Literal[True] = field(default=True, init=False, repr=False)

    @property
    def name(self) -> str:
        return "forced_atlas" if self.forced else "cost_optimized_atlas"


@dataclass(frozen=True)
class IndividualStrategy:
    """Call the model once per image, sequentially."""

    reason: str
    detail_level: DetailLevel = DetailLevel.HIGH

    use_atlas: Literal[False] = field(default=False, init=False, repr=False)

    @property
    def name(self) -> str:
        return "individual_processing"


Strategy = AtlasStrategy | IndividualStrategy


class StrategySelector:
    """Decides how a request is processed.

    Example:
        >>> selector = StrategySelector(threshold=3)
        >>> selector.decide(5, False, "balanced")
        AtlasStrategy(detail_level=<DetailLevel.HIGH: 'high'>, ...)
    """

    def __init__(self, threshold: int = DEFAULT_ATLAS_THRESHOLD) -> None:
        if threshold < 1:
            raise ValueError("Atlas threshold must be at least 1")
        self.threshold = threshold

    def decide(
        self,
        image_count: int,
        force_atlas: bool = False,
        quality_level: QualityLevel | str = QualityLevel.BALANCED,
    ) -> Strategy:
        if force_atlas:
            return AtlasStrategy(
                detail_level=DetailLevel.HIGH,
                reason="User requested atlas processing",
                forced=True,
            )

        if image_count >= self.threshold:
            fast = QualityLevel(quality_level) == QualityLevel.FAST
            return AtlasStrategy(
                detail_level=DetailLevel.LOW if fast else DetailLevel.HIGH,
                reason=f"{image_count} images meet atlas threshold of {self.threshold}",
            )

        return IndividualStrategy(
            reason=f"{image_count} images below atlas threshold of {self.threshold}"
        )
