"""Core engine: grid positions, data models, strategy, cache and orchestration.

The orchestrator is imported from ``gridsight.core.orchestrator`` (or the
package root) to keep this package free of AI-layer imports.
"""

from gridsight.core.grid import GridPosition, PositionMap
from gridsight.core.models import (
    AnalysisOptions,
    AnalysisRequest,
    AnalysisResponse,
    AnalysisType,
    DetailLevel,
    ImageRef,
    PerImageResult,
    QualityLevel,
)
from gridsight.core.strategy import AtlasStrategy, IndividualStrategy, StrategySelector

__all__ = [
    "AnalysisOptions",
    "AnalysisRequest",
    "AnalysisResponse",
    "AnalysisType",
    "AtlasStrategy",
    "DetailLevel",
    "GridPosition",
    "ImageRef",
    "IndividualStrategy",
    "PerImageResult",
    "PositionMap",
    "QualityLevel",
    "StrategySelector",
]
