"""GridSight: atlas-based batching for vision-model image classification.

Up to nine images are merged into one 3x3 composite so a single vision call
can classify all of them; answers are mapped back to image ids by grid
position.
"""

from gridsight.core.models import ENGINE_VERSION
from gridsight.core.orchestrator import AtlasOrchestrator
from gridsight.errors import FetchError, GridSightError, ModelError, ValidationError

__version__ = ENGINE_VERSION

__all__ = [
    "AtlasOrchestrator",
    "FetchError",
    "GridSightError",
    "ModelError",
    "ValidationError",
    "__version__",
]
