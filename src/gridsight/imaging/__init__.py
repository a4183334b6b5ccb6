"""Image retrieval and atlas composition."""

from gridsight.imaging.atlas import (
    AtlasArtifact,
    AtlasBuildOptions,
    AtlasStore,
    GridAtlasBuilder,
    InMemoryAtlasStore,
)
from gridsight.imaging.fetch import HttpImageFetcher, ImageSource

__all__ = [
    "AtlasArtifact",
    "AtlasBuildOptions",
    "AtlasStore",
    "GridAtlasBuilder",
    "HttpImageFetcher",
    "ImageSource",
    "InMemoryAtlasStore",
]
