"""Grid atlas generation.

Merges up to nine images into one 3x3 composite so a single vision call can
classify all of them. Each image is fetched, cover-fit into a square cell,
re-encoded at a fixed cell quality, and pasted at the offset of its grid
position. The canvas is then encoded at the requested format/quality and,
if it exceeds the size budget, recompressed exactly once.

Example:
    >>> builder = GridAtlasBuilder(fetcher=HttpImageFetcher())
    >>> artifact = await builder.build(images, AtlasBuildOptions(format="webp"))
    >>> artifact.position_map.to_dict()
    {'a': 'A1', 'b': 'A2', 'c': 'A3'}
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from io import BytesIO
from typing import Literal, Protocol

from PIL import Image, ImageOps, UnidentifiedImageError

from gridsight.config import AtlasSettings
from gridsight.core.grid import GRID_COLUMNS, GridPosition, PositionMap
from gridsight.core.models import ImageRef
from gridsight.errors import AtlasBuildError, FetchError
from gridsight.imaging.fetch import ImageSource

logger = logging.getLogger(__name__)

DEFAULT_CANVAS_SIZE = 1024
DEFAULT_CELL_QUALITY = 90
DEFAULT_BACKGROUND = (240, 240, 240)
RECOMPRESS_FACTOR = 0.7
MIN_RECOMPRESS_QUALITY = 20

AtlasFormat = Literal["jpeg", "webp"]

_PIL_FORMATS = {"jpeg": "JPEG", "webp": "WEBP"}


@dataclass(frozen=True)
class AtlasBuildOptions:
    """Encoding options for one atlas.

    Attributes:
        quality: Encode quality of the final atlas (1-100).
        format: "jpeg" or "webp".
        max_file_size: Budget in bytes; exceeding it triggers one recompression.
    """

    quality: int = 85
    format: AtlasFormat = "jpeg"
    max_file_size: int = 2 * 1024 * 1024

    def __post_init__(self) -> None:
        if not 1 <= self.quality <= 100:
            raise ValueError(f"Atlas quality must be within 1..100, got {self.quality}")
        if self.format not in _PIL_FORMATS:
            raise ValueError(f"Unsupported atlas format: {self.format}")


@dataclass(frozen=True)
class AtlasArtifact:
    """The encoded composite plus everything needed to interpret it."""

    encoded_bytes: bytes = field(repr=False)
    position_map: PositionMap
    original_count: int
    format: AtlasFormat
    quality: int
    encode_attempts: int = 1
    atlas_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def byte_size(self) -> int:
        return len(self.encoded_bytes)

    @property
    def recompressed(self) -> bool:
        return self.encode_attempts > 1

    @property
    def mime_type(self) -> str:
        return f"image/{self.format}"


class AtlasStore(Protocol):
    """Optional object storage for persisting atlases.

    Returns a retrievable URL for the stored bytes.
    """

    async def put(self, data: bytes, content_type: str, key: str) -> str: ...


class InMemoryAtlasStore:
    """AtlasStore that keeps atlases in a dict, for local runs and tests."""

    def __init__(self, base_url: str = "memory://atlases") -> None:
        self.base_url = base_url.rstrip("/")
        self.objects: dict[str, tuple[bytes, str]] = {}

    async def put(self, data: bytes, content_type: str, key: str) -> str:
        self.objects[key] = (data, content_type)
        return f"{self.base_url}/{key}"


class GridAtlasBuilder:
    """Builds 3x3 atlases from up to nine images.

    Attributes:
        canvas_size: Nominal edge of the atlas; the real edge is cell_size * 3.
        cell_size: Edge of one square cell.
        cell_quality: JPEG quality each cell is re-encoded at.
        background: Fill color for unused cells.
    """

    def __init__(
        self,
        fetcher: ImageSource,
        canvas_size: int = DEFAULT_CANVAS_SIZE,
        cell_quality: int = DEFAULT_CELL_QUALITY,
        background: tuple[int, int, int] = DEFAULT_BACKGROUND,
        max_concurrency: int = 9,
    ) -> None:
        self._fetcher = fetcher
        self.canvas_size = canvas_size
        self.cell_size = canvas_size // GRID_COLUMNS
        self.cell_quality = cell_quality
        self.background = background
        self._max_concurrency = max_concurrency

    @classmethod
    def from_settings(cls, settings: AtlasSettings, fetcher: ImageSource) -> "GridAtlasBuilder":
        return cls(
            fetcher=fetcher,
            canvas_size=settings.canvas_size,
            cell_quality=settings.cell_quality,
            background=settings.background,
            max_concurrency=settings.max_concurrency,
        )

    async def build(
        self,
        images: Sequence[ImageRef],
        options: AtlasBuildOptions | None = None,
    ) -> AtlasArtifact:
        """Build an atlas for 1..9 images.

        Args:
            images: Images in grid order (first -> A1).
            options: Encoding options.

        Returns:
            The encoded atlas with its position map.

        Raises:
            InputError: If there are 0 or more than 9 images (before any fetch).
            FetchError: If any image cannot be retrieved or decoded.
            AtlasBuildError: If compositing or encoding fails.
        """
        options = options or AtlasBuildOptions()
        position_map = PositionMap.from_image_ids([image.id for image in images])

        cells = await self._prepare_cells(images)

        try:
            encoded, quality, attempts = await asyncio.to_thread(
                self._compose_and_encode, cells, position_map, options
            )
        except (OSError, ValueError) as e:
            raise AtlasBuildError(f"Atlas encoding failed: {e}", original_error=e) from e

        artifact = AtlasArtifact(
            encoded_bytes=encoded,
            position_map=position_map,
            original_count=len(images),
            format=options.format,
            quality=quality,
            encode_attempts=attempts,
        )
        logger.info(
            f"Built atlas {artifact.atlas_id}: {artifact.original_count} images, "
            f"{artifact.byte_size} bytes, {artifact.format} q={quality}"
        )
        return artifact

    # =========================================================================
    # Cell preparation
    # =========================================================================

    async def _prepare_cells(self, images: Sequence[ImageRef]) -> dict[str, bytes]:
        """Fetch and resize every image concurrently; the first failure cancels the rest."""
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def prepare(image: ImageRef) -> tuple[str, bytes]:
            async with semaphore:
                data = await self._fetcher.fetch(image)
                cell = await asyncio.to_thread(self._process_cell, image.id, data)
                return image.id, cell

        tasks = [asyncio.create_task(prepare(image)) for image in images]
        try:
            prepared = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return dict(prepared)

    def _process_cell(self, image_id: str, data: bytes) -> bytes:
        """Decode, cover-fit (centered) and re-encode one image as a cell."""
        try:
            with Image.open(BytesIO(data)) as img:
                img.load()
                oriented = ImageOps.exif_transpose(img)
                if oriented.mode != "RGB":
                    oriented = oriented.convert("RGB")
                cell = ImageOps.fit(
                    oriented,
                    (self.cell_size, self.cell_size),
                    method=Image.Resampling.LANCZOS,
                    centering=(0.5, 0.5),
                )
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise FetchError(
                image_id, f"Failed to decode image {image_id}: {type(e).__name__}", original_error=e
            ) from e

        buffer = BytesIO()
        cell.save(buffer, format="JPEG", quality=self.cell_quality)
        return buffer.getvalue()

    # =========================================================================
    # Composition & encoding
    # =========================================================================

    def _compose(self, cells: dict[str, bytes], position_map: PositionMap) -> Image.Image:
        edge = self.cell_size * GRID_COLUMNS
        canvas = Image.new("RGB", (edge, edge), self.background)
        for image_id, position in position_map.items():
            with Image.open(BytesIO(cells[image_id])) as cell:
                canvas.paste(cell, cell_box(position, self.cell_size))
        return canvas

    def _encode(self, canvas: Image.Image, fmt: AtlasFormat, quality: int) -> bytes:
        buffer = BytesIO()
        if fmt == "jpeg":
            canvas.save(buffer, format="JPEG", quality=quality, optimize=True)
        else:
            canvas.save(buffer, format=_PIL_FORMATS[fmt], quality=quality)
        return buffer.getvalue()

    def _compose_and_encode(
        self,
        cells: dict[str, bytes],
        position_map: PositionMap,
        options: AtlasBuildOptions,
    ) -> tuple[bytes, int, int]:
        """Return (encoded bytes, final quality, number of encode passes)."""
        canvas = self._compose(cells, position_map)
        encoded = self._encode(canvas, options.format, options.quality)
        if len(encoded) <= options.max_file_size:
            return encoded, options.quality, 1

        reduced = max(MIN_RECOMPRESS_QUALITY, int(options.quality * RECOMPRESS_FACTOR))
        logger.warning(
            f"Atlas too large ({len(encoded)} bytes > {options.max_file_size}), "
            f"recompressing with quality {reduced}"
        )
        # Accepted even if still over budget.
        return self._encode(canvas, options.format, reduced), reduced, 2


def cell_box(position: GridPosition, cell_size: int) -> tuple[int, int, int, int]:
    """Pixel box (left, top, right, bottom) of a cell on the atlas canvas."""
    left, top = position.offset(cell_size)
    return left, top, left + cell_size, top + cell_size
