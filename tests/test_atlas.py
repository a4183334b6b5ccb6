"""Tests for grid atlas generation."""

from __future__ import annotations

import asyncio
from io import BytesIO

import pytest
from PIL import Image

from conftest import FakeImageSource, inline_image, make_image_bytes
from gridsight.config import AtlasSettings
from gridsight.core.grid import GridPosition
from gridsight.core.models import ImageRef
from gridsight.errors import FetchError, InputError
from gridsight.imaging.atlas import (
    AtlasBuildOptions,
    GridAtlasBuilder,
    InMemoryAtlasStore,
    cell_box,
)


def build(builder: GridAtlasBuilder, images: list[ImageRef], **options):
    return asyncio.run(builder.build(images, AtlasBuildOptions(**options)))


def decode(data: bytes) -> Image.Image:
    img = Image.open(BytesIO(data))
    img.load()
    return img


def close_to(actual: tuple[int, ...], expected: tuple[int, ...], tolerance: int = 12) -> bool:
    return all(abs(a - e) <= tolerance for a, e in zip(actual, expected))


@pytest.fixture
def builder(fake_source: FakeImageSource) -> GridAtlasBuilder:
    return GridAtlasBuilder(fetcher=fake_source)


class TestAtlasBuildOptions:
    def test_defaults(self) -> None:
        options = AtlasBuildOptions()
        assert (options.quality, options.format) == (85, "jpeg")

    @pytest.mark.parametrize("quality", [0, 101])
    def test_rejects_quality_out_of_range(self, quality: int) -> None:
        with pytest.raises(ValueError):
            AtlasBuildOptions(quality=quality)

    def test_rejects_unknown_format(self) -> None:
        with pytest.raises(ValueError):
            AtlasBuildOptions(format="gif")  # type: ignore[arg-type]


class TestGridAtlasBuilder:
    def test_three_images(self, builder: GridAtlasBuilder) -> None:
        images = [inline_image("a"), inline_image("b"), inline_image("c")]
        artifact = build(builder, images)

        assert artifact.position_map.to_dict() == {"a": "A1", "b": "A2", "c": "A3"}
        assert artifact.original_count == 3
        assert artifact.format == "jpeg"
        assert artifact.mime_type == "image/jpeg"
        assert artifact.byte_size == len(artifact.encoded_bytes) > 0
        assert artifact.recompressed is False

    def test_canvas_is_three_cells_wide(self, builder: GridAtlasBuilder) -> None:
        artifact = build(builder, [inline_image("a")])
        img = decode(artifact.encoded_bytes)

        assert builder.cell_size == 341
        assert img.size == (1023, 1023)
        assert img.format == "JPEG"

    def test_webp_output(self, builder: GridAtlasBuilder) -> None:
        artifact = build(builder, [inline_image("a")], format="webp")

        assert artifact.mime_type == "image/webp"
        assert decode(artifact.encoded_bytes).format == "WEBP"

    def test_cells_land_at_their_positions(self, builder: GridAtlasBuilder) -> None:
        images = [inline_image("r", color="red"), inline_image("b", color="blue")]
        img = decode(build(builder, images, quality=95).encoded_bytes).convert("RGB")
        cell = builder.cell_size

        assert close_to(img.getpixel((cell // 2, cell // 2)), (255, 0, 0))
        assert close_to(img.getpixel((cell + cell // 2, cell // 2)), (0, 0, 255))

    def test_empty_cells_use_background(self, fake_source: FakeImageSource) -> None:
        builder = GridAtlasBuilder(fetcher=fake_source, background=(10, 200, 30))
        img = decode(build(builder, [inline_image("a")], quality=95).encoded_bytes)
        center_of_c3 = (builder.cell_size * 2 + builder.cell_size // 2,) * 2

        assert close_to(img.convert("RGB").getpixel(center_of_c3), (10, 200, 30))

    def test_non_square_image_is_cover_fit(self, fake_source: FakeImageSource) -> None:
        wide = make_image_bytes(width=400, height=100, color="green")
        fake_source.overrides["wide"] = wide
        builder = GridAtlasBuilder(fetcher=fake_source, background=(255, 255, 255))
        image = ImageRef(id="wide", url="https://example.com/wide.png")

        img = decode(build(builder, [image], quality=95).encoded_bytes).convert("RGB")

        # Cover-fit fills the whole cell, so even the cell's corner is green.
        assert close_to(img.getpixel((2, 2)), (0, 128, 0), tolerance=20)
        far_corner = (builder.cell_size - 3, builder.cell_size - 3)
        assert close_to(img.getpixel(far_corner), (0, 128, 0), tolerance=20)

    def test_nine_images_accepted(self, builder: GridAtlasBuilder) -> None:
        images = [inline_image(f"img{n}") for n in range(9)]
        artifact = build(builder, images)

        assert len(artifact.position_map) == 9
        assert artifact.position_map["img8"] is GridPosition.C3

    def test_ten_images_rejected_before_fetch(
        self, builder: GridAtlasBuilder, fake_source: FakeImageSource
    ) -> None:
        images = [inline_image(f"img{n}") for n in range(10)]

        with pytest.raises(InputError):
            build(builder, images)
        assert fake_source.fetched == []

    def test_zero_images_rejected(self, builder: GridAtlasBuilder) -> None:
        with pytest.raises(InputError):
            build(builder, [])

    def test_round_trip_id_position_id(self, builder: GridAtlasBuilder) -> None:
        images = [inline_image(f"id-{n}") for n in range(7)]
        pm = build(builder, images).position_map

        for image in images:
            assert pm.image_at(pm[image.id]) == image.id

    def test_fetch_failure_fails_whole_atlas(self) -> None:
        source = FakeImageSource(fail_ids=["b"])
        builder = GridAtlasBuilder(fetcher=source)
        images = [inline_image("a"), inline_image("b"), inline_image("c")]

        with pytest.raises(FetchError) as exc_info:
            build(builder, images)
        assert exc_info.value.image_id == "b"

    def test_undecodable_image_raises_fetch_error(self) -> None:
        source = FakeImageSource(overrides={"junk": b"not an image at all"})
        builder = GridAtlasBuilder(fetcher=source)

        with pytest.raises(FetchError) as exc_info:
            build(builder, [ImageRef(id="junk", url="https://example.com/junk")])
        assert exc_info.value.image_id == "junk"

    def test_recompresses_exactly_once(self, builder: GridAtlasBuilder) -> None:
        images = [inline_image("a"), inline_image("b")]
        artifact = build(builder, images, quality=85, max_file_size=10)

        assert artifact.encode_attempts == 2
        assert artifact.recompressed is True
        assert artifact.quality == 59
        # Accepted even though still over budget.
        assert artifact.byte_size > 10

    def test_recompress_quality_floor(self, builder: GridAtlasBuilder) -> None:
        artifact = build(builder, [inline_image("a")], quality=21, max_file_size=10)
        assert artifact.quality == 20

    def test_concurrency_is_bounded(self) -> None:
        active = 0
        peak = 0

        class SlowSource(FakeImageSource):
            async def fetch(self, image: ImageRef) -> bytes:
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1
                return await super().fetch(image)

        builder = GridAtlasBuilder(fetcher=SlowSource(), max_concurrency=2)
        build(builder, [inline_image(f"i{n}") for n in range(6)])

        assert peak == 2

    def test_from_settings(self, fake_source: FakeImageSource) -> None:
        settings = AtlasSettings(canvas_size=300, cell_quality=70, background=(0, 0, 0))
        builder = GridAtlasBuilder.from_settings(settings, fake_source)

        assert builder.cell_size == 100
        assert builder.cell_quality == 70
        assert builder.background == (0, 0, 0)


class TestHelpers:
    def test_cell_box(self) -> None:
        assert cell_box(GridPosition.B3, 100) == (200, 100, 300, 200)

    def test_in_memory_store(self) -> None:
        store = InMemoryAtlasStore()
        url = asyncio.run(store.put(b"abc", "image/jpeg", "atlases/x.jpeg"))

        assert url == "memory://atlases/atlases/x.jpeg"
        assert store.objects["atlases/x.jpeg"] == (b"abc", "image/jpeg")
