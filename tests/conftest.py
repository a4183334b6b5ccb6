"""Central Pytest Fixtures for GridSight.

Fixtures included:
- Image data: make_image_bytes, png_bytes, jpeg_bytes, inline_image
- Fakes: FakeVisionModel, FakeImageSource, ManualClock, RecordingSleep
- Configuration: app_config (defaults, no file, no environment)
"""

from __future__ import annotations

import base64
import json
from collections.abc import Sequence
from io import BytesIO
from typing import Any

import pytest
from PIL import Image

from gridsight.ai.client import ImagePayload, ModelResponse
from gridsight.config import AppConfig, reset_config
from gridsight.core.models import DetailLevel, ImageRef
from gridsight.errors import FetchError

# =============================================================================
# Helper Functions
# =============================================================================


def make_image_bytes(
    width: int = 64,
    height: int = 64,
    color: str | tuple[int, int, int] = "red",
    fmt: str = "PNG",
) -> bytes:
    """Encode a solid-color image.

    Args:
        width: Width in pixels.
        height: Height in pixels.
        color: Fill color.
        fmt: PIL format name ("PNG", "JPEG", "WEBP").
    """
    img = Image.new("RGB", (width, height), color=color)
    buffer = BytesIO()
    img.save(buffer, format=fmt)
    return buffer.getvalue()


def inline_image(image_id: str, color: str = "red", **kwargs: Any) -> ImageRef:
    """ImageRef carrying base64 PNG data."""
    data = base64.b64encode(make_image_bytes(color=color)).decode("ascii")
    return ImageRef(id=image_id, inline_data=data, **kwargs)


def atlas_json(entries: Sequence[tuple[str, str]], summary: str = "Sorted") -> str:
    """A well-formed atlas response for (position, classification) pairs."""
    return json.dumps(
        {
            "results": [
                {"position": pos, "classification": cls, "confidence": 0.9}
                for pos, cls in entries
            ],
            "summary": summary,
        }
    )


# =============================================================================
# Fakes
# =============================================================================


class FakeVisionModel:
    """Scripted VisionModel.

    Each call consumes the next scripted item: a string becomes the response
    text, an exception is raised. The last item repeats once the script is
    exhausted.
    """

    def __init__(
        self,
        script: Sequence[str | Exception] = ('{"results": [], "summary": "ok"}',),
        model_name: str = "fake-vision",
        total_tokens: int | None = 1000,
    ) -> None:
        self.model_name = model_name
        self.script = list(script)
        self.total_tokens = total_tokens
        self.calls: list[tuple[str, ImagePayload, DetailLevel]] = []

    async def generate(
        self, prompt: str, image: ImagePayload, detail_level: DetailLevel
    ) -> ModelResponse:
        index = min(len(self.calls), len(self.script) - 1)
        self.calls.append((prompt, image, detail_level))
        item = self.script[index]
        if isinstance(item, Exception):
            raise item
        return ModelResponse(
            text=item,
            model=self.model_name,
            prompt_tokens=self.total_tokens,
            completion_tokens=0 if self.total_tokens is not None else None,
            total_tokens=self.total_tokens,
        )


class FakeImageSource:
    """ImageSource that serves generated images, with optional failures.

    Attributes:
        fail_ids: Image ids whose fetch raises FetchError.
        fetched: Ids in the order fetch was called.
    """

    def __init__(
        self,
        fail_ids: Sequence[str] = (),
        overrides: dict[str, bytes] | None = None,
    ) -> None:
        self.fail_ids = set(fail_ids)
        self.overrides = overrides or {}
        self.fetched: list[str] = []
        self.closed = False

    async def fetch(self, image: ImageRef) -> bytes:
        self.fetched.append(image.id)
        if image.id in self.fail_ids:
            raise FetchError(image.id, f"Failed to fetch image {image.id}: HTTP 404")
        if image.id in self.overrides:
            return self.overrides[image.id]
        if image.inline_data:
            return image.decode_inline()
        return make_image_bytes()

    async def aclose(self) -> None:
        self.closed = True


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingClock(ManualClock):
    """ManualClock that raises while ``failing`` is set."""

    def __init__(self, start: float = 1000.0) -> None:
        super().__init__(start)
        self.failing = False

    def __call__(self) -> float:
        if self.failing:
            raise RuntimeError("clock unavailable")
        return super().__call__()


class RecordingSleep:
    """Async sleep that returns immediately and records the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def png_bytes() -> bytes:
    return make_image_bytes(fmt="PNG")


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_image_bytes(fmt="JPEG")


@pytest.fixture
def fake_source() -> FakeImageSource:
    return FakeImageSource()


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def app_config(monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    """Default configuration, isolated from the environment."""
    for var in ("GEMINI_API_KEY", "GOOGLE_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    reset_config()
    return AppConfig()
