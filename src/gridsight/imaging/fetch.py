"""Image source: resolves an ImageRef to raw image bytes.

Inline data is base64-decoded; URLs are fetched with httpx. Any failure is
raised as ``FetchError`` naming the image id.
"""

from __future__ import annotations

import logging
from io import BytesIO
from typing import Protocol

import httpx
from PIL import Image, UnidentifiedImageError

from gridsight.core.models import ImageRef
from gridsight.errors import FetchError

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 30.0
DEFAULT_MAX_IMAGE_BYTES = 20 * 1024 * 1024


class ImageSource(Protocol):
    """Anything that can turn an ImageRef into raw, decodable bytes."""

    async def fetch(self, image: ImageRef) -> bytes: ...

    async def aclose(self) -> None: ...


class HttpImageFetcher:
    """Default image source backed by an ``httpx.AsyncClient``.

    The client may be injected (tests pass one built on
    ``httpx.MockTransport``); otherwise one is created lazily and closed by
    ``aclose()``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        max_bytes: int = DEFAULT_MAX_IMAGE_BYTES,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._max_bytes = max_bytes

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self._client

    async def fetch(self, image: ImageRef) -> bytes:
        if image.inline_data:
            try:
                data = image.decode_inline()
            except ValueError as e:
                raise FetchError(image.id, str(e), original_error=e) from e
        elif image.url:
            data = await self._fetch_url(image.id, image.url)
        else:
            raise FetchError(image.id, f"Image {image.id} has neither url nor inline data")

        if not data:
            raise FetchError(image.id, f"Image {image.id} is empty")
        if len(data) > self._max_bytes:
            raise FetchError(
                image.id, f"Image {image.id} exceeds {self._max_bytes} bytes ({len(data)})"
            )
        return data

    async def _fetch_url(self, image_id: str, url: str) -> bytes:
        try:
            response = await self._get_client().get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise FetchError(
                image_id,
                f"Failed to fetch image {image_id}: HTTP {e.response.status_code}",
                original_error=e,
            ) from e
        except httpx.HTTPError as e:
            raise FetchError(
                image_id,
                f"Failed to fetch image {image_id}: {type(e).__name__}",
                original_error=e,
            ) from e

        logger.debug(f"Fetched image {image_id} ({len(response.content)} bytes)")
        return response.content

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def detect_mime_type(image_id: str, data: bytes) -> str:
    """Identify an image's MIME type from its header.

    Raises:
        FetchError: If the bytes are not a recognizable image.
    """
    try:
        with Image.open(BytesIO(data)) as img:
            image_format = img.format
    except (UnidentifiedImageError, OSError) as e:
        raise FetchError(
            image_id, f"Image {image_id} is not a decodable image", original_error=e
        ) from e

    mime_type = Image.MIME.get(image_format or "")
    if mime_type is None:
        raise FetchError(image_id, f"Image {image_id} has unsupported format {image_format}")
    return mime_type
