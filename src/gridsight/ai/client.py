"""Vision model endpoint.

This module is the only place that imports google-generativeai. Everything
else talks to the model through the ``VisionModel`` protocol, so tests (and
alternative backends) can substitute a fake.

The client:
- Sends one prompt plus one image attachment per call
- Converts the detail hint into a maximum image dimension before upload
- Maps SDK exceptions onto the ``ModelError`` family (by type, then message)
- Never retries; ``ModelQueryExecutor`` owns retry policy

Security Rules:
- NEVER log API keys
- NEVER log prompts, responses or image bytes (only sizes, counts, timings)

Example:
    >>> client = GeminiVisionClient(config.model)
    >>> response = await client.generate(prompt, ImagePayload(data, "image/webp"), DetailLevel.LOW)
    >>> response.text
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Protocol

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from google.generativeai.types import GenerationConfig, HarmBlockThreshold, HarmCategory
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, Field

from gridsight.config import APIKeyNotFoundError, ModelConfig, get_api_key
from gridsight.core.models import DetailLevel
from gridsight.errors import (
    ContentBlockedError,
    ModelAuthenticationError,
    ModelBadRequestError,
    ModelError,
    ModelQuotaExceededError,
    ModelRateLimitError,
    ModelServerError,
    ModelTimeoutError,
    ModelUnavailableError,
)
from gridsight.utils.logging import RedactingFilter

logger = logging.getLogger(__name__)
logger.addFilter(RedactingFilter())

_PIL_SAVE_FORMATS = {"image/jpeg": "JPEG", "image/webp": "WEBP", "image/png": "PNG"}


# =============================================================================
# Request / Response Types
# =============================================================================


@dataclass(frozen=True)
class ImagePayload:
    """One image attachment for a model call.

    Attributes:
        data: Encoded image bytes.
        mime_type: e.g. ``image/webp``.
        image_id: Caller id, for logging only.
    """

    data: bytes
    mime_type: str
    image_id: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)


class ModelResponse(BaseModel):
    """Standardized response from one vision call.

    Attributes:
        text: The generated content (expected to contain JSON).
        model: Name of the model that produced it.
        prompt_tokens: Tokens in the input (text + image), if reported.
        completion_tokens: Tokens in the output, if reported.
        total_tokens: Total tokens used, if reported.
        finish_reason: Why generation stopped (e.g. "STOP", "MAX_TOKENS").
        latency_ms: Wall time of the call.
        raw_response: Original SDK response (excluded from serialization).
    """

    text: str = Field(..., description="The generated content")
    model: str = Field(..., description="Model that generated this response")
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    finish_reason: str | None = None
    latency_ms: float | None = None
    raw_response: Any = Field(None, exclude=True)

    def is_truncated(self) -> bool:
        return self.finish_reason in {"MAX_TOKENS", "LENGTH", "RECITATION"}


class VisionModel(Protocol):
    """A vision-capable model endpoint: one prompt, one image, free-form text back."""

    model_name: str

    async def generate(
        self, prompt: str, image: ImagePayload, detail_level: DetailLevel
    ) -> ModelResponse: ...


# =============================================================================
# Gemini Client
# =============================================================================


class GeminiVisionClient:
    """VisionModel backed by Gemini via google-generativeai.

    No API calls are made at construction time. If no key is available the
    client is created anyway and every call raises ``ModelUnavailableError``.

    Attributes:
        model_name: Gemini model identifier.
    """

    def __init__(self, config: ModelConfig | None = None, api_key: str | None = None) -> None:
        self._config = config or ModelConfig()
        self.model_name = self._config.model_name
        self._model: Any = None
        self._is_configured = False

        if api_key is None:
            try:
                api_key = get_api_key().get_secret_value()
            except APIKeyNotFoundError:
                logger.warning("No API key configured; vision calls will fail")
                return

        genai.configure(api_key=api_key)
        self._is_configured = True
        logger.info(f"Vision client configured for model {self.model_name}")

    @property
    def is_available(self) -> bool:
        return self._is_configured

    def _get_model(self) -> Any:
        if self._model is None:
            self._model = genai.GenerativeModel(
                model_name=self.model_name,
                safety_settings=self._get_safety_settings(),
            )
        return self._model

    def _get_generation_config(self) -> GenerationConfig:
        return GenerationConfig(
            temperature=self._config.temperature,
            max_output_tokens=self._config.max_output_tokens,
        )

    def _get_safety_settings(self) -> dict:
        return {
            HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_ONLY_HIGH,
            HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_ONLY_HIGH,
            HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
            HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
        }

    def max_dimension_for(self, detail_level: DetailLevel) -> int:
        if detail_level == DetailLevel.LOW:
            return self._config.low_detail_max_dim
        return self._config.high_detail_max_dim

    async def generate(
        self, prompt: str, image: ImagePayload, detail_level: DetailLevel
    ) -> ModelResponse:
        """Send one prompt and one image; return the model's text.

        Raises:
            ModelUnavailableError: If no API key is configured.
            ModelError: Mapped SDK failure (see ``map_exception``).
        """
        if not self._is_configured:
            raise ModelUnavailableError("api_key_missing")

        payload = await asyncio.to_thread(
            downscale_image, image, self.max_dimension_for(detail_level)
        )
        contents = [prompt, {"mime_type": payload.mime_type, "data": payload.data}]

        start_time = time.perf_counter()
        try:
            raw_response = await self._get_model().generate_content_async(
                contents,
                generation_config=self._get_generation_config(),
                request_options={"timeout": self._config.timeout_seconds},
            )
        except ModelError:
            raise
        except Exception as e:
            mapped = self.map_exception(e)
            logger.debug(f"Vision call failed: {type(e).__name__} -> {type(mapped).__name__}")
            raise mapped from e
        latency_ms = (time.perf_counter() - start_time) * 1000

        response = self._to_model_response(raw_response, latency_ms)
        logger.info(
            f"Vision call ok: {payload.size} image bytes, detail={detail_level.value}, "
            f"{response.total_tokens or '?'} tokens in {latency_ms:.0f}ms"
        )
        return response

    def _to_model_response(self, raw_response: Any, latency_ms: float) -> ModelResponse:
        try:
            text = raw_response.text
        except ValueError:
            feedback = getattr(raw_response, "prompt_feedback", None)
            block_reason = getattr(feedback, "block_reason", None)
            if block_reason:
                raise ContentBlockedError(blocked_reason=str(block_reason))
            text = ""

        prompt_tokens = completion_tokens = total_tokens = None
        usage = getattr(raw_response, "usage_metadata", None)
        if usage:
            prompt_tokens = getattr(usage, "prompt_token_count", None)
            completion_tokens = getattr(usage, "candidates_token_count", None)
            total_tokens = getattr(usage, "total_token_count", None)

        finish_reason = None
        candidates = getattr(raw_response, "candidates", None)
        if candidates:
            reason = getattr(candidates[0], "finish_reason", None)
            finish_reason = getattr(reason, "name", None) or (str(reason) if reason else None)

        return ModelResponse(
            text=text,
            model=self.model_name,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            finish_reason=finish_reason,
            latency_ms=latency_ms,
            raw_response=raw_response,
        )

    def map_exception(self, error: Exception) -> ModelError:
        """Map an SDK or transport exception onto the ModelError family."""
        error_str = str(error).lower()

        if isinstance(error, google_exceptions.InvalidArgument):
            return ModelBadRequestError(str(error), original_error=error)
        if isinstance(error, google_exceptions.PermissionDenied):
            return ModelAuthenticationError(original_error=error)
        if isinstance(error, google_exceptions.Unauthenticated):
            return ModelAuthenticationError(original_error=error)
        if isinstance(error, google_exceptions.ResourceExhausted):
            if "quota" in error_str:
                return ModelQuotaExceededError(original_error=error)
            return ModelRateLimitError(original_error=error)
        if isinstance(error, google_exceptions.NotFound):
            return ModelBadRequestError(
                f"Model not found: {self.model_name}", original_error=error
            )
        if isinstance(error, (google_exceptions.DeadlineExceeded, asyncio.TimeoutError)):
            return ModelTimeoutError(self._config.timeout_seconds, original_error=error)
        if isinstance(error, google_exceptions.InternalServerError):
            return ModelServerError(status_code=500, original_error=error)
        if isinstance(error, google_exceptions.ServiceUnavailable):
            return ModelServerError(status_code=503, original_error=error)

        # Fallback pattern matching on the message
        if "blocked" in error_str or "safety" in error_str:
            return ContentBlockedError(original_error=error)
        if "401" in error_str or "403" in error_str or "unauthorized" in error_str:
            return ModelAuthenticationError(original_error=error)
        if "quota" in error_str or "billing" in error_str:
            return ModelQuotaExceededError(original_error=error)
        if "429" in error_str or re.search(r"rate.?limit", error_str):
            return ModelRateLimitError(original_error=error)
        if "timeout" in error_str or "deadline" in error_str:
            return ModelTimeoutError(self._config.timeout_seconds, original_error=error)
        status = re.search(r"\b(5\d\d)\b", error_str)
        if status:
            return ModelServerError(status_code=int(status.group(1)), original_error=error)
        if "400" in error_str or "invalid" in error_str:
            return ModelBadRequestError(str(error), original_error=error)

        return ModelError(f"Vision call failed: {type(error).__name__}", original_error=error)


def downscale_image(image: ImagePayload, max_dim: int) -> ImagePayload:
    """Shrink an image so its longest side is at most ``max_dim``.

    Images already within bounds, or in a format we cannot re-encode, are
    returned unchanged.
    """
    save_format = _PIL_SAVE_FORMATS.get(image.mime_type)
    if save_format is None:
        return image

    try:
        with Image.open(BytesIO(image.data)) as img:
            if max(img.size) <= max_dim:
                return image
            img.thumbnail((max_dim, max_dim), Image.Resampling.LANCZOS)
            buffer = BytesIO()
            if save_format == "PNG":
                img.save(buffer, format=save_format)
            else:
                img.convert("RGB").save(buffer, format=save_format, quality=90)
    except (UnidentifiedImageError, OSError) as e:
        logger.debug(f"Could not downscale image: {type(e).__name__}")
        return image

    return ImagePayload(buffer.getvalue(), image.mime_type, image.image_id)
