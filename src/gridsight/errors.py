"""Exception hierarchy for GridSight.

Every error raised by the engine inherits from GridSightError so callers can
catch the whole family at one boundary, and distinguish kinds by type rather
than by matching message strings.

Kinds:
- ValidationError: malformed request, raised before any I/O.
- FetchError: an image could not be retrieved or decoded.
- AtlasBuildError: the composite could not be produced for another reason.
- ModelError (and subclasses): the vision endpoint failed or rejected us.
- ParseError, CacheError: internal only. The parser and cache absorb them.

Example:
    >>> try:
    ...     response = await orchestrator.process(request, user_id="u1")
    ... except ValidationError as e:
    ...     return 400, e.message
    ... except ModelError as e:
    ...     log.error(f"{e.stage} failed after {e.attempts} attempts")
"""

from __future__ import annotations

from typing import Any


class GridSightError(Exception):
    """Base exception for all GridSight errors.

    Attributes:
        message: Human-readable error description (safe to log).
        details: Additional error context.
        request_id: Orchestrator request id, filled in at the orchestrator.
        stage: Processing stage that failed, filled in at the orchestrator.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.request_id: str | None = None
        self.stage: str | None = None

    def __str__(self) -> str:
        return self.message

    def with_context(self, request_id: str, stage: str) -> "GridSightError":
        """Attach orchestrator context and return self for re-raising."""
        self.request_id = request_id
        self.stage = stage
        self.details.update({"request_id": request_id, "stage": stage})
        return self


# =============================================================================
# Request / Input Errors
# =============================================================================


class ValidationError(GridSightError):
    """The request is malformed and will never succeed as-is.

    Attributes:
        field: Which request field failed validation, if known.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message, details={"field": field} if field else None)
        self.field = field


class InputError(ValidationError):
    """Invalid input at the atlas-builder boundary (0 or more than 9 images)."""


class FetchError(GridSightError):
    """An image could not be retrieved or decoded.

    Attributes:
        image_id: Identifier of the offending image.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        image_id: str,
        message: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        msg = message or f"Failed to fetch image {image_id}"
        super().__init__(msg, details={"image_id": image_id})
        self.image_id = image_id
        self.original_error = original_error


class AtlasBuildError(GridSightError):
    """The atlas could not be composed or encoded."""

    def __init__(self, message: str, original_error: Exception | None = None) -> None:
        super().__init__(message)
        self.original_error = original_error


class ParseError(GridSightError):
    """Structured model output could not be parsed. Never surfaced to callers."""


class CacheError(GridSightError):
    """Cache read or write failed. Absorbed by the cache and treated as a miss."""

    def __init__(self, message: str, original_error: Exception | None = None) -> None:
        super().__init__(message)
        self.original_error = original_error


# =============================================================================
# Model Errors
# =============================================================================


class ModelError(GridSightError):
    """The vision model call failed.

    Attributes:
        retriable: Whether the same request could succeed on retry.
        attempts: How many attempts were made before giving up.
        original_error: The underlying SDK or transport exception.
    """

    def __init__(
        self,
        message: str,
        retriable: bool = True,
        attempts: int = 1,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.retriable = retriable
        self.attempts = attempts
        self.original_error = original_error

    @property
    def permanent(self) -> bool:
        """True for client-side rejections that must not be retried."""
        return not self.retriable


class ModelUnavailableError(ModelError):
    """The model cannot be reached or is not configured (no SDK key, offline)."""

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or f"Vision model unavailable: {reason}", retriable=False)


class ModelAuthenticationError(ModelError):
    """API key is invalid or expired."""

    def __init__(
        self,
        message: str = "Model authentication failed. Please check your API key.",
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=False, original_error=original_error)


class ModelBadRequestError(ModelError):
    """The endpoint rejected the request as malformed. Never retried."""

    def __init__(
        self,
        message: str = "Invalid request to vision model.",
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=False, original_error=original_error)


class ModelQuotaExceededError(ModelError):
    """Quota or billing limit reached."""

    def __init__(
        self,
        message: str = "Model quota exceeded. Check your billing and usage limits.",
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=False, original_error=original_error)


class ContentBlockedError(ModelError):
    """The prompt or image was blocked by safety filters."""

    def __init__(
        self,
        message: str = "Content blocked by safety filters.",
        blocked_reason: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=False, original_error=original_error)
        self.blocked_reason = blocked_reason


class ModelRateLimitError(ModelError):
    """Rate limit exceeded.

    Attributes:
        retry_after_seconds: Suggested wait before retrying, if the API said.
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded.",
        retry_after_seconds: float | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=True, original_error=original_error)
        self.retry_after_seconds = retry_after_seconds


class ModelServerError(ModelError):
    """Server-side (5xx) failure."""

    def __init__(
        self,
        message: str = "Vision model server error.",
        status_code: int | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, retriable=True, original_error=original_error)
        self.status_code = status_code


class ModelTimeoutError(ModelError):
    """The request timed out."""

    def __init__(
        self,
        timeout_seconds: float | None = None,
        message: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        msg = message or (
            f"Model request timed out after {timeout_seconds} seconds"
            if timeout_seconds
            else "Model request timed out"
        )
        super().__init__(msg, retriable=True, original_error=original_error)
        self.timeout_seconds = timeout_seconds


class ModelRetryExhaustedError(ModelError):
    """All attempts failed with retriable errors.

    The last underlying failure is kept in ``original_error``.
    """

    def __init__(self, attempts: int, last_error: Exception) -> None:
        super().__init__(
            f"Vision model call failed after {attempts} attempts: {last_error}",
            retriable=False,
            attempts=attempts,
            original_error=last_error,
        )
