"""Model query execution with bounded retries.

``ModelQueryExecutor`` sends a prompt plus one image to a ``VisionModel``
through the ``with_retry`` combinator. Permanent rejections (bad request,
authentication, quota, blocked content) propagate on the first attempt;
everything else is retried until the attempt ceiling, after which
``ModelRetryExhaustedError`` carries the attempt count and last cause.
"""

from __future__ import annotations

import asyncio
import logging
import time

from gridsight.ai.client import ImagePayload, ModelResponse, VisionModel
from gridsight.ai.retry import RetryExhausted, RetryPolicy, Sleep, with_retry
from gridsight.ai.usage_tracker import UsageTracker
from gridsight.config import ModelConfig
from gridsight.core.models import DetailLevel
from gridsight.errors import ModelError, ModelRetryExhaustedError

logger = logging.getLogger(__name__)


def is_retryable_model_error(error: Exception) -> bool:
    """Anything but a permanent ModelError is worth another attempt."""
    if isinstance(error, ModelError):
        return not error.permanent
    return True


class ModelQueryExecutor:
    """Invokes the vision model with retry/backoff.

    Holds no state across calls beyond its collaborators and policy.

    Example:
        >>> executor = ModelQueryExecutor(client, RetryPolicy(max_attempts=3, base_delay=1.0))
        >>> response = await executor.invoke(prompt, payload, DetailLevel.HIGH)
    """

    def __init__(
        self,
        model: VisionModel,
        policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        usage_tracker: UsageTracker | None = None,
    ) -> None:
        self.model = model
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._usage_tracker = usage_tracker

    @classmethod
    def from_config(
        cls,
        model: VisionModel,
        config: ModelConfig,
        sleep: Sleep = asyncio.sleep,
        usage_tracker: UsageTracker | None = None,
    ) -> "ModelQueryExecutor":
        policy = RetryPolicy(max_attempts=config.max_retries, base_delay=config.retry_base_delay)
        return cls(model, policy=policy, sleep=sleep, usage_tracker=usage_tracker)

    @property
    def model_name(self) -> str:
        return self.model.model_name

    async def invoke(
        self,
        prompt: str,
        image: ImagePayload,
        detail_level: DetailLevel,
        operation: str = "atlas",
    ) -> ModelResponse:
        """Call the model, retrying transient failures.

        Args:
            prompt: Full text prompt.
            image: The single image attachment (atlas or original image).
            detail_level: Detail hint forwarded to the model.
            operation: "atlas" or "single", for usage accounting.

        Returns:
            The first successful ModelResponse.

        Raises:
            ModelError: A permanent rejection, unchanged (``attempts`` set).
            ModelRetryExhaustedError: Every attempt failed transiently.
        """
        attempts = 0

        async def attempt() -> ModelResponse:
            nonlocal attempts
            attempts += 1
            return await self.model.generate(prompt, image, detail_level)

        start = time.perf_counter()
        try:
            response = await with_retry(
                attempt,
                self.policy,
                is_retryable_model_error,
                sleep=self._sleep,
                operation_name=f"{operation} model call",
            )
        except RetryExhausted as e:
            self._record_failure(operation, e.last_error, start, attempts)
            raise ModelRetryExhaustedError(e.attempts, e.last_error) from e.last_error
        except ModelError as e:
            e.attempts = attempts
            self._record_failure(operation, e, start, attempts)
            raise

        if self._usage_tracker is not None:
            self._usage_tracker.record(
                model=response.model,
                operation=operation,
                prompt_tokens=response.prompt_tokens or 0,
                completion_tokens=response.completion_tokens or 0,
                latency_ms=(time.perf_counter() - start) * 1000,
                attempts=attempts,
            )
        return response

    def _record_failure(
        self, operation: str, error: Exception, start: float, attempts: int
    ) -> None:
        if self._usage_tracker is None:
            return
        self._usage_tracker.record_failure(
            model=self.model_name,
            operation=operation,
            error_type=type(error).__name__,
            latency_ms=(time.perf_counter() - start) * 1000,
            attempts=attempts,
        )
