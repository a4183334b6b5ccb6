"""Retry with exponential backoff for async calls.

One combinator, parameterized by a policy (attempt ceiling, base delay) and
an ``is_retryable`` predicate. The sleep function is injectable so backoff
timing can be asserted without waiting.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt ceiling and backoff base for one retried operation.

    Attributes:
        max_attempts: Total attempts, the first one included.
        base_delay: Seconds; the wait before attempt ``n > 1`` is
            ``base_delay * 2 ** (n - 1)``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before ``attempt`` (1-based). Zero for the first."""
        if attempt <= 1:
            return 0.0
        return self.base_delay * (2 ** (attempt - 1))


class RetryExhausted(Exception):
    """Every attempt failed with a retryable error.

    Attributes:
        attempts: Number of attempts made.
        last_error: Exception raised by the final attempt.
    """

    def __init__(self, attempts: int, last_error: Exception) -> None:
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


async def with_retry(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    is_retryable: Callable[[Exception], bool],
    sleep: Sleep = asyncio.sleep,
    operation_name: str = "call",
) -> T:
    """Run ``func`` until it succeeds, fails permanently, or attempts run out.

    Args:
        func: Zero-argument coroutine factory, called once per attempt.
        policy: Attempt ceiling and backoff base.
        is_retryable: Returns False for errors that must propagate at once.
        sleep: Awaitable sleep, ``asyncio.sleep`` unless injected.
        operation_name: Used in log messages only.

    Returns:
        The first successful result.

    Raises:
        Exception: A non-retryable error, unchanged, as soon as it occurs.
        RetryExhausted: When the final attempt fails with a retryable error.
    """
    attempt = 1
    while True:
        try:
            return await func()
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt >= policy.max_attempts:
                logger.error(
                    f"{operation_name} failed after {attempt} attempts: {type(e).__name__}"
                )
                raise RetryExhausted(attempt, e) from e
            last_error = e

        attempt += 1
        delay = policy.delay_before(attempt)
        logger.warning(
            f"Retry {attempt}/{policy.max_attempts} for {operation_name} after "
            f"{delay:.1f}s: {type(last_error).__name__}"
        )
        await sleep(delay)
