"""Usage Tracker: in-process accounting of vision model calls.

Records token consumption, latency and estimated cost for every model call
the executor makes, split by operation (``atlas`` or ``single``). Data lives
in memory for the lifetime of the tracker; nothing is persisted.

Example:
    >>> tracker = UsageTracker()
    >>> tracker.record(
    ...     model="gemini-2.0-flash",
    ...     operation="atlas",
    ...     prompt_tokens=1100,
    ...     completion_tokens=300,
    ...     latency_ms=1800.0,
    ... )
    >>> tracker.get_summary().total_tokens
    1400

Privacy:
- Only metadata is stored (tokens, timing, operation type)
- No prompt, response or image content is ever stored
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


# =============================================================================
# Pricing Constants
# =============================================================================


PRICING: dict[str, dict[str, float]] = {
    "gemini-2.0-flash": {
        "input": 0.0001,  # per 1K input tokens
        "output": 0.0004,  # per 1K output tokens
    },
    "gemini-1.5-pro": {
        "input": 0.00125,
        "output": 0.005,
    },
    "gemini-1.5-flash": {
        "input": 0.000075,
        "output": 0.0003,
    },
    "default": {
        "input": 0.001,
        "output": 0.003,
    },
}
"""Approximate pricing per 1K tokens.

Note: These are ESTIMATES only. Actual billing may differ.
"""


# =============================================================================
# Data Models
# =============================================================================


@dataclass
class UsageRecord:
    """A single model call.

    Attributes:
        id: Unique record identifier.
        timestamp: When the call finished.
        model: Model used.
        operation: "atlas" or "single".
        prompt_tokens: Input token count (0 if unknown or failed).
        completion_tokens: Output token count.
        total_tokens: Sum of prompt + completion tokens.
        latency_ms: Wall time including retries.
        success: Whether the call eventually succeeded.
        error_type: Exception class name if it failed.
        attempts: Attempts made, retries included.
        estimated_cost_usd: Estimated cost in USD.
    """

    id: str
    timestamp: datetime
    model: str
    operation: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    latency_ms: float
    success: bool
    error_type: str | None = None
    attempts: int = 1
    estimated_cost_usd: float = 0.0


@dataclass
class UsageSummary:
    """Aggregated usage statistics.

    Attributes:
        total_requests: Total number of recorded calls.
        successful_requests: Calls that succeeded.
        failed_requests: Calls that failed.
        total_prompt_tokens: Sum of input tokens.
        total_completion_tokens: Sum of output tokens.
        total_tokens: Combined token count.
        average_latency_ms: Mean latency across calls.
        total_estimated_cost_usd: Estimated total cost.
        by_operation: Call counts by operation.
    """

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    total_tokens: int = 0
    average_latency_ms: float = 0.0
    total_estimated_cost_usd: float = 0.0
    by_operation: dict[str, int] = field(default_factory=dict)

    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 1.0
        return self.successful_requests / self.total_requests


# =============================================================================
# Tracker
# =============================================================================


class UsageTracker:
    """In-memory model usage tracking.

    Thread-safe for concurrent access.
    """

    def __init__(self) -> None:
        self._records: list[UsageRecord] = []
        self._lock = threading.Lock()

    def record(
        self,
        model: str,
        operation: str,
        prompt_tokens: int,
        completion_tokens: int,
        latency_ms: float,
        success: bool = True,
        error_type: str | None = None,
        attempts: int = 1,
    ) -> UsageRecord:
        """Record a single model call and return the stored record."""
        estimated_cost = self.estimate_cost(model, prompt_tokens, completion_tokens)

        record = UsageRecord(
            id=str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc),
            model=model,
            operation=operation,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            latency_ms=latency_ms,
            success=success,
            error_type=error_type,
            attempts=attempts,
            estimated_cost_usd=estimated_cost,
        )

        with self._lock:
            self._records.append(record)

        logger.debug(
            f"Recorded: {operation} on {model}, "
            f"{record.total_tokens} tokens, ${estimated_cost:.5f}"
        )
        return record

    def record_failure(
        self,
        model: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0.0,
        attempts: int = 1,
    ) -> UsageRecord:
        """Record a failed call with zero tokens."""
        return self.record(
            model=model,
            operation=operation,
            prompt_tokens=0,
            completion_tokens=0,
            latency_ms=latency_ms,
            success=False,
            error_type=error_type,
            attempts=attempts,
        )

    def get_summary(self) -> UsageSummary:
        """Aggregate every record held by this tracker."""
        with self._lock:
            records = list(self._records)

        if not records:
            return UsageSummary()

        latencies = [r.latency_ms for r in records if r.latency_ms > 0]

        by_operation: dict[str, int] = {}
        for r in records:
            by_operation[r.operation] = by_operation.get(r.operation, 0) + 1

        successful = sum(1 for r in records if r.success)
        return UsageSummary(
            total_requests=len(records),
            successful_requests=successful,
            failed_requests=len(records) - successful,
            total_prompt_tokens=sum(r.prompt_tokens for r in records),
            total_completion_tokens=sum(r.completion_tokens for r in records),
            total_tokens=sum(r.total_tokens for r in records),
            average_latency_ms=sum(latencies) / len(latencies) if latencies else 0.0,
            total_estimated_cost_usd=sum(r.estimated_cost_usd for r in records),
            by_operation=by_operation,
        )

    def get_recent_records(self, count: int = 100) -> list[UsageRecord]:
        """Most recent records, newest first."""
        with self._lock:
            return list(reversed(self._records[-count:]))

    def estimate_cost(
        self,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> float:
        """Estimate cost in USD using the per-1K-token PRICING table."""
        pricing = PRICING.get(model, PRICING["default"])
        input_cost = (prompt_tokens / 1000) * pricing["input"]
        output_cost = (completion_tokens / 1000) * pricing["output"]
        return input_cost + output_cost
