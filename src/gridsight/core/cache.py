"""In-process response cache with TTL expiry.

Entries are keyed by a SHA-256 fingerprint of the normalized request
(analysis type, query, sorted image identifiers, options) and store an
expiry timestamp next to the value. Expiry is checked lazily on read; an
optional background sweep removes expired entries that are never read
again. There is no LRU behavior: an entry lives exactly until its TTL.

The cache is a pure optimization. ``get`` and ``put`` never raise; any
failure is logged and treated as a miss.

Example:
    >>> cache = ResponseCache(default_ttl_seconds=3600)
    >>> key = build_cache_key(request)
    >>> cache.put(key, response)
    >>> cache.get(key) is not None
    True
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from gridsight.config import CacheSettings
from gridsight.core.models import AnalysisRequest, AnalysisResponse
from gridsight.errors import CacheError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def build_cache_key(request: AnalysisRequest) -> str:
    """Deterministic key for a request.

    Image order does not matter; the user id is not part of the key.

    Returns:
        Full SHA-256 hex digest (64 characters).
    """
    images = sorted(f"{image.id}|{image.source_fingerprint()}" for image in request.images)
    normalized = {
        "analysis_type": request.analysis_type.value,
        "query": request.query.strip(),
        "images": images,
        "options": request.options.model_dump(mode="json"),
    }
    json_str = json.dumps(normalized, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(json_str.encode("utf-8")).hexdigest()


@dataclass
class _Entry:
    expires_at: float
    response: AnalysisResponse


class ResponseCache:
    """TTL cache of AnalysisResponse objects, owned by one orchestrator.

    Attributes:
        default_ttl_seconds: TTL used when ``put`` is given none.
        enabled: When False every lookup misses and nothing is stored.
    """

    def __init__(
        self,
        default_ttl_seconds: float = 3600,
        clock: Clock = time.monotonic,
        enabled: bool = True,
    ) -> None:
        self.default_ttl_seconds = default_ttl_seconds
        self.enabled = enabled
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._sweeper: asyncio.Task[None] | None = None
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @classmethod
    def from_settings(
        cls, settings: CacheSettings, clock: Clock = time.monotonic
    ) -> "ResponseCache":
        return cls(
            default_ttl_seconds=settings.default_ttl_seconds,
            clock=clock,
            enabled=settings.enabled,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> AnalysisResponse | None:
        """Return a copy of the cached response, or None on miss/expiry.

        Note:
            This method NEVER raises exceptions. A CacheError counts as a miss.
        """
        if not self.enabled:
            return None

        try:
            return self._read(key)
        except CacheError as e:
            self._misses += 1
            logger.warning(f"{e}; treating as a miss")
            return None

    def put(self, key: str, response: AnalysisResponse, ttl_seconds: float | None = None) -> bool:
        """Store a copy of ``response`` until now + TTL.

        Note:
            This method NEVER raises exceptions. A CacheError results in False.
        """
        if not self.enabled:
            return False

        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        try:
            self._write(key, response, ttl)
        except CacheError as e:
            logger.warning(str(e))
            return False

        logger.debug(f"Cached response {key[:16]}... for {ttl}s")
        return True

    def _read(self, key: str) -> AnalysisResponse | None:
        try:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if self._clock() >= entry.expires_at:
                del self._entries[key]
                self._evictions += 1
                self._misses += 1
                logger.debug(f"Cache expired for key {key[:16]}...")
                return None

            response = entry.response.model_copy(deep=True)
        except Exception as e:
            raise CacheError(f"Cache lookup failed: {type(e).__name__}", original_error=e) from e

        self._hits += 1
        logger.debug(f"Cache hit for key {key[:16]}...")
        return response

    def _write(self, key: str, response: AnalysisResponse, ttl: float) -> None:
        try:
            self._entries[key] = _Entry(
                expires_at=self._clock() + ttl,
                response=response.model_copy(deep=True),
            )
        except Exception as e:
            raise CacheError(f"Cache store failed: {type(e).__name__}", original_error=e) from e

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def sweep(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            del self._entries[key]
        self._evictions += len(expired)
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    def start_sweeper(self, interval_seconds: float) -> None:
        """Start a background task that sweeps every ``interval_seconds``.

        Must be called from a running event loop. No-op if already running.
        """
        if self._sweeper is not None and not self._sweeper.done():
            return

        async def run() -> None:
            while True:
                await asyncio.sleep(interval_seconds)
                self.sweep()

        self._sweeper = asyncio.get_running_loop().create_task(run())

    async def close(self) -> None:
        """Stop the background sweeper, if any."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    def get_stats(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "entries": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
        }
