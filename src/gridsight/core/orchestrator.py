"""Atlas Orchestrator: one request/response cycle of the engine.

Flow:
1. Validate the request (before any cache or network access)
2. Return a cached response when the same request was answered recently
3. Pick a strategy (atlas vs individual)
4. Atlas path: build the 3x3 atlas, render the prompt, call the model once,
   parse and map answers back to image ids. If the atlas cannot be built,
   fall back to the individual path and say so in the response metadata.
5. Individual path: one model call per image, strictly sequential
6. Compute optimization metrics, cache the response, return it

Example:
    >>> orchestrator = AtlasOrchestrator.from_config(get_config(), model=GeminiVisionClient())
    >>> await orchestrator.start()
    >>> response = await orchestrator.process(request, user_id="user-1")
    >>> response.optimization.atlas_used
    True
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from gridsight.ai.client import ImagePayload, VisionModel
from gridsight.ai.executor import ModelQueryExecutor
from gridsight.ai.parser import ResponseParser
from gridsight.ai.prompts import render_atlas_prompt, render_single_image_prompt
from gridsight.ai.retry import Sleep
from gridsight.ai.usage_tracker import UsageTracker
from gridsight.config import AppConfig, AtlasSettings
from gridsight.core.cache import Clock, ResponseCache, build_cache_key
from gridsight.core.grid import MAX_ATLAS_IMAGES
from gridsight.core.models import (
    AnalysisRequest,
    AnalysisResponse,
    AtlasInfo,
    DetailLevel,
    OptimizationStats,
    PerImageResult,
    ResponseMetadata,
)
from gridsight.core.optimization import OptimizationCalculator, compression_stats, quality_metrics
from gridsight.core.strategy import AtlasStrategy, IndividualStrategy, StrategySelector
from gridsight.errors import (
    AtlasBuildError,
    FetchError,
    GridSightError,
    InputError,
    ModelAuthenticationError,
    ModelError,
    ModelUnavailableError,
    ValidationError,
)
from gridsight.imaging.atlas import (
    AtlasArtifact,
    AtlasBuildOptions,
    AtlasStore,
    GridAtlasBuilder,
)
from gridsight.imaging.fetch import HttpImageFetcher, ImageSource, detect_mime_type
from gridsight.utils.logging import LogContext

logger = logging.getLogger(__name__)

MIN_COST_BUDGET_USD = 0.01

FALLBACK_CAPACITY_EXCEEDED = "atlas_capacity_exceeded"
FALLBACK_BUILD_FAILED = "atlas_build_failed"

STAGE_ATLAS = "atlas_analysis"
STAGE_INDIVIDUAL = "individual_analysis"

# Failures that affect every image alike; the individual path stops on these.
_REQUEST_WIDE_ERRORS = (ModelUnavailableError, ModelAuthenticationError)


@dataclass
class _PathOutcome:
    results: list[PerImageResult]
    summary: str
    optimization: OptimizationStats
    detail_level: DetailLevel
    strategy_name: str
    atlas: AtlasInfo | None = None


class AtlasOrchestrator:
    """Composes strategy, atlas building, prompting, model calls and parsing.

    All collaborators are injected. ``from_config`` wires the defaults.

    Attributes:
        max_images: Upper bound on images per request.
    """

    def __init__(
        self,
        builder: GridAtlasBuilder,
        executor: ModelQueryExecutor,
        fetcher: ImageSource,
        atlas_settings: AtlasSettings | None = None,
        cache: ResponseCache | None = None,
        selector: StrategySelector | None = None,
        parser: ResponseParser | None = None,
        optimizer: OptimizationCalculator | None = None,
        store: AtlasStore | None = None,
        max_images: int = 50,
        clock: Clock = time.perf_counter,
        sweep_interval_seconds: float | None = None,
    ) -> None:
        self._builder = builder
        self._executor = executor
        self._fetcher = fetcher
        self._atlas_settings = atlas_settings or AtlasSettings()
        self._cache = cache or ResponseCache()
        self._selector = selector or StrategySelector(self._atlas_settings.threshold)
        self._parser = parser or ResponseParser()
        self._optimizer = optimizer or OptimizationCalculator()
        self._store = store
        self.max_images = max_images
        self._clock = clock
        self._sweep_interval_seconds = sweep_interval_seconds

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        model: VisionModel,
        fetcher: ImageSource | None = None,
        store: AtlasStore | None = None,
        usage_tracker: UsageTracker | None = None,
        sleep: Sleep = asyncio.sleep,
        cache_clock: Clock = time.monotonic,
    ) -> "AtlasOrchestrator":
        """Wire an orchestrator from configuration."""
        fetcher = fetcher or HttpImageFetcher()
        return cls(
            builder=GridAtlasBuilder.from_settings(config.atlas, fetcher),
            executor=ModelQueryExecutor.from_config(
                model, config.model, sleep=sleep, usage_tracker=usage_tracker
            ),
            fetcher=fetcher,
            atlas_settings=config.atlas,
            cache=ResponseCache.from_settings(config.cache, clock=cache_clock),
            selector=StrategySelector(config.atlas.threshold),
            optimizer=OptimizationCalculator(config.pricing),
            store=store,
            max_images=config.max_images_per_request,
            sweep_interval_seconds=config.cache.sweep_interval_seconds,
        )

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    # =========================================================================
    # Entry points
    # =========================================================================

    async def process_request(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Process a camelCase request dict and return the camelCase response dict.

        Raises:
            ValidationError: If the payload does not describe a valid request.
            ModelError: If the model failed irrecoverably.
            FetchError: If no image could be retrieved.
        """
        try:
            request = AnalysisRequest.model_validate(payload)
        except PydanticValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"]) or None
            raise ValidationError(f"Invalid request: {first['msg']}", field=field) from e

        response = await self.process(request)
        return response.to_wire()

    async def process(
        self, request: AnalysisRequest, user_id: str | None = None
    ) -> AnalysisResponse:
        """Run one request through the engine.

        Args:
            request: The validated request model.
            user_id: Caller's user id; falls back to ``request.user_id``.

        Returns:
            The full response. Degradations (atlas fallback, failed images)
            are visible in ``metadata`` and ``results``, not raised.

        Raises:
            ValidationError: Malformed request. Raised before any I/O.
            ModelError: Irrecoverable model failure, with request id and stage.
            FetchError: No image in the individual path could be retrieved.
        """
        request_id = str(uuid.uuid4())
        start = self._clock()

        self.validate(request, user_id or request.user_id)

        cache_key = build_cache_key(request)
        cached = self._cache.get(cache_key)
        if cached is not None:
            logger.info(f"[{request_id}] Cache hit for {len(request.images)} images")
            cached.optimization.cache_hit = True
            cached.metadata.request_id = request_id
            cached.metadata.processing_time_ms = round((self._clock() - start) * 1000, 2)
            cached.metadata.timestamp = datetime.now(timezone.utc)
            return cached

        options = request.options
        strategy = self._selector.decide(
            len(request.images), options.force_atlas, options.quality_level
        )
        logger.info(f"[{request_id}] Strategy {strategy.name}: {strategy.reason}")

        outcome: _PathOutcome | None = None
        fallback_reason: str | None = None

        match strategy:
            case AtlasStrategy() if len(request.images) > MAX_ATLAS_IMAGES:
                fallback_reason = FALLBACK_CAPACITY_EXCEEDED
                logger.warning(
                    f"[{request_id}] {len(request.images)} images exceed atlas capacity "
                    f"of {MAX_ATLAS_IMAGES}; processing individually"
                )
            case AtlasStrategy():
                try:
                    outcome = await self._process_with_atlas(request, strategy, request_id)
                except (FetchError, AtlasBuildError, InputError) as e:
                    fallback_reason = FALLBACK_BUILD_FAILED
                    logger.warning(
                        f"[{request_id}] Atlas build failed ({type(e).__name__}: {e}); "
                        "processing individually"
                    )
                except ModelError as e:
                    raise e.with_context(request_id, STAGE_ATLAS)
            case IndividualStrategy():
                outcome = await self._process_individually(request, strategy, request_id)

        if outcome is None:
            fallback = IndividualStrategy(reason=f"fallback: {fallback_reason}")
            outcome = await self._process_individually(request, fallback, request_id)

        processing_time_ms = (self._clock() - start) * 1000
        response = AnalysisResponse(
            success=True,
            results=outcome.results,
            summary=outcome.summary,
            atlas=outcome.atlas,
            optimization=outcome.optimization,
            metrics=(
                quality_metrics(processing_time_ms, outcome.atlas is not None, outcome.results)
                if options.include_metrics
                else None
            ),
            metadata=ResponseMetadata(
                request_id=request_id,
                processing_time_ms=round(processing_time_ms, 2),
                model_used=self._executor.model_name,
                strategy=outcome.strategy_name,
                detail_level=outcome.detail_level,
                degraded=fallback_reason is not None,
                fallback_reason=fallback_reason,
            ),
        )

        self._cache.put(cache_key, response, options.cache_ttl_seconds)
        logger.info(
            f"[{request_id}] Done in {processing_time_ms:.0f}ms: {len(response.results)} results, "
            f"atlas={response.optimization.atlas_used}, "
            f"tokens saved={response.optimization.token_savings}"
        )
        return response

    def validate(self, request: AnalysisRequest, user_id: str | None) -> None:
        """Reject malformed requests.

        Raises:
            ValidationError: Naming the offending field.
        """
        if not request.images:
            raise ValidationError("At least one image is required", field="images")
        if len(request.images) > self.max_images:
            raise ValidationError(
                f"Maximum {self.max_images} images per request", field="images"
            )
        ids = [image.id for image in request.images]
        if len(set(ids)) != len(ids):
            raise ValidationError("Image ids must be unique", field="images")
        if not request.query or not request.query.strip():
            raise ValidationError("Query is required", field="query")
        if not user_id or not user_id.strip():
            raise ValidationError("User ID is required", field="userId")
        budget = request.options.cost_budget
        if budget is not None and budget < MIN_COST_BUDGET_USD:
            raise ValidationError(
                f"Cost budget must be at least ${MIN_COST_BUDGET_USD:.2f}",
                field="options.costBudget",
            )

    # =========================================================================
    # Atlas path
    # =========================================================================

    async def _process_with_atlas(
        self, request: AnalysisRequest, strategy: AtlasStrategy, request_id: str
    ) -> _PathOutcome:
        options = request.options
        build_options = AtlasBuildOptions(
            quality=self._atlas_settings.quality_for(options.quality_level.value),
            format=self._atlas_settings.format,
            max_file_size=self._atlas_settings.max_file_size,
        )

        stage = f"[{request_id}] Building atlas of {len(request.images)} images"
        with LogContext(stage, logger=logger):
            artifact = await self._builder.build(request.images, build_options)
        atlas_url = await self._store_atlas(artifact, request_id)

        metadata = {image.id: image.metadata for image in request.images if image.metadata}
        prompt = render_atlas_prompt(
            request.query,
            request.analysis_type,
            artifact.position_map,
            metadata=metadata,
            custom_prompt=options.custom_prompt,
        )
        payload = ImagePayload(
            artifact.encoded_bytes, artifact.mime_type, image_id=artifact.atlas_id
        )

        with LogContext(f"[{request_id}] Atlas model call", logger=logger):
            response = await self._executor.invoke(
                prompt, payload, strategy.detail_level, operation="atlas"
            )

        parsed = self._parser.parse(response.text, artifact.position_map)
        if not parsed.structured:
            logger.warning(f"[{request_id}] Atlas response was not JSON; used fallback extractor")

        return _PathOutcome(
            results=parsed.results,
            summary=parsed.summary,
            optimization=self._optimizer.for_atlas(len(request.images), response.total_tokens),
            detail_level=strategy.detail_level,
            strategy_name=strategy.name,
            atlas=AtlasInfo(
                id=artifact.atlas_id,
                position_map=artifact.position_map.to_dict(),
                byte_size=artifact.byte_size,
                format=artifact.format,
                url=atlas_url,
                compression_stats=compression_stats(artifact.original_count, artifact.byte_size),
            ),
        )

    async def _store_atlas(self, artifact: AtlasArtifact, request_id: str) -> str | None:
        """Upload the atlas if a store is configured. Failures are logged, not raised."""
        if self._store is None:
            return None
        key = f"atlases/{artifact.atlas_id}.{artifact.format}"
        try:
            return await self._store.put(artifact.encoded_bytes, artifact.mime_type, key)
        except Exception as e:
            logger.warning(f"[{request_id}] Atlas upload failed: {type(e).__name__}")
            return None

    # =========================================================================
    # Individual path
    # =========================================================================

    async def _process_individually(
        self, request: AnalysisRequest, strategy: IndividualStrategy, request_id: str
    ) -> _PathOutcome:
        """One model call per image, in input order, one at a time."""
        prompt = render_single_image_prompt(
            request.query, request.analysis_type, custom_prompt=request.options.custom_prompt
        )
        results: list[PerImageResult] = []
        total_tokens = 0
        failures = 0
        last_error: Exception | None = None

        for image in request.images:
            try:
                data = await self._fetcher.fetch(image)
                payload = ImagePayload(data, detect_mime_type(image.id, data), image_id=image.id)
                response = await self._executor.invoke(
                    prompt, payload, strategy.detail_level, operation="single"
                )
            except _REQUEST_WIDE_ERRORS as e:
                raise e.with_context(request_id, STAGE_INDIVIDUAL)
            except (FetchError, ModelError) as e:
                logger.warning(f"[{request_id}] Image {image.id} failed: {type(e).__name__}")
                failures += 1
                last_error = e
                results.append(
                    PerImageResult(
                        image_id=image.id,
                        classification="unclassified",
                        failed=True,
                        error=str(e),
                    )
                )
                continue

            parsed = self._parser.parse_single(response.text, image.id)
            results.append(parsed.result)
            total_tokens += response.total_tokens or 0

        if failures == len(request.images):
            raise self._all_failed_error(last_error, len(request.images)).with_context(
                request_id, STAGE_INDIVIDUAL
            )

        summary = f"Analyzed {len(request.images)} images individually"
        if failures:
            summary += f" ({failures} failed)"

        return _PathOutcome(
            results=results,
            summary=summary,
            optimization=self._optimizer.for_individual(len(request.images), total_tokens),
            detail_level=strategy.detail_level,
            strategy_name=strategy.name,
        )

    @staticmethod
    def _all_failed_error(last_error: Exception | None, count: int) -> GridSightError:
        """The error to raise when no image could be analyzed, kept by kind."""
        if isinstance(last_error, (ModelError, FetchError)):
            return last_error
        return ModelError(
            f"All {count} images failed; last error: {last_error}",
            retriable=False,
            original_error=last_error,
        )

    async def start(self) -> None:
        """Start background cache maintenance. Call from the serving event loop."""
        if self._sweep_interval_seconds is not None and self._cache.enabled:
            self._cache.start_sweeper(self._sweep_interval_seconds)

    async def aclose(self) -> None:
        """Stop the cache sweeper and release the image source."""
        await self._cache.close()
        await self._fetcher.aclose()
