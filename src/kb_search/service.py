"""Search entry point: admission control, caching and mode dispatch."""

from __future__ import annotations

import asyncio
import dataclasses
import hashlib
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from kb_search.agent.orchestrator import AgenticRetrievalOrchestrator
from kb_search.cache.multi_layer import MultiLayerCache
from kb_search.config import SearchConfig
from kb_search.errors import RateLimitExceeded, ValidationError
from kb_search.obs.observability import get_logger
from kb_search.obs.tracing import SearchTraceStore, Timer
from kb_search.quotas.quota_manager import QuotaManager
from kb_search.quotas.rate_limiter import RateLimiter, actor_identifier
from kb_search.retrieval.multimodal import MultimodalSearch, validate_weights
from kb_search.retrieval.reranker import Reranker
from kb_search.retrieval.search import SearchOptions, VectorSearchEngine, validate_query
from kb_search.types import RateLimitResult, SearchFilters, SearchMode, SearchResult

logger = get_logger(__name__)


class SearchRequest(BaseModel):
    """Search input. Accepts snake_case or camelCase field names.

    Range checks happen in `SearchService` so every violation surfaces as the
    same typed validation error.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    query: str
    limit: int | None = None
    threshold: float | None = None
    mode: SearchMode = "vector"
    recording_ids: list[str] | None = None
    content_types: list[str] | None = None
    tag_ids: list[str] | None = None
    tag_filter_mode: Literal["any", "all"] = "any"
    collection_id: str | None = None
    favorites_only: bool = False
    date_from: datetime | None = None
    date_to: datetime | None = None
    rerank: bool = False
    audio_weight: float | None = None
    visual_weight: float | None = None
    max_iterations: int | None = None
    enable_self_reflection: bool | None = None


class SearchHit(BaseModel):
    chunk_id: str
    source_id: str
    source_title: str
    text: str
    similarity: float
    modality: str
    timestamp: float | None = None
    created_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: SearchResult) -> "SearchHit":
        return cls(
            chunk_id=result.chunk_id,
            source_id=result.source_id,
            source_title=result.source_title,
            text=result.text,
            similarity=result.similarity,
            modality=result.modality,
            timestamp=result.timestamp,
            created_at=result.created_at,
            metadata=result.metadata,
        )


class SearchTimings(BaseModel):
    search_ms: float = 0.0
    rerank_ms: float = 0.0
    total_ms: float = 0.0


class RateLimitInfo(BaseModel):
    limit: int
    remaining: int
    reset: float


class SearchResponse(BaseModel):
    query: str
    results: list[SearchHit]
    count: int
    mode: SearchMode
    reranked: bool
    cached: bool
    cache_layer: str
    timings: SearchTimings
    rate_limit: RateLimitInfo | None = None
    agentic: dict[str, Any] | None = None
    multimodal: dict[str, Any] | None = None
    trace_id: str | None = None


@dataclass(slots=True)
class _ModeOutput:
    results: list[SearchResult]
    reranked: bool = False
    rerank_ms: float = 0.0
    agentic: dict[str, Any] | None = None
    multimodal: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)


_Handler = Callable[[str, SearchRequest, SearchOptions], Awaitable[_ModeOutput]]


class SearchService:
    """Single search entry point shared by the HTTP API and batch callers.

    Order of operations: validate, rate limit (actor and organization admitted
    together, so a rejection records nothing), consume one `search` quota
    unit, then serve from cache or run the mode handler and optional rerank.
    If anything fails after the quota unit was consumed, including
    cancellation, the unit is released before the error propagates.
    """

    def __init__(
        self,
        engine: VectorSearchEngine,
        *,
        multimodal: MultimodalSearch,
        orchestrator: AgenticRetrievalOrchestrator,
        reranker: Reranker,
        cache: MultiLayerCache,
        quotas: QuotaManager,
        rate_limiter: RateLimiter,
        trace_store: SearchTraceStore | None = None,
        config: SearchConfig | None = None,
        cache_ttl_seconds: float | None = None,
    ) -> None:
        self.engine = engine
        self.multimodal = multimodal
        self.orchestrator = orchestrator
        self.reranker = reranker
        self.cache = cache
        self.quotas = quotas
        self.rate_limiter = rate_limiter
        self.trace_store = trace_store or SearchTraceStore()
        self.config = config or SearchConfig()
        self.cache_ttl_seconds = cache_ttl_seconds
        self._handlers: dict[str, _Handler] = {
            "vector": self._run_vector,
            "hybrid": self._run_vector,
            "multimodal": self._run_multimodal,
            "agentic": self._run_agentic,
        }

    async def search(
        self,
        request: SearchRequest,
        *,
        org_id: str,
        user_id: str | None = None,
        client_ip: str | None = None,
    ) -> SearchResponse:
        started = time.perf_counter()
        query = validate_query(request.query)
        options = self._options(request, org_id)
        self._validate_mode_args(request)

        rate_limit = await self._admit(org_id, actor_identifier(user_id=user_id, ip=client_ip))
        await self.quotas.consume_or_raise(org_id, "search")

        timings = SearchTimings()
        try:
            payload, layer = await self.cache.get_with_layer(
                _cache_key(query, request),
                lambda: self._compute(query, request, options, timings),
                org_id=org_id,
                namespace=f"search:{request.mode}",
                ttl_seconds=self.cache_ttl_seconds,
            )
        except (Exception, asyncio.CancelledError):
            await self._release(org_id)
            raise

        timings.total_ms = (time.perf_counter() - started) * 1000.0
        response = SearchResponse.model_validate(
            {
                **payload,
                "cached": layer != "source",
                "cache_layer": layer,
                "timings": timings,
                "rate_limit": RateLimitInfo(
                    limit=rate_limit.limit, remaining=rate_limit.remaining, reset=rate_limit.reset
                ),
            }
        )
        record = self.trace_store.create_record(
            org_id=org_id,
            query=query,
            mode=request.mode,
            result_count=response.count,
            cached=response.cached,
            cache_layer=layer,
            reranked=response.reranked,
            search_ms=timings.search_ms,
            rerank_ms=timings.rerank_ms,
            total_ms=timings.total_ms,
        )
        response.trace_id = record.trace_id
        logger.info(
            "search.served",
            org_id=org_id,
            mode=request.mode,
            result_count=response.count,
            cache_layer=layer,
            reranked=response.reranked,
            total_ms=round(timings.total_ms, 2),
        )
        return response

    async def _compute(
        self,
        query: str,
        request: SearchRequest,
        options: SearchOptions,
        timings: SearchTimings,
    ) -> dict[str, Any]:
        with Timer() as timer:
            output = await self._handlers[request.mode](query, request, options)
        timings.rerank_ms = output.rerank_ms
        timings.search_ms = max(0.0, timer.elapsed_ms - output.rerank_ms)
        hits = [SearchHit.from_result(result) for result in output.results]
        return {
            "query": query,
            "results": [hit.model_dump(mode="json") for hit in hits],
            "count": len(hits),
            "mode": request.mode,
            "reranked": output.reranked,
            "agentic": output.agentic,
            "multimodal": output.multimodal,
        }

    async def _run_vector(
        self, query: str, request: SearchRequest, options: SearchOptions
    ) -> _ModeOutput:
        results = await self.engine.search(query, options)
        return await self._maybe_rerank(query, request, options, results)

    async def _run_multimodal(
        self, query: str, request: SearchRequest, options: SearchOptions
    ) -> _ModeOutput:
        outcome = await self.multimodal.search(
            query,
            options,
            audio_weight=request.audio_weight,
            visual_weight=request.visual_weight,
        )
        output = await self._maybe_rerank(query, request, options, outcome.results)
        output.multimodal = {
            "mode": outcome.mode,
            "audio_count": outcome.audio_count,
            "visual_count": outcome.visual_count,
            "audio_weight": outcome.audio_weight,
            "visual_weight": outcome.visual_weight,
            "elapsed_ms": outcome.elapsed_ms,
        }
        return output

    async def _run_agentic(
        self, query: str, request: SearchRequest, options: SearchOptions
    ) -> _ModeOutput:
        result = await self.orchestrator.run(
            query,
            options,
            max_iterations=request.max_iterations,
            enable_self_reflection=request.enable_self_reflection,
            enable_reranking=request.rerank,
            threshold=request.threshold,
        )
        return _ModeOutput(
            results=result.results,
            reranked=result.reranked,
            agentic={
                "intent": result.intent,
                "confidence": result.confidence,
                "reasoning": result.reasoning,
                "states": result.states,
                "sub_queries": [dataclasses.asdict(sq) for sq in result.decomposition.sub_queries],
                "iterations": [dataclasses.asdict(it) for it in result.iterations],
                "citation_map": result.citation_map,
                "duration_ms": result.duration_ms,
                **result.metadata,
            },
        )

    async def _maybe_rerank(
        self,
        query: str,
        request: SearchRequest,
        options: SearchOptions,
        results: list[SearchResult],
    ) -> _ModeOutput:
        if not request.rerank or not results:
            return _ModeOutput(results=results)
        outcome = await self.reranker.rerank(query, results, top_n=options.limit)
        return _ModeOutput(
            results=outcome.results,
            reranked=outcome.applied,
            rerank_ms=outcome.elapsed_ms,
        )

    async def _admit(self, org_id: str, actor_id: str) -> RateLimitResult:
        actor_result, org_result = await self.rate_limiter.check_all(
            [("search", actor_id), ("api", f"org:{org_id}")]
        )
        for result in (actor_result, org_result):
            if not result.success:
                retry_after = result.retry_after or 0.0
                raise RateLimitExceeded(
                    f"Rate limit exceeded. Try again in {retry_after:.0f}s",
                    limit=result.limit,
                    remaining=result.remaining,
                    reset=result.reset,
                    retry_after=retry_after,
                )
        return min((actor_result, org_result), key=lambda result: result.remaining)

    async def _release(self, org_id: str) -> None:
        try:
            await self.quotas.release_quota(org_id, "search")
        except Exception as exc:  # noqa: BLE001 - the original failure is the one to surface
            logger.error("search.quota_release_failed", org_id=org_id, error=str(exc))

    def _options(self, request: SearchRequest, org_id: str) -> SearchOptions:
        options = SearchOptions(
            org_id=org_id,
            limit=self.config.default_limit if request.limit is None else request.limit,
            threshold=(
                self.config.default_threshold if request.threshold is None else request.threshold
            ),
            mode="hybrid" if request.mode == "hybrid" else "vector",
            filters=SearchFilters(
                recording_ids=request.recording_ids,
                content_types=request.content_types,
                tag_ids=request.tag_ids,
                tag_filter_mode=request.tag_filter_mode,
                collection_id=request.collection_id,
                date_from=request.date_from,
                date_to=request.date_to,
                favorites_only=request.favorites_only,
            ),
        )
        options.validate()
        return options

    def _validate_mode_args(self, request: SearchRequest) -> None:
        if request.mode == "multimodal":
            config = self.multimodal.config
            validate_weights(
                config.audio_weight if request.audio_weight is None else request.audio_weight,
                config.visual_weight if request.visual_weight is None else request.visual_weight,
                config.weight_tolerance,
            )
        if request.mode == "agentic" and request.max_iterations is not None:
            if not 1 <= request.max_iterations <= 10:
                raise ValidationError("maxIterations must be between 1 and 10")


def _cache_key(query: str, request: SearchRequest) -> str:
    normalized = request.model_dump(mode="json")
    normalized["query"] = " ".join(query.split())
    encoded = json.dumps(normalized, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
