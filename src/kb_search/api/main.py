"""FastAPI entrypoint for ingest, search, quota and observability endpoints."""

from __future__ import annotations

import asyncio
import math
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, AsyncIterator
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from kb_search.agent.decomposition import QueryDecomposer
from kb_search.agent.evaluator import ResultEvaluator
from kb_search.agent.llm import create_llm
from kb_search.agent.orchestrator import AgenticRetrievalOrchestrator
from kb_search.cache.multi_layer import MultiLayerCache
from kb_search.cache.stores import CacheStore, InMemoryCacheStore, SqliteCacheStore
from kb_search.config import (
    AgenticConfig,
    CacheConfig,
    ChunkingConfig,
    MultimodalConfig,
    RerankConfig,
    SearchConfig,
    Settings,
    get_settings,
)
from kb_search.errors import RateLimitExceeded, SearchError, ValidationError
from kb_search.ingest.chunker import SemanticChunker
from kb_search.ingest.embedder import EmbeddingProvider, HashingEmbedder, HttpEmbeddingProvider
from kb_search.ingest.pipeline import IngestPipeline
from kb_search.obs.observability import (
    bind_correlation_id,
    clear_correlation_id,
    configure_logging,
    get_logger,
)
from kb_search.obs.tracing import SearchTraceStore
from kb_search.quotas.quota_manager import QuotaManager
from kb_search.quotas.rate_limiter import RateLimiter, actor_identifier
from kb_search.quotas.stores import CounterStore, InMemoryCounterStore, SqliteCounterStore
from kb_search.retrieval.multimodal import MultimodalSearch
from kb_search.retrieval.reranker import (
    CohereRerankProvider,
    CrossEncoderRerankProvider,
    Reranker,
    RerankProvider,
)
from kb_search.retrieval.search import VectorSearchEngine
from kb_search.retrieval.vector_store import ChunkStore, InMemoryChunkStore
from kb_search.service import SearchRequest, SearchResponse, SearchService
from kb_search.types import FrameDescription, SourceDocument


class IngestRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    source_id: str = Field(min_length=1)
    title: str = ""
    text: str
    content_type: str = "recording"
    created_at: datetime | None = None
    tag_ids: list[str] = Field(default_factory=list)
    collection_ids: list[str] = Field(default_factory=list)
    favorite: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class FrameModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    frame_id: str
    time_sec: float = Field(ge=0.0)
    description: str
    ocr_text: str = ""


class FrameIngestRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    source_id: str = Field(min_length=1)
    title: str = ""
    content_type: str = "recording"
    frames: list[FrameModel]


@dataclass(frozen=True)
class AppDependencies:
    settings: Settings
    embedder: EmbeddingProvider
    store: ChunkStore
    pipeline: IngestPipeline
    search_service: SearchService
    cache: MultiLayerCache
    quotas: QuotaManager
    rate_limiter: RateLimiter
    trace_store: SearchTraceStore
    llm: Any = None


def build_dependencies(settings: Settings) -> AppDependencies:
    """Construct every service once; nothing here is a module-level singleton."""

    embedder: EmbeddingProvider
    if settings.embedding_provider == "http":
        embedder = HttpEmbeddingProvider(
            base_url=settings.embedding_url,
            model=settings.embedding_model,
            dimension=settings.embedding_dim,
            api_key=settings.embedding_api_key,
            timeout_seconds=settings.embedding_timeout_seconds,
        )
    else:
        embedder = HashingEmbedder(dimension=settings.embedding_dim)

    cache_store: CacheStore
    counter_store: CounterStore
    if settings.sqlite_path is not None:
        cache_store = SqliteCacheStore(settings.sqlite_path)
        counter_store = SqliteCounterStore(settings.sqlite_path)
    else:
        cache_store = InMemoryCacheStore()
        counter_store = InMemoryCounterStore()

    store = InMemoryChunkStore()
    cache = MultiLayerCache(cache_store, CacheConfig(default_ttl_seconds=settings.cache_ttl_seconds))
    quotas = QuotaManager(counter_store)
    rate_limiter = RateLimiter()
    trace_store = SearchTraceStore()
    llm = create_llm(settings)

    search_config = SearchConfig()
    engine = VectorSearchEngine(store, embedder, search_config)
    rerank_provider: RerankProvider
    if settings.rerank_provider == "cross_encoder":
        rerank_provider = CrossEncoderRerankProvider(settings.cross_encoder_model)
    else:
        rerank_provider = CohereRerankProvider(
            api_key=settings.rerank_api_key, url=settings.rerank_url
        )
    reranker = Reranker(
        rerank_provider,
        RerankConfig(model=settings.rerank_model, timeout_ms=settings.rerank_timeout_ms),
    )
    agentic_config = AgenticConfig(
        max_iterations=settings.agentic_max_iterations,
        enable_self_reflection=settings.enable_self_reflection,
        confidence_threshold=settings.agentic_confidence_threshold,
    )
    orchestrator = AgenticRetrievalOrchestrator(
        engine,
        decomposer=QueryDecomposer(llm=llm, max_subqueries=agentic_config.max_subqueries),
        evaluator=ResultEvaluator(llm, confidence_threshold=agentic_config.confidence_threshold),
        reranker=reranker,
        config=agentic_config,
    )
    search_service = SearchService(
        engine,
        multimodal=MultimodalSearch(
            engine, MultimodalConfig(visual_enabled=settings.enable_visual_search)
        ),
        orchestrator=orchestrator,
        reranker=reranker,
        cache=cache,
        quotas=quotas,
        rate_limiter=rate_limiter,
        trace_store=trace_store,
        config=search_config,
        cache_ttl_seconds=settings.cache_ttl_seconds,
    )
    pipeline = IngestPipeline(SemanticChunker(embedder, ChunkingConfig()), embedder, store, cache)
    return AppDependencies(
        settings=settings,
        embedder=embedder,
        store=store,
        pipeline=pipeline,
        search_service=search_service,
        cache=cache,
        quotas=quotas,
        rate_limiter=rate_limiter,
        trace_store=trace_store,
        llm=llm,
    )


def create_app(
    *, settings: Settings | None = None, dependencies: AppDependencies | None = None
) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or build_dependencies(settings)

    configure_logging(settings.log_level)
    logger = get_logger("kb_search.api")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.dependencies.cache.close()

    app = FastAPI(title="Knowledge Base Search", version="0.1.0", lifespan=lifespan)
    app.state.dependencies = deps

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @app.exception_handler(SearchError)
    async def handle_search_error(request: Request, exc: SearchError) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        log = logger.warning if exc.status_code < 500 else logger.error
        log("request.failed", kind=exc.kind, detail=exc.message, correlation_id=correlation_id)
        headers: dict[str, str] = {}
        if isinstance(exc, RateLimitExceeded):
            headers = {
                "Retry-After": str(max(1, math.ceil(exc.retry_after))),
                "X-RateLimit-Limit": str(exc.limit),
                "X-RateLimit-Remaining": str(exc.remaining),
                "X-RateLimit-Reset": str(int(exc.reset)),
            }
        return JSONResponse(
            status_code=exc.status_code,
            content={**exc.to_payload(), "correlation_id": correlation_id},
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "internal_error", "message": "Internal Server Error", "correlation_id": correlation_id},
        )

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    def require_org(x_org_id: str | None = Header(default=None)) -> str:
        if not x_org_id or not x_org_id.strip():
            raise ValidationError("X-Org-ID header is required")
        return x_org_id.strip()

    @app.get("/health")
    async def health(dep: AppDependencies = Depends(get_dependencies)) -> dict[str, Any]:
        return {
            "status": "ok",
            "environment": dep.settings.environment,
            "embedding_provider": dep.settings.embedding_provider,
            "llm_configured": dep.llm is not None,
            "rerank_configured": dep.search_service.reranker.is_configured,
            "chunk_count": await dep.store.count(),
        }

    @app.post("/ingest", status_code=status.HTTP_201_CREATED)
    async def ingest(
        payload: IngestRequest,
        request: Request,
        org_id: str = Depends(require_org),
        x_user_id: str | None = Header(default=None),
        dep: AppDependencies = Depends(get_dependencies),
    ) -> dict[str, Any]:
        actor = actor_identifier(user_id=x_user_id, ip=_client_ip(request))
        await dep.rate_limiter.enforce("api", actor)
        await dep.quotas.consume_or_raise(org_id, "recording")
        try:
            chunks = await dep.pipeline.ingest_document(
                SourceDocument(
                    id=payload.source_id,
                    org_id=org_id,
                    title=payload.title or payload.source_id,
                    text=payload.text,
                    content_type=payload.content_type,
                    created_at=payload.created_at,
                    tag_ids=payload.tag_ids,
                    collection_ids=payload.collection_ids,
                    favorite=payload.favorite,
                    metadata=payload.metadata,
                )
            )
        except (Exception, asyncio.CancelledError):
            await dep.quotas.release_quota(org_id, "recording")
            raise
        return {
            "source_id": payload.source_id,
            "chunks_created": len(chunks),
            "chunk_ids": [chunk.id for chunk in chunks],
            "structure_types": [chunk.structure_type for chunk in chunks],
        }

    @app.post("/ingest/frames", status_code=status.HTTP_201_CREATED)
    async def ingest_frames(
        payload: FrameIngestRequest,
        org_id: str = Depends(require_org),
        dep: AppDependencies = Depends(get_dependencies),
    ) -> dict[str, Any]:
        records = await dep.pipeline.ingest_frames(
            org_id,
            payload.source_id,
            payload.title or payload.source_id,
            [
                FrameDescription(
                    frame_id=frame.frame_id,
                    time_sec=frame.time_sec,
                    description=frame.description,
                    ocr_text=frame.ocr_text,
                )
                for frame in payload.frames
            ],
            content_type=payload.content_type,
        )
        return {"source_id": payload.source_id, "frames_indexed": len(records)}

    @app.delete("/sources/{source_id}")
    async def delete_source(
        source_id: str,
        org_id: str = Depends(require_org),
        dep: AppDependencies = Depends(get_dependencies),
    ) -> dict[str, Any]:
        removed = await dep.pipeline.delete_source(org_id, source_id)
        if removed == 0:
            raise HTTPException(status_code=404, detail=f"Source not found: {source_id}")
        return {"source_id": source_id, "chunks_removed": removed}

    @app.post("/search", response_model=SearchResponse)
    async def search(
        payload: SearchRequest,
        request: Request,
        response: Response,
        org_id: str = Depends(require_org),
        x_user_id: str | None = Header(default=None),
        dep: AppDependencies = Depends(get_dependencies),
    ) -> SearchResponse:
        result = await dep.search_service.search(
            payload, org_id=org_id, user_id=x_user_id, client_ip=_client_ip(request)
        )
        if result.rate_limit is not None:
            response.headers["X-RateLimit-Limit"] = str(result.rate_limit.limit)
            response.headers["X-RateLimit-Remaining"] = str(result.rate_limit.remaining)
            response.headers["X-RateLimit-Reset"] = str(int(result.rate_limit.reset))
        return result

    @app.get("/quota")
    async def quota(
        org_id: str = Depends(require_org),
        dep: AppDependencies = Depends(get_dependencies),
    ) -> dict[str, Any]:
        counters = await dep.quotas.get_quota_status(org_id)
        return {
            "org_id": org_id,
            "quotas": {
                resource: {
                    "used": counter.used,
                    "limit": counter.limit,
                    "remaining": counter.remaining,
                    "reset_at": counter.reset_at.isoformat() if counter.reset_at else None,
                }
                for resource, counter in counters.items()
            },
        }

    @app.get("/cache/stats")
    async def cache_stats(dep: AppDependencies = Depends(get_dependencies)) -> dict[str, Any]:
        return dep.cache.stats()

    @app.delete("/cache")
    async def clear_cache(
        org_id: str = Depends(require_org),
        dep: AppDependencies = Depends(get_dependencies),
    ) -> dict[str, Any]:
        return {"org_id": org_id, "removed": await dep.cache.invalidate("*", org_id=org_id)}

    @app.get("/traces")
    async def traces(
        limit: int = 20,
        org_id: str = Depends(require_org),
        dep: AppDependencies = Depends(get_dependencies),
    ) -> dict[str, Any]:
        records = dep.trace_store.list_recent(limit=limit, org_id=org_id)
        return {"items": [asdict(record) for record in records]}

    @app.get("/traces/{trace_id}")
    async def trace_detail(
        trace_id: str,
        org_id: str = Depends(require_org),
        dep: AppDependencies = Depends(get_dependencies),
    ) -> dict[str, Any]:
        try:
            record = dep.trace_store.get(trace_id, org_id=org_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    @app.get("/metrics")
    async def metrics(dep: AppDependencies = Depends(get_dependencies)) -> dict[str, Any]:
        return {**dep.trace_store.summary(), "cache_layer_hit_rate": dep.cache.hit_rate()}

    return app


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


app = create_app()
