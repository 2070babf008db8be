import asyncio
import re
from datetime import datetime, timezone
from math import sqrt

import pytest

from kb_search.agent.orchestrator import AgenticRetrievalOrchestrator
from kb_search.cache.multi_layer import MultiLayerCache
from kb_search.cache.stores import InMemoryCacheStore
from kb_search.config import QuotaConfig, RateLimitConfig, RateLimitRule
from kb_search.errors import (
    ProviderError,
    QuotaExceeded,
    RateLimitExceeded,
    RetrievalError,
    ValidationError,
)
from kb_search.ingest.embedder import EmbeddingProvider
from kb_search.quotas.quota_manager import QuotaManager
from kb_search.quotas.rate_limiter import RateLimiter
from kb_search.quotas.stores import InMemoryRateLimitStore
from kb_search.retrieval.multimodal import MultimodalSearch
from kb_search.retrieval.reranker import Reranker, RerankProvider
from kb_search.retrieval.search import VectorSearchEngine
from kb_search.retrieval.vector_store import InMemoryChunkStore
from kb_search.service import SearchRequest, SearchService
from kb_search.types import ChunkRecord, RerankHit


class _VocabEmbedder(EmbeddingProvider):
    vocab = ["kafka", "retention", "pricing", "roadmap"]
    dimension = 4

    async def embed(self, text: str) -> list[float]:
        words = re.findall(r"\w+", text.lower())
        vector = [float(words.count(term)) for term in self.vocab]
        norm = sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector] if norm else vector


class _BrokenEmbedder(_VocabEmbedder):
    async def embed(self, text: str) -> list[float]:
        raise ProviderError("embedding backend down", provider="test")


class _HangingEmbedder(_VocabEmbedder):
    async def embed(self, text: str) -> list[float]:
        await asyncio.Event().wait()
        return []


class _ReversingProvider(RerankProvider):
    async def rerank(
        self, query: str, documents: list[str], *, top_n: int, model: str
    ) -> list[RerankHit]:
        order = list(reversed(range(len(documents))))[:top_n]
        return [RerankHit(index=i, relevance_score=0.9) for i in order]


async def _seed(store: InMemoryChunkStore) -> None:
    vocab = _VocabEmbedder()
    await store.upsert(
        [
            ChunkRecord(
                org_id="org-a", chunk_id="c1", source_id="rec-1", source_title="Platform sync",
                text="kafka retention settings", embedding=await vocab.embed("kafka retention"),
                start_time=0.0, end_time=10.0,
            ),
            ChunkRecord(
                org_id="org-a", chunk_id="c2", source_id="rec-1", source_title="Platform sync",
                text="pricing roadmap", embedding=await vocab.embed("pricing roadmap"),
                start_time=10.0, end_time=20.0,
            ),
            ChunkRecord(
                org_id="org-a", chunk_id="c3", source_id="rec-2", source_title="Billing",
                text="kafka pricing", embedding=await vocab.embed("kafka pricing"),
            ),
            ChunkRecord(
                org_id="org-a", chunk_id="f1", source_id="rec-1", source_title="Platform sync",
                text="kafka retention dashboard", embedding=await vocab.embed("kafka retention"),
                modality="visual", start_time=3.0, end_time=3.0,
            ),
        ]
    )


async def _service(
    *,
    embedder: EmbeddingProvider | None = None,
    quotas: QuotaManager | None = None,
    rate_limiter: RateLimiter | None = None,
    reranker: Reranker | None = None,
) -> SearchService:
    embedder = embedder or _VocabEmbedder()
    store = InMemoryChunkStore()
    await _seed(store)
    engine = VectorSearchEngine(store, embedder)
    reranker = reranker or Reranker()
    return SearchService(
        engine,
        multimodal=MultimodalSearch(engine),
        orchestrator=AgenticRetrievalOrchestrator(engine, reranker=reranker),
        reranker=reranker,
        cache=MultiLayerCache(InMemoryCacheStore()),
        quotas=quotas or QuotaManager(),
        rate_limiter=rate_limiter or RateLimiter(),
    )


async def _search_used(service: SearchService, org_id: str = "org-a") -> int:
    counter = (await service.quotas.get_quota_status(org_id)).get("search")
    return counter.used if counter else 0


@pytest.mark.asyncio
async def test_vector_search_is_cached_per_request() -> None:
    service = await _service()
    request = SearchRequest(query="kafka retention")

    first = await service.search(request, org_id="org-a", user_id="u-1")
    second = await service.search(SearchRequest(query="  kafka   retention "), org_id="org-a", user_id="u-1")

    assert [hit.chunk_id for hit in first.results] == ["c1"]
    assert first.results[0].similarity == pytest.approx(1.0)
    assert (first.cached, first.cache_layer) == (False, "source")
    assert (second.cached, second.cache_layer) == (True, "memory")
    assert second.count == 1
    assert first.trace_id is not None
    assert service.trace_store.summary()["cache_hit_ratio"] == pytest.approx(0.5)
    assert await _search_used(service) == 2


@pytest.mark.asyncio
async def test_other_tenants_see_nothing_and_share_no_cache() -> None:
    service = await _service()
    await service.search(SearchRequest(query="kafka retention"), org_id="org-a")

    other = await service.search(SearchRequest(query="kafka retention"), org_id="org-b")

    assert other.count == 0
    assert other.cache_layer == "source"


@pytest.mark.asyncio
async def test_failed_search_releases_the_quota_unit() -> None:
    service = await _service(embedder=_BrokenEmbedder())

    with pytest.raises(RetrievalError):
        await service.search(SearchRequest(query="kafka retention"), org_id="org-a")

    assert await _search_used(service) == 0


@pytest.mark.asyncio
async def test_cancelled_search_releases_the_quota_unit() -> None:
    service = await _service(embedder=_HangingEmbedder())

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(
            service.search(SearchRequest(query="kafka retention"), org_id="org-a"), timeout=0.05
        )

    assert await _search_used(service) == 0


@pytest.mark.asyncio
async def test_exhausted_quota_is_rejected() -> None:
    quotas = QuotaManager(
        config=QuotaConfig(
            plan_limits={"tiny": {"search": 1, "recording": 1, "api_call": 1, "storage": 1}},
            default_plan="tiny",
        )
    )
    service = await _service(quotas=quotas)
    await service.search(SearchRequest(query="kafka retention"), org_id="org-a")

    with pytest.raises(QuotaExceeded) as excinfo:
        await service.search(SearchRequest(query="kafka retention"), org_id="org-a")

    assert excinfo.value.to_payload()["limit"] == 1


@pytest.mark.asyncio
async def test_rate_limited_requests_do_not_consume_quota() -> None:
    limiter = RateLimiter(
        config=RateLimitConfig(
            rules={
                "search": RateLimitRule(limit=2, window_seconds=60),
                "api": RateLimitRule(limit=100, window_seconds=60),
            }
        )
    )
    service = await _service(rate_limiter=limiter)
    request = SearchRequest(query="kafka retention")

    first = await service.search(request, org_id="org-a", user_id="u-1")
    await service.search(request, org_id="org-a", user_id="u-1")
    with pytest.raises(RateLimitExceeded) as excinfo:
        await service.search(request, org_id="org-a", user_id="u-1")

    assert first.rate_limit is not None
    assert (first.rate_limit.limit, first.rate_limit.remaining) == (2, 1)
    assert excinfo.value.retry_after == pytest.approx(60, abs=1)
    assert await _search_used(service) == 2
    assert (await service.search(request, org_id="org-a", user_id="u-2")).count == 1


@pytest.mark.asyncio
async def test_invalid_requests_fail_before_admission() -> None:
    service = await _service()

    with pytest.raises(ValidationError, match="Query cannot be empty"):
        await service.search(SearchRequest(query="   "), org_id="org-a")
    with pytest.raises(ValidationError, match="limit"):
        await service.search(SearchRequest(query="kafka", limit=0), org_id="org-a")
    with pytest.raises(ValidationError, match="must sum to 1.0"):
        await service.search(
            SearchRequest(query="kafka", mode="multimodal", audio_weight=0.9, visual_weight=0.3),
            org_id="org-a",
        )
    with pytest.raises(ValidationError, match="maxIterations"):
        await service.search(
            SearchRequest(query="kafka", mode="agentic", max_iterations=20), org_id="org-a"
        )

    assert await _search_used(service) == 0


@pytest.mark.asyncio
async def test_hybrid_search_with_rerank() -> None:
    service = await _service(reranker=Reranker(_ReversingProvider()))

    response = await service.search(
        SearchRequest(query="kafka retention", mode="hybrid", threshold=0.4, rerank=True),
        org_id="org-a",
    )

    assert response.reranked is True
    assert [hit.chunk_id for hit in response.results] == ["c3", "c1"]
    assert response.results[0].similarity == 0.9


@pytest.mark.asyncio
async def test_multimodal_search_pairs_frames_with_transcript() -> None:
    service = await _service()

    response = await service.search(
        SearchRequest(query="kafka retention", mode="multimodal"), org_id="org-a"
    )

    assert [hit.chunk_id for hit in response.results] == ["c1"]
    assert response.results[0].metadata["visual_chunk_id"] == "f1"
    assert response.multimodal is not None
    assert response.multimodal["audio_count"] == 1
    assert response.multimodal["visual_count"] == 1


@pytest.mark.asyncio
async def test_agentic_search_reports_its_plan() -> None:
    service = await _service()

    response = await service.search(
        SearchRequest(query="kafka retention", mode="agentic"), org_id="org-a"
    )

    assert response.agentic is not None
    assert response.agentic["states"] == ["decomposing", "retrieving", "reflecting", "done"]
    assert response.agentic["stop_reason"] == "confident"
    assert response.agentic["citation_map"] == {"c1": ["q1"]}
    assert response.results[0].chunk_id == "c1"

    again = await service.search(
        SearchRequest(query="kafka retention", mode="agentic"), org_id="org-a"
    )
    assert again.cache_layer == "memory"
    assert again.agentic == response.agentic


def test_request_accepts_camel_case_fields() -> None:
    request = SearchRequest.model_validate(
        {"query": "q", "favoritesOnly": True, "maxIterations": 2, "tagFilterMode": "all"}
    )

    assert request.favorites_only is True
    assert request.max_iterations == 2
    assert request.tag_filter_mode == "all"


@pytest.mark.asyncio
async def test_org_rejections_leave_the_user_window_untouched() -> None:
    store = InMemoryRateLimitStore()
    limiter = RateLimiter(
        store,
        RateLimitConfig(
            rules={
                "search": RateLimitRule(limit=5, window_seconds=60),
                "api": RateLimitRule(limit=1, window_seconds=60),
            }
        ),
    )
    service = await _service(rate_limiter=limiter)
    request = SearchRequest(query="kafka retention")

    await service.search(request, org_id="org-a", user_id="u-1")
    for _ in range(3):
        with pytest.raises(RateLimitExceeded):
            await service.search(request, org_id="org-a", user_id="u-1")

    window = store.window(limiter.key("search", "user:u-1"), actor_id="user:u-1", resource="search")
    assert len(window.timestamps) == 1
    assert await _search_used(service) == 1


@pytest.mark.asyncio
async def test_naive_date_bounds_are_read_as_utc() -> None:
    service = await _service()
    vocab = _VocabEmbedder()
    await service.engine.store.upsert(
        [
            ChunkRecord(
                org_id="org-a", chunk_id="c9", source_id="rec-9", source_title="Retro",
                text="kafka retention retro", embedding=await vocab.embed("kafka retention"),
                created_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
            ),
        ]
    )
    request = SearchRequest.model_validate(
        {"query": "kafka retention", "dateFrom": "2020-01-01T00:00:00", "dateTo": "2999-01-01T00:00:00Z"}
    )

    response = await service.search(request, org_id="org-a")

    assert [hit.chunk_id for hit in response.results] == ["c9"]
