import re
from datetime import datetime, timezone
from math import sqrt

import pytest

from kb_search.errors import ProviderError, RetrievalError, ValidationError
from kb_search.ingest.embedder import EmbeddingProvider
from kb_search.retrieval.search import SearchOptions, VectorSearchEngine
from kb_search.retrieval.vector_store import InMemoryChunkStore, lexical_overlap, query_terms
from kb_search.types import ChunkRecord, SearchFilters

_VOCAB = ["encryption", "policy", "holiday", "schedule", "laptop", "keys"]


class _VocabEmbedder(EmbeddingProvider):
    def __init__(self) -> None:
        self.dimension = len(_VOCAB)
        self.calls = 0

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        words = re.findall(r"\w+", text.lower())
        vector = [float(words.count(term)) for term in _VOCAB]
        norm = sqrt(sum(value * value for value in vector))
        return [value / norm for value in vector] if norm else vector


class _BrokenEmbedder(EmbeddingProvider):
    dimension = 6

    async def embed(self, text: str) -> list[float]:
        raise ProviderError("upstream 503", provider="embeddings")


async def _record(
    embedder: EmbeddingProvider, org_id: str, chunk_id: str, text: str, **extra: object
) -> ChunkRecord:
    return ChunkRecord(
        org_id=org_id,
        chunk_id=chunk_id,
        source_id=str(extra.pop("source_id", "rec-1")),
        source_title="Security review",
        text=text,
        embedding=await embedder.embed(text),
        **extra,  # type: ignore[arg-type]
    )


async def _engine_with(records: list[ChunkRecord], embedder: EmbeddingProvider) -> VectorSearchEngine:
    store = InMemoryChunkStore()
    await store.upsert(records)
    return VectorSearchEngine(store, embedder)


@pytest.mark.asyncio
async def test_results_never_cross_tenants() -> None:
    embedder = _VocabEmbedder()
    records = [
        await _record(embedder, "org-a", "a-1", "encryption policy for laptop fleet"),
        await _record(embedder, "org-b", "b-1", "encryption policy for laptop fleet"),
        await _record(embedder, "org-b", "b-2", "encryption policy"),
    ]
    engine = await _engine_with(records, embedder)

    results = await engine.search("encryption policy", SearchOptions(org_id="org-a", threshold=0.1))

    assert [r.chunk_id for r in results] == ["a-1"]


@pytest.mark.asyncio
async def test_every_result_meets_threshold_in_descending_order() -> None:
    embedder = _VocabEmbedder()
    records = [
        await _record(embedder, "org-a", "c-1", "encryption policy"),
        await _record(embedder, "org-a", "c-2", "encryption keys"),
        await _record(embedder, "org-a", "c-3", "holiday schedule"),
    ]
    engine = await _engine_with(records, embedder)

    results = await engine.search("encryption policy", SearchOptions(org_id="org-a", threshold=0.4))

    assert [r.chunk_id for r in results] == ["c-1", "c-2"]
    assert all(r.similarity >= 0.4 for r in results)
    assert results[0].similarity == pytest.approx(1.0)
    assert results[0].metadata["rank"] == 1
    assert results[0].metadata["route"] == "vector"

    strict = await engine.search("encryption policy", SearchOptions(org_id="org-a", threshold=0.9))
    assert [r.chunk_id for r in strict] == ["c-1"]


@pytest.mark.asyncio
async def test_limit_caps_results() -> None:
    embedder = _VocabEmbedder()
    records = [
        await _record(embedder, "org-a", f"p-{i}", "encryption policy") for i in range(5)
    ]
    engine = await _engine_with(records, embedder)

    results = await engine.search("encryption", SearchOptions(org_id="org-a", limit=3, threshold=0.1))

    assert len(results) == 3


@pytest.mark.asyncio
async def test_filters_narrow_results() -> None:
    embedder = _VocabEmbedder()
    march = datetime(2024, 3, 10, tzinfo=timezone.utc)
    june = datetime(2024, 6, 1, tzinfo=timezone.utc)
    records = [
        await _record(
            embedder, "org-a", "f-1", "encryption policy",
            source_id="rec-1", tag_ids=frozenset({"security", "infra"}), created_at=march,
            favorite=True, collection_ids=frozenset({"col-1"}),
        ),
        await _record(
            embedder, "org-a", "f-2", "encryption policy",
            source_id="rec-2", tag_ids=frozenset({"security"}), created_at=june,
            content_type="document",
        ),
    ]
    engine = await _engine_with(records, embedder)

    async def ids(filters: SearchFilters) -> list[str]:
        results = await engine.search(
            "encryption policy", SearchOptions(org_id="org-a", threshold=0.5, filters=filters)
        )
        return sorted(r.chunk_id for r in results)

    assert await ids(SearchFilters(recording_ids=["rec-2"])) == ["f-2"]
    assert await ids(SearchFilters(content_types=["document"])) == ["f-2"]
    assert await ids(SearchFilters(tag_ids=["security", "infra"], tag_filter_mode="any")) == ["f-1", "f-2"]
    assert await ids(SearchFilters(tag_ids=["security", "infra"], tag_filter_mode="all")) == ["f-1"]
    assert await ids(SearchFilters(collection_id="col-1")) == ["f-1"]
    assert await ids(SearchFilters(favorites_only=True)) == ["f-1"]
    assert await ids(SearchFilters(date_from=datetime(2024, 5, 1, tzinfo=timezone.utc))) == ["f-2"]
    assert await ids(SearchFilters(date_to=march)) == ["f-1"]
    assert await ids(SearchFilters(date_from=datetime(2024, 5, 1))) == ["f-2"]
    assert await ids(SearchFilters(date_from=datetime(2024, 3, 1), date_to=june)) == ["f-1", "f-2"]


def test_mixed_naive_and_aware_date_bounds_are_compared_in_utc() -> None:
    options = SearchOptions(
        org_id="org-a",
        filters=SearchFilters(
            date_from=datetime(2024, 6, 2), date_to=datetime(2024, 6, 1, tzinfo=timezone.utc)
        ),
    )

    assert options.filters.date_from == datetime(2024, 6, 2, tzinfo=timezone.utc)
    with pytest.raises(ValidationError, match="date_from must not be after date_to"):
        options.validate()


@pytest.mark.asyncio
async def test_hybrid_blends_vector_and_keyword_scores() -> None:
    embedder = _VocabEmbedder()
    records = [
        await _record(embedder, "org-a", "h-1", "encryption policy for every laptop"),
        await _record(embedder, "org-a", "h-2", "rotate encryption keys"),
        await _record(embedder, "org-a", "h-3", "holiday schedule"),
    ]
    engine = await _engine_with(records, embedder)

    results = await engine.search(
        "encryption policy", SearchOptions(org_id="org-a", mode="hybrid", threshold=0.45)
    )

    assert [r.chunk_id for r in results] == ["h-1", "h-2"]
    assert all(r.metadata["route"] == "hybrid" for r in results)
    assert all(r.similarity >= 0.45 for r in results)
    # 0.7 * cosine 0.5 + 0.3 * one of two terms
    assert results[1].similarity == pytest.approx(0.5)

    vector_only = await engine.search(
        "encryption policy", SearchOptions(org_id="org-a", threshold=0.45)
    )
    assert [r.chunk_id for r in vector_only] == ["h-1", "h-2"]
    assert vector_only[1].similarity == pytest.approx(0.5)
    assert results[0].similarity > vector_only[0].similarity


@pytest.mark.asyncio
async def test_empty_query_is_rejected_before_embedding() -> None:
    embedder = _VocabEmbedder()
    engine = await _engine_with([], embedder)

    with pytest.raises(ValidationError, match="Query cannot be empty"):
        await engine.search("   ", SearchOptions(org_id="org-a"))
    assert embedder.calls == 0


@pytest.mark.asyncio
async def test_invalid_options_are_rejected() -> None:
    engine = await _engine_with([], _VocabEmbedder())

    with pytest.raises(ValidationError):
        await engine.search("policy", SearchOptions(org_id="org-a", limit=0))
    with pytest.raises(ValidationError):
        await engine.search("policy", SearchOptions(org_id="org-a", threshold=1.5))
    with pytest.raises(ValidationError):
        await engine.search("policy", SearchOptions(org_id=""))


@pytest.mark.asyncio
async def test_embedding_failure_surfaces_as_retrieval_error() -> None:
    engine = VectorSearchEngine(InMemoryChunkStore(), _BrokenEmbedder())

    with pytest.raises(RetrievalError):
        await engine.search("policy", SearchOptions(org_id="org-a"))


@pytest.mark.asyncio
async def test_visual_records_only_returned_by_visual_search() -> None:
    embedder = _VocabEmbedder()
    records = [
        await _record(embedder, "org-a", "audio-1", "encryption policy"),
        await _record(
            embedder, "org-a", "frame-1", "encryption policy slide", modality="visual", start_time=12.0
        ),
    ]
    engine = await _engine_with(records, embedder)
    options = SearchOptions(org_id="org-a", threshold=0.5)

    audio = await engine.search("encryption policy", options)
    visual = await engine.search_visual("encryption policy", options)

    assert [r.chunk_id for r in audio] == ["audio-1"]
    assert [r.chunk_id for r in visual] == ["frame-1"]
    assert visual[0].timestamp == 12.0


@pytest.mark.asyncio
async def test_find_similar_excludes_the_seed_chunk() -> None:
    embedder = _VocabEmbedder()
    records = [
        await _record(embedder, "org-a", "s-1", "encryption policy"),
        await _record(embedder, "org-a", "s-2", "encryption policy laptop"),
        await _record(embedder, "org-b", "s-3", "encryption policy"),
    ]
    engine = await _engine_with(records, embedder)

    similar = await engine.find_similar("org-a", "s-1", limit=5, threshold=0.5)

    assert [r.chunk_id for r in similar] == ["s-2"]
    assert await engine.find_similar("org-a", "missing") == []


def test_query_terms_drop_stopwords_and_duplicates() -> None:
    terms = query_terms("What is the encryption policy and the encryption scope?")

    assert terms == ["encryption", "policy", "scope"]
    assert lexical_overlap(terms, "Encryption policy applies") == pytest.approx(2 / 3)
