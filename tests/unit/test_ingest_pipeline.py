import pytest

from kb_search.cache.multi_layer import MultiLayerCache
from kb_search.cache.stores import InMemoryCacheStore
from kb_search.errors import ValidationError
from kb_search.ingest.chunker import SemanticChunker
from kb_search.ingest.embedder import HashingEmbedder
from kb_search.ingest.pipeline import IngestPipeline
from kb_search.retrieval.vector_store import InMemoryChunkStore
from kb_search.types import FrameDescription, SourceDocument

SENTENCE = "Kafka retention is seven days for the events topic."
WITH_CODE = SENTENCE + "\n\n```python\nconfig = {'retention.ms': 604800000}\n```\n"


def _pipeline() -> tuple[IngestPipeline, InMemoryChunkStore, MultiLayerCache]:
    embedder = HashingEmbedder(dimension=64)
    store = InMemoryChunkStore()
    cache = MultiLayerCache(InMemoryCacheStore())
    return IngestPipeline(SemanticChunker(embedder), embedder, store, cache), store, cache


def _document(text: str, **metadata: object) -> SourceDocument:
    return SourceDocument(
        id="rec-1",
        org_id="org-a",
        title="Platform sync",
        text=text,
        tag_ids=["infra"],
        metadata=dict(metadata),
    )


@pytest.mark.asyncio
async def test_chunks_are_stored_with_structure_and_timing() -> None:
    pipeline, store, _ = _pipeline()

    chunks = await pipeline.ingest_document(_document(SENTENCE, duration_sec=100))

    assert len(chunks) == 1
    record = await store.get("org-a", chunks[0].id)
    assert record is not None
    assert record.text == SENTENCE
    assert record.modality == "audio"
    assert record.tag_ids == frozenset({"infra"})
    assert record.start_time == 0.0
    assert record.end_time == 100.0
    assert record.metadata["structure_type"] == "prose"
    assert record.metadata["duration_sec"] == 100
    assert await store.count("org-b") == 0


@pytest.mark.asyncio
async def test_reingesting_replaces_previous_chunks() -> None:
    pipeline, store, _ = _pipeline()

    first = await pipeline.ingest_document(_document(WITH_CODE))
    assert "code" in [chunk.structure_type for chunk in first]
    assert len(first) >= 2

    await pipeline.ingest_document(_document(SENTENCE))

    assert await store.count("org-a") == 1


@pytest.mark.asyncio
async def test_reingesting_a_transcript_keeps_its_frames() -> None:
    pipeline, store, _ = _pipeline()
    await pipeline.ingest_frames(
        "org-a", "rec-1", "Platform sync",
        [FrameDescription(frame_id="f1", time_sec=3.0, description="Retention dashboard")],
    )
    await pipeline.ingest_document(_document(WITH_CODE))

    chunks = await pipeline.ingest_document(_document(SENTENCE))

    assert await store.get("org-a", "rec-1-frame-f1") is not None
    assert await store.count("org-a") == len(chunks) + 1


@pytest.mark.asyncio
async def test_ingest_invalidates_cached_searches() -> None:
    pipeline, _, cache = _pipeline()
    await cache.set("query", {"results": []}, org_id="org-a", namespace="search:vector")
    await cache.set("query", {"results": []}, org_id="org-b", namespace="search:vector")

    await pipeline.ingest_document(_document(SENTENCE))

    async def compute() -> dict:
        return {"results": ["fresh"]}

    assert (await cache.get_with_layer("query", compute, org_id="org-a", namespace="search:vector"))[1] == "source"
    assert (await cache.get_with_layer("query", compute, org_id="org-b", namespace="search:vector"))[1] == "memory"


@pytest.mark.asyncio
async def test_frames_become_visual_records() -> None:
    pipeline, store, _ = _pipeline()

    records = await pipeline.ingest_frames(
        "org-a",
        "rec-1",
        "Platform sync",
        [
            FrameDescription(frame_id="f1", time_sec=12.5, description="Retention dashboard", ocr_text="7 days"),
            FrameDescription(frame_id="f2", time_sec=20.0, description="  "),
        ],
    )

    assert [record.chunk_id for record in records] == ["rec-1-frame-f1"]
    assert records[0].text == "Retention dashboard\nOn screen: 7 days"
    assert records[0].modality == "visual"
    assert records[0].start_time == records[0].end_time == 12.5
    assert records[0].metadata["has_ocr"] is True
    assert await store.count("org-a") == 1


@pytest.mark.asyncio
async def test_delete_source_and_validation() -> None:
    pipeline, store, _ = _pipeline()
    await pipeline.ingest_document(_document(WITH_CODE))

    removed = await pipeline.delete_source("org-a", "rec-1")

    assert removed >= 2
    assert await store.count() == 0
    with pytest.raises(ValidationError):
        await pipeline.delete_source("", "rec-1")
    with pytest.raises(ValidationError):
        await pipeline.ingest_document(SourceDocument(id=" ", org_id="org-a", title="t", text=SENTENCE))
