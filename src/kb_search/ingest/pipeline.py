"""Ingest pipeline: chunk -> embed -> upsert -> invalidate cached searches."""

from __future__ import annotations

from datetime import datetime, timezone

from kb_search.cache.multi_layer import MultiLayerCache
from kb_search.errors import ValidationError
from kb_search.ingest.chunker import SemanticChunker
from kb_search.ingest.embedder import EmbeddingProvider
from kb_search.obs.observability import get_logger
from kb_search.obs.tracing import Timer
from kb_search.retrieval.vector_store import ChunkStore
from kb_search.types import Chunk, ChunkRecord, FrameDescription, SourceDocument, as_utc

logger = get_logger(__name__)


class IngestPipeline:
    """Coordinates chunker, embedder and chunk store for one source at a time.

    Re-ingesting a source replaces its previous transcript chunks and leaves
    its frame records in place. Every write clears the
    organization's cached searches so stale results are not served.
    """

    def __init__(
        self,
        chunker: SemanticChunker,
        embedder: EmbeddingProvider,
        store: ChunkStore,
        cache: MultiLayerCache | None = None,
    ) -> None:
        self._chunker = chunker
        self._embedder = embedder
        self._store = store
        self._cache = cache

    async def ingest_document(self, document: SourceDocument) -> list[Chunk]:
        """Chunk and index a transcript or document; returns the created chunks."""

        _require_ids(document.org_id, document.id)
        with Timer() as timer:
            chunks = await self._chunker.chunk(document.text, document_id=document.id)
            embeddings = await self._embedder.embed_many([chunk.text for chunk in chunks])
            created_at = as_utc(document.created_at) or datetime.now(timezone.utc)
            duration = _as_duration(document.metadata.get("duration_sec"))
            records = [
                ChunkRecord(
                    org_id=document.org_id,
                    chunk_id=chunk.id,
                    source_id=document.id,
                    source_title=document.title,
                    text=chunk.text,
                    embedding=embedding,
                    modality="audio",
                    content_type=document.content_type,
                    created_at=created_at,
                    tag_ids=frozenset(document.tag_ids),
                    collection_ids=frozenset(document.collection_ids),
                    favorite=document.favorite,
                    start_time=_position(chunk.start_offset, len(document.text), duration),
                    end_time=_position(chunk.end_offset, len(document.text), duration),
                    metadata={
                        **document.metadata,
                        "structure_type": chunk.structure_type,
                        "boundary_type": chunk.boundary_type,
                        "token_count": chunk.token_count,
                    },
                )
                for chunk, embedding in zip(chunks, embeddings, strict=True)
            ]
            await self._store.delete_source(document.org_id, document.id, modality="audio")
            await self._store.upsert(records)
            await self._invalidate(document.org_id)

        logger.info(
            "ingest.document",
            org_id=document.org_id,
            source_id=document.id,
            chunks=len(chunks),
            elapsed_ms=round(timer.elapsed_ms, 2),
        )
        return chunks

    async def ingest_frames(
        self,
        org_id: str,
        source_id: str,
        title: str,
        frames: list[FrameDescription],
        *,
        content_type: str = "recording",
        created_at: datetime | None = None,
    ) -> list[ChunkRecord]:
        """Index frame descriptions (plus OCR text) as visual records of a source."""

        _require_ids(org_id, source_id)
        usable = [frame for frame in frames if frame.description.strip() or frame.ocr_text.strip()]
        texts = [_frame_text(frame) for frame in usable]
        embeddings = await self._embedder.embed_many(texts)
        stamp = as_utc(created_at) or datetime.now(timezone.utc)
        records = [
            ChunkRecord(
                org_id=org_id,
                chunk_id=f"{source_id}-frame-{frame.frame_id}",
                source_id=source_id,
                source_title=title,
                text=text,
                embedding=embedding,
                modality="visual",
                content_type=content_type,
                created_at=stamp,
                start_time=frame.time_sec,
                end_time=frame.time_sec,
                metadata={"frame_id": frame.frame_id, "has_ocr": bool(frame.ocr_text.strip())},
            )
            for frame, text, embedding in zip(usable, texts, embeddings, strict=True)
        ]
        await self._store.upsert(records)
        await self._invalidate(org_id)
        logger.info("ingest.frames", org_id=org_id, source_id=source_id, frames=len(records))
        return records

    async def delete_source(self, org_id: str, source_id: str) -> int:
        _require_ids(org_id, source_id)
        removed = await self._store.delete_source(org_id, source_id)
        await self._invalidate(org_id)
        logger.info("ingest.deleted", org_id=org_id, source_id=source_id, removed=removed)
        return removed

    async def _invalidate(self, org_id: str) -> None:
        if self._cache is not None:
            await self._cache.invalidate("*", org_id=org_id)


def _require_ids(org_id: str, source_id: str) -> None:
    if not org_id or not org_id.strip():
        raise ValidationError("org_id is required")
    if not source_id or not source_id.strip():
        raise ValidationError("source id is required")


def _frame_text(frame: FrameDescription) -> str:
    if frame.ocr_text.strip():
        return f"{frame.description.strip()}\nOn screen: {frame.ocr_text.strip()}".strip()
    return frame.description.strip()


def _as_duration(value: object) -> float | None:
    if isinstance(value, (int, float)) and value > 0:
        return float(value)
    return None


def _position(offset: int, length: int, duration: float | None) -> float | None:
    # Transcripts without timing data get no timestamps.
    if duration is None or length == 0:
        return None
    return round(duration * offset / length, 3)
