"""Chunk store interface and in-memory implementation."""

from __future__ import annotations

import re
from typing import Protocol

from kb_search.ingest.embedder import cosine_similarity
from kb_search.types import ChunkRecord, Modality, ScoredChunk, SearchFilters

_WORD = re.compile(r"\w+", flags=re.UNICODE)

STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "do", "does", "for",
        "from", "how", "i", "in", "is", "it", "of", "on", "or", "the", "to",
        "was", "what", "when", "where", "which", "who", "why", "with",
    }
)


def query_terms(text: str) -> list[str]:
    """Distinct lowercase terms of `text` with stopwords removed, in order."""

    seen: dict[str, None] = {}
    for token in _WORD.findall(text.lower()):
        if token not in STOPWORDS:
            seen.setdefault(token, None)
    return list(seen)


def lexical_overlap(terms: list[str], text: str) -> float:
    """Share of distinct query terms that occur in `text`."""

    if not terms:
        return 0.0
    wanted = set(terms)
    present = wanted & set(_WORD.findall(text.lower()))
    return len(present) / len(wanted)


class ChunkStore(Protocol):
    """Persistence contract for embedded chunks.

    Every read takes the caller's `org_id` and must never return a record of
    another organization, whatever the filters say.
    """

    async def upsert(self, records: list[ChunkRecord]) -> None:
        """Insert or replace records by `(org_id, chunk_id)`."""

    async def similarity_search(
        self,
        org_id: str,
        query_embedding: list[float],
        *,
        limit: int,
        threshold: float,
        filters: SearchFilters | None = None,
        modality: Modality = "audio",
    ) -> list[ScoredChunk]:
        """Return up to `limit` records with cosine similarity >= `threshold`."""

    async def keyword_search(
        self,
        org_id: str,
        terms: list[str],
        *,
        limit: int,
        filters: SearchFilters | None = None,
        modality: Modality = "audio",
    ) -> list[ScoredChunk]:
        """Return records containing query terms, scored by term coverage."""

    async def get(self, org_id: str, chunk_id: str) -> ChunkRecord | None:
        """Fetch one record of `org_id`."""

    async def delete_source(
        self, org_id: str, source_id: str, *, modality: Modality | None = None
    ) -> int:
        """Delete records of a source, optionally of one modality, and return how many were removed."""

    async def count(self, org_id: str | None = None) -> int:
        """Number of stored records, optionally for one org."""


class InMemoryChunkStore:
    """Deterministic chunk store used for tests and local runs."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], ChunkRecord] = {}

    async def upsert(self, records: list[ChunkRecord]) -> None:
        for record in records:
            self._records[(record.org_id, record.chunk_id)] = record

    async def similarity_search(
        self,
        org_id: str,
        query_embedding: list[float],
        *,
        limit: int,
        threshold: float,
        filters: SearchFilters | None = None,
        modality: Modality = "audio",
    ) -> list[ScoredChunk]:
        scored = [
            ScoredChunk(
                record=record,
                score=cosine_similarity(query_embedding, record.embedding),
                route="vector",
            )
            for record in self._candidates(org_id, filters, modality)
        ]
        ranked = sorted(
            (item for item in scored if item.score >= threshold),
            key=_ranking_key,
        )
        return [
            ScoredChunk(record=item.record, score=item.score, route=item.route, rank=i + 1)
            for i, item in enumerate(ranked[:limit])
        ]

    async def keyword_search(
        self,
        org_id: str,
        terms: list[str],
        *,
        limit: int,
        filters: SearchFilters | None = None,
        modality: Modality = "audio",
    ) -> list[ScoredChunk]:
        if not terms:
            return []
        scored: list[ScoredChunk] = []
        for record in self._candidates(org_id, filters, modality):
            score = lexical_overlap(terms, record.text)
            if score > 0.0:
                scored.append(ScoredChunk(record=record, score=score, route="keyword"))
        ranked = sorted(scored, key=_ranking_key)
        return [
            ScoredChunk(record=item.record, score=item.score, route=item.route, rank=i + 1)
            for i, item in enumerate(ranked[:limit])
        ]

    async def get(self, org_id: str, chunk_id: str) -> ChunkRecord | None:
        return self._records.get((org_id, chunk_id))

    async def delete_source(
        self, org_id: str, source_id: str, *, modality: Modality | None = None
    ) -> int:
        doomed = [
            key
            for key, record in self._records.items()
            if record.org_id == org_id
            and record.source_id == source_id
            and (modality is None or record.modality == modality)
        ]
        for key in doomed:
            del self._records[key]
        return len(doomed)

    async def count(self, org_id: str | None = None) -> int:
        if org_id is None:
            return len(self._records)
        return sum(1 for record in self._records.values() if record.org_id == org_id)

    def _candidates(
        self, org_id: str, filters: SearchFilters | None, modality: Modality
    ) -> list[ChunkRecord]:
        return [
            record
            for record in self._records.values()
            if record.org_id == org_id
            and record.modality == modality
            and (filters is None or filters.matches(record))
        ]


def _ranking_key(item: ScoredChunk) -> tuple[float, float]:
    created = item.record.created_at.timestamp() if item.record.created_at else 0.0
    return (-item.score, -created)
