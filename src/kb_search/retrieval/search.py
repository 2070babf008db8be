"""Vector and hybrid search over the tenant's chunk store."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Literal

from kb_search.config import SearchConfig
from kb_search.errors import ProviderError, RetrievalError, ValidationError
from kb_search.ingest.embedder import EmbeddingProvider
from kb_search.obs.observability import get_logger
from kb_search.obs.tracing import Timer
from kb_search.retrieval.fusion import HybridFusion
from kb_search.retrieval.vector_store import ChunkStore, query_terms
from kb_search.types import Modality, ScoredChunk, SearchFilters, SearchResult

logger = get_logger(__name__)

MAX_LIMIT = 100


@dataclass(slots=True)
class SearchOptions:
    org_id: str
    limit: int = 10
    threshold: float = 0.7
    mode: Literal["vector", "hybrid"] = "vector"
    filters: SearchFilters = field(default_factory=SearchFilters)

    def validate(self) -> None:
        if not self.org_id or not self.org_id.strip():
            raise ValidationError("org_id is required")
        if not 1 <= self.limit <= MAX_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_LIMIT}")
        if not 0.0 <= self.threshold <= 1.0:
            raise ValidationError("threshold must be between 0 and 1")
        if self.mode not in ("vector", "hybrid"):
            raise ValidationError(f"unsupported search mode: {self.mode}")
        filters = self.filters
        if filters.date_from and filters.date_to and filters.date_from > filters.date_to:
            raise ValidationError("date_from must not be after date_to")
        if filters.tag_filter_mode not in ("any", "all"):
            raise ValidationError("tag_filter_mode must be 'any' or 'all'")


def validate_query(query: str) -> str:
    if not query or not query.strip():
        raise ValidationError("Query cannot be empty")
    return query.strip()


class VectorSearchEngine:
    """Embeds a query and retrieves matching chunks for one organization."""

    def __init__(
        self,
        store: ChunkStore,
        embedder: EmbeddingProvider,
        config: SearchConfig | None = None,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.config = config or SearchConfig()
        self.fusion = HybridFusion(self.config.hybrid_vector_weight)

    async def search(self, query: str, options: SearchOptions) -> list[SearchResult]:
        """Return results ordered by descending similarity, all >= threshold."""
        return await self._search(query, options, modality="audio")

    async def search_visual(self, query: str, options: SearchOptions) -> list[SearchResult]:
        """Same as `search` but over visual frame descriptions."""
        return await self._search(query, options, modality="visual")

    async def find_similar(
        self,
        org_id: str,
        chunk_id: str,
        *,
        limit: int = 5,
        threshold: float = 0.6,
    ) -> list[SearchResult]:
        """Chunks of the same org most similar to an existing chunk, excluding it."""

        SearchOptions(org_id=org_id, limit=limit, threshold=threshold).validate()
        record = await self.store.get(org_id, chunk_id)
        if record is None:
            return []
        hits = await self.store.similarity_search(
            org_id,
            record.embedding,
            limit=limit + 1,
            threshold=threshold,
            modality=record.modality,
        )
        return [_to_result(hit) for hit in hits if hit.record.chunk_id != chunk_id][:limit]

    async def _search(
        self, query: str, options: SearchOptions, *, modality: Modality
    ) -> list[SearchResult]:
        query = validate_query(query)
        options.validate()

        with Timer() as timer:
            embedding = await self._embed_query(query)
            if options.mode == "hybrid":
                hits = await self._hybrid(query, embedding, options, modality)
            else:
                hits = await self.store.similarity_search(
                    options.org_id,
                    embedding,
                    limit=options.limit,
                    threshold=options.threshold,
                    filters=options.filters,
                    modality=modality,
                )

        results = [_to_result(hit) for hit in hits]
        logger.info(
            "search.complete",
            org_id=options.org_id,
            mode=options.mode,
            modality=modality,
            result_count=len(results),
            elapsed_ms=round(timer.elapsed_ms, 2),
        )
        return results

    async def _hybrid(
        self,
        query: str,
        embedding: list[float],
        options: SearchOptions,
        modality: Modality,
    ) -> list[ScoredChunk]:
        pool = options.limit * self.config.hybrid_candidate_factor
        terms = query_terms(query)
        vector_hits, keyword_hits = await asyncio.gather(
            self.store.similarity_search(
                options.org_id,
                embedding,
                limit=pool,
                threshold=0.0,
                filters=options.filters,
                modality=modality,
            ),
            self.store.keyword_search(
                options.org_id,
                terms,
                limit=pool,
                filters=options.filters,
                modality=modality,
            ),
        )
        candidates = {hit.record.chunk_id: hit.record for hit in (*vector_hits, *keyword_hits)}
        fused = self.fusion.fuse(list(candidates.values()), query_embedding=embedding, terms=terms)
        return [hit for hit in fused if hit.score >= options.threshold][: options.limit]

    async def _embed_query(self, query: str) -> list[float]:
        try:
            return await self.embedder.embed(query)
        except ProviderError as exc:
            logger.error("search.embedding_failed", error=str(exc), provider=exc.provider)
            raise RetrievalError(f"Failed to embed query: {exc.message}") from exc


def _to_result(hit: ScoredChunk) -> SearchResult:
    record = hit.record
    metadata = dict(record.metadata)
    metadata["rank"] = hit.rank
    metadata["route"] = hit.route
    if record.end_time is not None:
        metadata["end_time"] = record.end_time
    return SearchResult(
        chunk_id=record.chunk_id,
        source_id=record.source_id,
        source_title=record.source_title,
        text=record.text,
        similarity=min(1.0, max(0.0, hit.score)),
        modality=record.modality,
        timestamp=record.start_time,
        created_at=record.created_at,
        metadata=metadata,
    )
