"""Score fusion for hybrid (vector + lexical) retrieval."""

from __future__ import annotations

from kb_search.ingest.embedder import cosine_similarity
from kb_search.retrieval.vector_store import lexical_overlap
from kb_search.types import ChunkRecord, ScoredChunk


class HybridFusion:
    """Linear fusion of vector similarity and lexical term coverage.

    `fused = w * vector + (1 - w) * lexical`, both components in [0, 1].
    Candidates come from the union of the vector and keyword routes, so each
    component is recomputed for every candidate rather than defaulting to 0
    for the route that did not return it.
    """

    def __init__(self, vector_weight: float = 0.7) -> None:
        if not 0.0 <= vector_weight <= 1.0:
            raise ValueError("vector_weight must be within [0, 1]")
        self.vector_weight = vector_weight

    def fuse(
        self,
        candidates: list[ChunkRecord],
        *,
        query_embedding: list[float],
        terms: list[str],
    ) -> list[ScoredChunk]:
        fused: list[ScoredChunk] = []
        for record in candidates:
            vector = max(0.0, cosine_similarity(query_embedding, record.embedding))
            lexical = lexical_overlap(terms, record.text)
            score = self.vector_weight * vector + (1.0 - self.vector_weight) * lexical
            fused.append(ScoredChunk(record=record, score=min(1.0, score), route="hybrid"))

        ranked = sorted(
            fused,
            key=lambda item: (
                -item.score,
                -(item.record.created_at.timestamp() if item.record.created_at else 0.0),
            ),
        )
        return [
            ScoredChunk(record=item.record, score=item.score, route=item.route, rank=i + 1)
            for i, item in enumerate(ranked)
        ]
