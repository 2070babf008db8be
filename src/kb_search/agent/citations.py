"""Provenance tracking from retrieved chunks back to the sub-queries that found them."""

from __future__ import annotations

from kb_search.types import Citation, SearchResult, SubQuery


class CitationTracker:
    def __init__(self) -> None:
        self._sub_queries: dict[str, SubQuery] = {}
        self._chunks: dict[str, SearchResult] = {}
        self._chunk_to_sub_queries: dict[str, list[str]] = {}

    def register_sub_query(self, sub_query: SubQuery) -> None:
        self._sub_queries[sub_query.id] = sub_query

    def add_chunk(self, result: SearchResult, sub_query_id: str) -> None:
        current = self._chunks.get(result.chunk_id)
        if current is None or result.similarity > current.similarity:
            self._chunks[result.chunk_id] = result
        refs = self._chunk_to_sub_queries.setdefault(result.chunk_id, [])
        if sub_query_id not in refs:
            refs.append(sub_query_id)

    def get_sub_queries_for_chunk(self, chunk_id: str) -> list[SubQuery]:
        return [
            self._sub_queries[sub_query_id]
            for sub_query_id in self._chunk_to_sub_queries.get(chunk_id, [])
            if sub_query_id in self._sub_queries
        ]

    def get_chunks_for_sub_query(self, sub_query_id: str) -> list[SearchResult]:
        return [
            self._chunks[chunk_id]
            for chunk_id, refs in self._chunk_to_sub_queries.items()
            if sub_query_id in refs
        ]

    def citation_map(self) -> dict[str, list[str]]:
        return {chunk_id: list(refs) for chunk_id, refs in self._chunk_to_sub_queries.items()}

    def citations(self) -> list[Citation]:
        citations: list[Citation] = []
        for chunk_id, result in self._chunks.items():
            sub_queries = self.get_sub_queries_for_chunk(chunk_id)
            citations.append(
                Citation(
                    chunk_id=chunk_id,
                    source_id=result.source_id,
                    source_title=result.source_title,
                    sub_query_ids=[sub_query.id for sub_query in sub_queries],
                    sub_query_texts=[sub_query.text for sub_query in sub_queries],
                )
            )
        return citations

    def best_results(self) -> list[SearchResult]:
        """Every tracked chunk once, at its best similarity, best first."""
        return sorted(self._chunks.values(), key=lambda result: result.similarity, reverse=True)

    def stats(self) -> dict[str, float | int]:
        ref_counts = [len(refs) for refs in self._chunk_to_sub_queries.values()]
        return {
            "total_sub_queries": len(self._sub_queries),
            "total_chunks": len(self._chunks),
            "multi_source_chunks": sum(1 for count in ref_counts if count > 1),
            "avg_sub_queries_per_chunk": (sum(ref_counts) / len(ref_counts)) if ref_counts else 0.0,
        }
