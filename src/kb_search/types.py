"""Core domain types for chunking, retrieval, and admission control."""

from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

StructureType = Literal["prose", "code", "list", "table"]
BoundaryType = Literal["semantic_break", "size_limit", "structure_boundary", "topic_shift"]
Modality = Literal["audio", "visual"]
SearchMode = Literal["vector", "hybrid", "multimodal", "agentic"]
QuotaResource = Literal["search", "recording", "api_call", "storage"]
QueryIntent = Literal["single_fact", "multi_part", "comparison", "exploration", "how_to"]
TagFilterMode = Literal["any", "all"]
CacheLayer = Literal["memory", "distributed", "source"]

QUOTA_RESOURCES: tuple[str, ...] = ("search", "recording", "api_call", "storage")


def as_utc(value: datetime | None) -> datetime | None:
    """Naive datetimes are taken to be UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True, slots=True)
class Chunk:
    """Contiguous slice of a source document.

    `text` is exactly `source[start_offset:end_offset]`.
    """

    id: str
    source_document_id: str
    text: str
    start_offset: int
    end_offset: int
    structure_type: StructureType
    semantic_score: float
    token_count: int
    boundary_type: BoundaryType

    def __post_init__(self) -> None:
        if self.start_offset >= self.end_offset:
            raise ValueError(
                f"chunk {self.id} has empty span [{self.start_offset}, {self.end_offset})"
            )


@dataclass(slots=True)
class SourceDocument:
    id: str
    org_id: str
    title: str
    text: str
    content_type: str = "recording"
    created_at: datetime | None = None
    tag_ids: list[str] = field(default_factory=list)
    collection_ids: list[str] = field(default_factory=list)
    favorite: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class FrameDescription:
    """Visual description of one video frame, produced upstream."""

    frame_id: str
    time_sec: float
    description: str
    ocr_text: str = ""


@dataclass(slots=True)
class ChunkRecord:
    """A stored chunk with its embedding and the attributes filters look at."""

    org_id: str
    chunk_id: str
    source_id: str
    source_title: str
    text: str
    embedding: list[float]
    modality: Modality = "audio"
    content_type: str = "recording"
    created_at: datetime | None = None
    tag_ids: frozenset[str] = frozenset()
    collection_ids: frozenset[str] = frozenset()
    favorite: bool = False
    start_time: float | None = None
    end_time: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ScoredChunk:
    record: ChunkRecord
    score: float
    route: str
    rank: int = 0


@dataclass(slots=True)
class SearchFilters:
    """Optional narrowing applied after the mandatory tenant check."""

    recording_ids: list[str] | None = None
    content_types: list[str] | None = None
    tag_ids: list[str] | None = None
    tag_filter_mode: TagFilterMode = "any"
    collection_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    favorites_only: bool = False

    def __post_init__(self) -> None:
        self.date_from = as_utc(self.date_from)
        self.date_to = as_utc(self.date_to)

    def matches(self, record: ChunkRecord) -> bool:
        if self.recording_ids and record.source_id not in self.recording_ids:
            return False
        if self.content_types and record.content_type not in self.content_types:
            return False
        if self.tag_ids:
            wanted = set(self.tag_ids)
            if self.tag_filter_mode == "all":
                if not wanted <= record.tag_ids:
                    return False
            elif not wanted & record.tag_ids:
                return False
        if self.collection_id and self.collection_id not in record.collection_ids:
            return False
        if self.date_from or self.date_to:
            created_at = as_utc(record.created_at)
            if created_at is None:
                return False
            if self.date_from and created_at < self.date_from:
                return False
            if self.date_to and created_at > self.date_to:
                return False
        if self.favorites_only and not record.favorite:
            return False
        return True


@dataclass(slots=True)
class SearchResult:
    chunk_id: str
    source_id: str
    source_title: str
    text: str
    similarity: float
    modality: Modality = "audio"
    timestamp: float | None = None
    created_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def with_similarity(self, similarity: float) -> "SearchResult":
        return dataclasses.replace(self, similarity=similarity)


@dataclass(slots=True)
class RerankHit:
    index: int
    relevance_score: float


@dataclass(slots=True)
class RerankOutcome:
    results: list[SearchResult]
    original_count: int
    reranked_count: int
    elapsed_ms: float
    cost_estimate: float
    applied: bool = False
    fallback_reason: str | None = None


@dataclass(slots=True)
class MultimodalOutcome:
    results: list[SearchResult]
    audio_count: int
    visual_count: int
    mode: Literal["multimodal", "audio"]
    audio_weight: float
    visual_weight: float
    elapsed_ms: float


@dataclass(slots=True)
class IntentClassification:
    intent: QueryIntent
    confidence: float
    complexity: int
    reasoning: str


@dataclass(slots=True)
class SubQuery:
    id: str
    text: str
    intent: QueryIntent = "single_fact"
    dependency: str | None = None
    priority: int = 3


@dataclass(slots=True)
class QueryDecomposition:
    original_query: str
    intent: QueryIntent
    complexity: int
    sub_queries: list[SubQuery]
    reasoning: str


@dataclass(slots=True)
class ResultEvaluation:
    chunk_id: str
    is_relevant: bool
    confidence: float
    reasoning: str


@dataclass(slots=True)
class EvaluationSummary:
    relevant: list[SearchResult]
    irrelevant: list[SearchResult]
    evaluations: list[ResultEvaluation]
    avg_confidence: float
    gaps_identified: list[str]
    needs_refinement: bool


@dataclass(slots=True)
class RetrievalIteration:
    iteration: int
    sub_query: SubQuery
    results_fetched: int
    reasoning: str
    confidence: float
    cumulative_confidence: float
    gaps: list[str] = field(default_factory=list)
    duration_ms: float = 0.0


@dataclass(slots=True)
class Citation:
    chunk_id: str
    source_id: str
    source_title: str
    sub_query_ids: list[str]
    sub_query_texts: list[str]


@dataclass(slots=True)
class AgenticResult:
    query: str
    intent: QueryIntent
    decomposition: QueryDecomposition
    iterations: list[RetrievalIteration]
    results: list[SearchResult]
    citation_map: dict[str, list[str]]
    reasoning: list[str]
    confidence: float
    states: list[str]
    reranked: bool
    duration_ms: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CacheEntry:
    key: str
    value: Any
    tenant_id: str
    inserted_at: float
    ttl_seconds: float

    def is_expired(self, now: float | None = None) -> bool:
        current = time.monotonic() if now is None else now
        return current - self.inserted_at >= self.ttl_seconds


@dataclass(slots=True)
class QuotaCounter:
    org_id: str
    resource: QuotaResource
    used: int
    limit: int
    window_start: datetime
    reset_at: datetime | None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


@dataclass(slots=True)
class QuotaCheck:
    allowed: bool
    resource: str
    used: int
    limit: int
    remaining: int
    reset_at: datetime | None
    message: str | None = None


@dataclass(slots=True)
class RateLimitWindow:
    actor_id: str
    resource: str
    timestamps: list[float] = field(default_factory=list)


@dataclass(slots=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: float
    retry_after: float | None = None
