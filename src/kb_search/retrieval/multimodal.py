"""Weighted merging of audio-transcript and visual-frame search results."""

from __future__ import annotations

import asyncio
import dataclasses
import math

from kb_search.config import MultimodalConfig
from kb_search.errors import ValidationError
from kb_search.obs.observability import get_logger
from kb_search.obs.tracing import Timer
from kb_search.retrieval.search import MAX_LIMIT, SearchOptions, VectorSearchEngine, validate_query
from kb_search.types import MultimodalOutcome, SearchResult

logger = get_logger(__name__)


def validate_weights(audio_weight: float, visual_weight: float, tolerance: float = 1e-3) -> None:
    if not 0.0 <= audio_weight <= 1.0 or not 0.0 <= visual_weight <= 1.0:
        raise ValidationError("audioWeight and visualWeight must be within [0, 1]")
    if abs(audio_weight + visual_weight - 1.0) > tolerance:
        raise ValidationError("audioWeight and visualWeight must sum to 1.0")


class MultimodalMerger:
    """Combines per-modality hits into one ranking.

    An audio chunk and a visual frame from the same source pair up when the
    frame time falls inside the chunk's time span widened by
    `pair_window_seconds`; the pair scores `aw * audio + vw * visual`. Unpaired
    hits score their single weighted similarity. Each chunk id appears once.
    """

    def __init__(self, pair_window_seconds: float = 5.0, tolerance: float = 1e-3) -> None:
        self.pair_window_seconds = pair_window_seconds
        self.tolerance = tolerance

    def merge(
        self,
        audio_results: list[SearchResult],
        visual_results: list[SearchResult],
        audio_weight: float,
        visual_weight: float,
        *,
        limit: int = 10,
    ) -> list[SearchResult]:
        validate_weights(audio_weight, visual_weight, self.tolerance)
        audio = _dedupe(audio_results)
        visual = _dedupe(visual_results)

        paired: set[int] = set()
        combined: list[SearchResult] = []
        for hit in audio:
            match = self._best_frame(hit, visual, paired)
            if match is None:
                combined.append(
                    _weighted(hit, audio_weight * hit.similarity, ["audio"], audio_similarity=hit.similarity)
                )
                continue
            paired.add(match)
            frame = visual[match]
            score = audio_weight * hit.similarity + visual_weight * frame.similarity
            combined.append(
                _weighted(
                    hit,
                    score,
                    ["audio", "visual"],
                    audio_similarity=hit.similarity,
                    visual_similarity=frame.similarity,
                    visual_chunk_id=frame.chunk_id,
                    frame_time_sec=frame.timestamp,
                )
            )

        for index, frame in enumerate(visual):
            if index in paired:
                continue
            combined.append(
                _weighted(
                    frame,
                    visual_weight * frame.similarity,
                    ["visual"],
                    visual_similarity=frame.similarity,
                )
            )

        combined.sort(key=lambda result: (-result.similarity, result.timestamp or 0.0))
        return combined[:limit]

    def _best_frame(
        self, hit: SearchResult, frames: list[SearchResult], paired: set[int]
    ) -> int | None:
        if hit.timestamp is None:
            return None
        end = hit.metadata.get("end_time", hit.timestamp)
        low = hit.timestamp - self.pair_window_seconds
        high = float(end) + self.pair_window_seconds
        best: int | None = None
        for index, frame in enumerate(frames):
            if index in paired or frame.source_id != hit.source_id or frame.timestamp is None:
                continue
            if not low <= frame.timestamp <= high:
                continue
            if best is None or frame.similarity > frames[best].similarity:
                best = index
        return best


def _dedupe(results: list[SearchResult]) -> list[SearchResult]:
    best: dict[str, SearchResult] = {}
    for result in results:
        current = best.get(result.chunk_id)
        if current is None or result.similarity > current.similarity:
            best[result.chunk_id] = result
    return list(best.values())


def _weighted(
    result: SearchResult, score: float, modalities: list[str], **extra: object
) -> SearchResult:
    metadata = {**result.metadata, "modalities": modalities, **extra}
    return dataclasses.replace(result, similarity=min(1.0, max(0.0, score)), metadata=metadata)


class MultimodalSearch:
    """Runs audio and visual retrieval concurrently and merges the hits."""

    def __init__(
        self,
        engine: VectorSearchEngine,
        config: MultimodalConfig | None = None,
        merger: MultimodalMerger | None = None,
    ) -> None:
        self.engine = engine
        self.config = config or MultimodalConfig()
        self.merger = merger or MultimodalMerger(
            pair_window_seconds=self.config.dedup_window_seconds,
            tolerance=self.config.weight_tolerance,
        )

    async def search(
        self,
        query: str,
        options: SearchOptions,
        *,
        audio_weight: float | None = None,
        visual_weight: float | None = None,
    ) -> MultimodalOutcome:
        audio_weight = self.config.audio_weight if audio_weight is None else audio_weight
        visual_weight = self.config.visual_weight if visual_weight is None else visual_weight
        validate_weights(audio_weight, visual_weight, self.config.weight_tolerance)
        validate_query(query)
        options.validate()

        fetch_limit = min(MAX_LIMIT, math.ceil(options.limit * self.config.overfetch_factor))
        fetch_options = dataclasses.replace(options, limit=fetch_limit)

        with Timer() as timer:
            if self.config.visual_enabled:
                audio, visual = await asyncio.gather(
                    self.engine.search(query, fetch_options),
                    self.engine.search_visual(query, fetch_options),
                )
                results = self.merger.merge(
                    audio, visual, audio_weight, visual_weight, limit=options.limit
                )
                mode = "multimodal"
            else:
                audio = await self.engine.search(query, fetch_options)
                visual = []
                results = audio[: options.limit]
                mode = "audio"

        logger.info(
            "multimodal.complete",
            org_id=options.org_id,
            mode=mode,
            audio_count=len(audio),
            visual_count=len(visual),
            result_count=len(results),
        )
        return MultimodalOutcome(
            results=results,
            audio_count=len(audio),
            visual_count=len(visual),
            mode=mode,
            audio_weight=audio_weight,
            visual_weight=visual_weight,
            elapsed_ms=timer.elapsed_ms,
        )
