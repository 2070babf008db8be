"""Agentic retrieval: decompose, retrieve, reflect, rerank."""

from __future__ import annotations

import asyncio
import dataclasses
import math
import time

from kb_search.agent.citations import CitationTracker
from kb_search.agent.decomposition import QueryDecomposer, plan_execution_order
from kb_search.agent.evaluator import ResultEvaluator
from kb_search.config import AgenticConfig
from kb_search.errors import ProviderError, ValidationError
from kb_search.obs.observability import get_logger
from kb_search.obs.tracing import Timer
from kb_search.retrieval.reranker import Reranker
from kb_search.retrieval.search import MAX_LIMIT, SearchOptions, VectorSearchEngine, validate_query
from kb_search.types import (
    AgenticResult,
    QueryDecomposition,
    RetrievalIteration,
    SearchResult,
    SubQuery,
)

logger = get_logger(__name__)


class AgenticRetrievalOrchestrator:
    """Runs the bounded decompose/retrieve/reflect loop for complex queries.

    States move `decomposing -> retrieving -> reflecting -> ... -> reranking ->
    done`, and the visited sequence is returned with the result. Each sub-query
    retrieval counts as one iteration, and the loop never runs more than
    `max_iterations` of them, including refinement sub-queries added by
    reflection. Sub-queries in the same dependency batch are retrieved
    concurrently.

    Failure handling:
    - a provider failure while decomposing degrades to the original query as
      the only sub-query;
    - an error raised by reflection ends the loop with what was accumulated;
    - rerank failures are absorbed by the reranker itself;
    - retrieval failures (the query cannot be embedded) propagate.
    """

    def __init__(
        self,
        engine: VectorSearchEngine,
        *,
        decomposer: QueryDecomposer | None = None,
        evaluator: ResultEvaluator | None = None,
        reranker: Reranker | None = None,
        config: AgenticConfig | None = None,
    ) -> None:
        self.engine = engine
        self.config = config or AgenticConfig()
        self.decomposer = decomposer or QueryDecomposer(max_subqueries=self.config.max_subqueries)
        self.evaluator = evaluator or ResultEvaluator(
            confidence_threshold=self.config.confidence_threshold
        )
        self.reranker = reranker

    async def run(
        self,
        query: str,
        options: SearchOptions,
        *,
        max_iterations: int | None = None,
        enable_self_reflection: bool | None = None,
        enable_reranking: bool = False,
        threshold: float | None = None,
    ) -> AgenticResult:
        query = validate_query(query)
        options.validate()
        budget = self.config.max_iterations if max_iterations is None else max_iterations
        if not 1 <= budget <= 10:
            raise ValidationError("maxIterations must be between 1 and 10")
        reflect = (
            self.config.enable_self_reflection
            if enable_self_reflection is None
            else enable_self_reflection
        )
        fetch_options = dataclasses.replace(
            options,
            limit=min(MAX_LIMIT, math.ceil(options.limit * self.config.overfetch_factor)),
            threshold=self.config.threshold if threshold is None else threshold,
        )

        started = time.perf_counter()
        states = ["decomposing"]
        decomposition = await self._decompose(query)

        tracker = CitationTracker()
        for sub_query in decomposition.sub_queries:
            tracker.register_sub_query(sub_query)
        pending = plan_execution_order(decomposition.sub_queries)
        asked = {sub_query.text.lower() for sub_query in decomposition.sub_queries}

        iterations: list[RetrievalIteration] = []
        reasoning: list[str] = [f"Intent: {decomposition.intent}. {decomposition.reasoning}"]
        cumulative = 0.0
        refinements = 0
        stop_reason = "plan_complete"

        while pending:
            if len(iterations) >= budget:
                stop_reason = "max_iterations"
                break
            batch = pending.pop(0)[: budget - len(iterations)]
            states.append("retrieving")
            fetched = await asyncio.gather(
                *(self._retrieve(sub_query, fetch_options) for sub_query in batch)
            )

            batch_iterations: list[RetrievalIteration] = []
            for sub_query, (results, elapsed_ms) in zip(batch, fetched, strict=True):
                for result in results:
                    tracker.add_chunk(result, sub_query.id)
                confidence = _mean_similarity(results)
                iteration = RetrievalIteration(
                    iteration=len(iterations) + 1,
                    sub_query=sub_query,
                    results_fetched=len(results),
                    reasoning=f"Retrieved {len(results)} chunks for '{sub_query.text}'",
                    confidence=confidence,
                    cumulative_confidence=0.0,
                    duration_ms=elapsed_ms,
                )
                iterations.append(iteration)
                batch_iterations.append(iteration)
                reasoning.append(
                    f"{iteration.iteration}. {sub_query.text} -> {len(results)} chunks "
                    f"(confidence: {confidence * 100:.0f}%)"
                )

            accumulated = tracker.best_results()[: options.limit]
            if not reflect:
                cumulative = _mean_similarity(accumulated)
                for iteration in batch_iterations:
                    iteration.cumulative_confidence = cumulative
                continue

            states.append("reflecting")
            try:
                summary = await self.evaluator.evaluate(query, accumulated)
            except Exception as exc:  # noqa: BLE001 - reflection failure keeps accumulated results
                logger.warning("agentic.reflection_failed", error=str(exc))
                cumulative = _mean_similarity(accumulated)
                for iteration in batch_iterations:
                    iteration.cumulative_confidence = cumulative
                reasoning.append("Reflection failed; returning accumulated results")
                stop_reason = "reflection_failed"
                break

            cumulative = summary.avg_confidence
            for iteration in batch_iterations:
                iteration.cumulative_confidence = cumulative
                iteration.gaps = list(summary.gaps_identified)

            if (
                not summary.needs_refinement
                and not summary.gaps_identified
                and cumulative >= self.config.confidence_stop
            ):
                stop_reason = "confident"
                reasoning.append(f"Confidence {cumulative * 100:.0f}% reached; stopping early")
                break

            if summary.needs_refinement and not pending and len(iterations) < budget:
                refined = self.evaluator.refine_query(query, summary)
                if refined and refined.lower() not in asked:
                    asked.add(refined.lower())
                    refinements += 1
                    refinement = SubQuery(
                        id=f"r{refinements}", text=refined, intent="exploration", priority=1
                    )
                    tracker.register_sub_query(refinement)
                    pending.append([refinement])
                    reasoning.append(f"Refinement {refinements}: searching '{refined}' to cover gaps")

        candidates = tracker.best_results()
        final: list[SearchResult] = candidates[: options.limit]
        reranked = False
        if enable_reranking and self.reranker is not None and self.reranker.is_configured and candidates:
            states.append("reranking")
            outcome = await self.reranker.rerank(query, candidates, top_n=options.limit)
            final = outcome.results
            reranked = outcome.applied
        states.append("done")

        duration_ms = (time.perf_counter() - started) * 1000.0
        stats = tracker.stats()
        logger.info(
            "agentic.complete",
            org_id=options.org_id,
            iterations=len(iterations),
            refinements=refinements,
            result_count=len(final),
            stop_reason=stop_reason,
            duration_ms=round(duration_ms, 2),
        )
        return AgenticResult(
            query=query,
            intent=decomposition.intent,
            decomposition=decomposition,
            iterations=iterations,
            results=final,
            citation_map=tracker.citation_map(),
            reasoning=reasoning,
            confidence=cumulative,
            states=states,
            reranked=reranked,
            duration_ms=duration_ms,
            metadata={
                "iteration_count": len(iterations),
                "chunks_retrieved": stats["total_chunks"],
                "refinements": refinements,
                "sub_queries_executed": [iteration.sub_query.id for iteration in iterations],
                "stop_reason": stop_reason,
                "citations": [dataclasses.asdict(c) for c in tracker.citations()],
            },
        )

    async def _decompose(self, query: str) -> QueryDecomposition:
        try:
            return await self.decomposer.decompose(query)
        except ProviderError as exc:
            logger.warning("agentic.decomposition_failed", error=str(exc))
            return QueryDecomposition(
                original_query=query,
                intent="single_fact",
                complexity=1,
                sub_queries=[SubQuery(id="q1", text=query, priority=1)],
                reasoning="Fallback: decomposition unavailable, searching the original query",
            )

    async def _retrieve(
        self, sub_query: SubQuery, options: SearchOptions
    ) -> tuple[list[SearchResult], float]:
        with Timer() as timer:
            results = await self.engine.search(sub_query.text, options)
        return results, timer.elapsed_ms


def _mean_similarity(results: list[SearchResult]) -> float:
    if not results:
        return 0.0
    return sum(result.similarity for result in results) / len(results)
