"""Relevance evaluation of retrieved results for the reflection step."""

from __future__ import annotations

from typing import Any

from langchain_core.prompts import ChatPromptTemplate

from kb_search.agent.llm import invoke_json
from kb_search.errors import ProviderError
from kb_search.obs.observability import get_logger
from kb_search.retrieval.vector_store import lexical_overlap, query_terms
from kb_search.types import EvaluationSummary, ResultEvaluation, SearchResult

logger = get_logger(__name__)

NO_RESULTS_GAP = "No results retrieved"
FALLBACK_CONFIDENCE = 0.7

_EVALUATE_SYSTEM_PROMPT = """
You judge whether retrieved passages help answer a query.

For every passage decide if it is relevant and how confident you are (0..1).
List information the query asks for that no passage provides as "gaps".
Respond with JSON only, no prose:
{{"evaluations": [{{"index": 0, "relevant": true, "confidence": 0.9, "reasoning": "<short>"}}],
 "gaps": ["<missing information>"], "needsRefinement": false}}
""".strip()

EVALUATE_PROMPT = ChatPromptTemplate.from_messages(
    [("system", _EVALUATE_SYSTEM_PROMPT), ("human", "Query: {query}\n\nPassages:\n{passages}")]
)


class ResultEvaluator:
    """Scores results against the query and reports coverage gaps.

    With a chat model the model judges each passage; a failed call or an
    unusable answer yields the fallback evaluation (everything relevant at
    0.7 confidence). Without a model, confidence blends the result's
    similarity with how many query terms it covers.
    """

    def __init__(
        self,
        llm: Any | None = None,
        *,
        confidence_threshold: float = 0.7,
        relevance_floor: float = 0.35,
        max_passage_chars: int = 500,
    ) -> None:
        self.llm = llm
        self.confidence_threshold = confidence_threshold
        self.relevance_floor = relevance_floor
        self.max_passage_chars = max_passage_chars

    async def evaluate(self, query: str, results: list[SearchResult]) -> EvaluationSummary:
        if not results:
            return EvaluationSummary(
                relevant=[],
                irrelevant=[],
                evaluations=[],
                avg_confidence=0.0,
                gaps_identified=[NO_RESULTS_GAP],
                needs_refinement=True,
            )
        if self.llm is None:
            return self._evaluate_heuristically(query, results)

        passages = "\n".join(
            f"[{index}] {result.text[: self.max_passage_chars]}"
            for index, result in enumerate(results)
        )
        try:
            payload = await invoke_json(self.llm, EVALUATE_PROMPT, query=query, passages=passages)
        except ProviderError as exc:
            logger.warning("evaluation.llm_failed", error=str(exc))
            return _fallback(results)
        if not isinstance(payload, dict) or not isinstance(payload.get("evaluations"), list):
            return _fallback(results)
        return self._from_payload(payload, results)

    def refine_query(self, query: str, summary: EvaluationSummary) -> str | None:
        """Propose a follow-up sub-query aimed at the reported gaps."""

        if not summary.relevant and NO_RESULTS_GAP in summary.gaps_identified:
            return None
        covered = " ".join(result.text for result in summary.relevant)
        missing = [term for term in query_terms(query) if lexical_overlap([term], covered) == 0.0]
        if missing:
            return " ".join(missing)
        for gap in summary.gaps_identified:
            if gap != NO_RESULTS_GAP and not gap.startswith("No results mention"):
                return gap
        return None

    def _evaluate_heuristically(self, query: str, results: list[SearchResult]) -> EvaluationSummary:
        terms = query_terms(query)
        evaluations: list[ResultEvaluation] = []
        relevant: list[SearchResult] = []
        irrelevant: list[SearchResult] = []
        for result in results:
            coverage = lexical_overlap(terms, result.text) if terms else 1.0
            confidence = 0.6 * result.similarity + 0.4 * coverage
            is_relevant = confidence >= self.relevance_floor
            evaluations.append(
                ResultEvaluation(
                    chunk_id=result.chunk_id,
                    is_relevant=is_relevant,
                    confidence=round(confidence, 4),
                    reasoning=f"similarity {result.similarity:.2f}, term coverage {coverage:.2f}",
                )
            )
            (relevant if is_relevant else irrelevant).append(result)

        covered = " ".join(result.text for result in relevant)
        gaps = [
            f"No results mention '{term}'"
            for term in terms
            if lexical_overlap([term], covered) == 0.0
        ]
        avg_confidence = sum(item.confidence for item in evaluations) / len(evaluations)
        return EvaluationSummary(
            relevant=relevant,
            irrelevant=irrelevant,
            evaluations=evaluations,
            avg_confidence=avg_confidence,
            gaps_identified=gaps,
            needs_refinement=avg_confidence < self.confidence_threshold or bool(gaps),
        )

    def _from_payload(
        self, payload: dict[str, Any], results: list[SearchResult]
    ) -> EvaluationSummary:
        evaluations: list[ResultEvaluation] = []
        relevant: list[SearchResult] = []
        irrelevant: list[SearchResult] = []
        judged: set[int] = set()
        for item in payload["evaluations"]:
            if not isinstance(item, dict):
                continue
            try:
                index = int(item.get("index", -1))
                confidence = max(0.0, min(1.0, float(item.get("confidence", 0.0))))
            except (TypeError, ValueError):
                continue
            is_relevant = bool(item.get("relevant", False))
            in_range = 0 <= index < len(results)
            evaluations.append(
                ResultEvaluation(
                    chunk_id=results[index].chunk_id if in_range else "",
                    is_relevant=is_relevant,
                    confidence=confidence,
                    reasoning=str(item.get("reasoning", "")),
                )
            )
            if in_range and index not in judged:
                judged.add(index)
                (relevant if is_relevant else irrelevant).append(results[index])

        gaps = [str(gap) for gap in payload.get("gaps", []) if str(gap).strip()]
        avg_confidence = (
            sum(item.confidence for item in evaluations) / len(evaluations) if evaluations else 0.0
        )
        needs_refinement = bool(
            payload.get("needsRefinement", avg_confidence < self.confidence_threshold)
        )
        return EvaluationSummary(
            relevant=relevant,
            irrelevant=irrelevant,
            evaluations=evaluations,
            avg_confidence=avg_confidence,
            gaps_identified=gaps,
            needs_refinement=needs_refinement or avg_confidence < self.confidence_threshold,
        )


def _fallback(results: list[SearchResult]) -> EvaluationSummary:
    return EvaluationSummary(
        relevant=list(results),
        irrelevant=[],
        evaluations=[
            ResultEvaluation(
                chunk_id=result.chunk_id,
                is_relevant=True,
                confidence=FALLBACK_CONFIDENCE,
                reasoning="Fallback evaluation",
            )
            for result in results
        ],
        avg_confidence=FALLBACK_CONFIDENCE,
        gaps_identified=[],
        needs_refinement=False,
    )
