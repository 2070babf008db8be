"""Query decomposition into sub-queries and dependency-ordered execution plans."""

from __future__ import annotations

import re
from typing import Any

from langchain_core.prompts import ChatPromptTemplate

from kb_search.agent.intent import INTENTS, QueryIntentClassifier
from kb_search.agent.llm import invoke_json
from kb_search.obs.observability import get_logger
from kb_search.types import IntentClassification, QueryDecomposition, SubQuery

logger = get_logger(__name__)

_DECOMPOSE_SYSTEM_PROMPT = """
You break a complex search query into at most {max_subqueries} focused sub-queries
that can each be answered by searching transcripts and documents.

Rules:
1) Each sub-query must be self-contained and searchable on its own.
2) Use "dependency" only when a sub-query needs another one answered first.
3) priority: 1 = most important, 5 = least important.
Respond with JSON only, no prose:
{{"subQueries": [{{"id": "q1", "query": "...", "intent": "single_fact", "dependency": null, "priority": 1}}],
 "reasoning": "<short>"}}
""".strip()

DECOMPOSE_PROMPT = ChatPromptTemplate.from_messages(
    [
        ("system", _DECOMPOSE_SYSTEM_PROMPT),
        ("human", "Query: {query}\nIntent: {intent}\nComplexity: {complexity}"),
    ]
)

_COMPARISON_PAIR = re.compile(
    r"(?:differences? between|compare|comparing)\s+(?P<a>.+?)\s+(?:and|with|to|vs\.?|versus)\s+"
    r"(?P<b>.+?)[?.!]*$",
    flags=re.IGNORECASE,
)
_VERSUS_PAIR = re.compile(
    r"^(?P<a>.+?)\s+(?:vs\.?|versus)\s+(?P<b>.+?)[?.!]*$", flags=re.IGNORECASE
)
_LEAD_VERB = re.compile(
    r"^\s*(tell me about|explain|describe|what is|what are|give me an overview of)\s+",
    flags=re.IGNORECASE,
)
_HOW_TO_TOPIC = re.compile(
    r"^\s*how (?:to|do i|do we|do you|can i|can we|should i|should we)\s+(?P<topic>.+?)[?.!]*$",
    flags=re.IGNORECASE,
)
_LIST_SPLIT = re.compile(r"\s*,\s*(?:and\s+)?|\s+and\s+", flags=re.IGNORECASE)


class QueryDecomposer:
    """Turns a query into sub-queries sized for one retrieval step each."""

    def __init__(
        self,
        classifier: QueryIntentClassifier | None = None,
        *,
        llm: Any | None = None,
        max_subqueries: int = 5,
    ) -> None:
        self.classifier = classifier or QueryIntentClassifier(llm)
        self.llm = llm
        self.max_subqueries = max_subqueries

    async def decompose(self, query: str) -> QueryDecomposition:
        intent = await self.classifier.classify(query)
        if intent.intent == "single_fact" or intent.complexity <= 2:
            return _single(query, intent, "Simple query, no decomposition needed")

        if self.llm is not None:
            payload = await invoke_json(
                self.llm,
                DECOMPOSE_PROMPT,
                query=query,
                intent=intent.intent,
                complexity=intent.complexity,
                max_subqueries=self.max_subqueries,
            )
            sub_queries = _sanitize(payload, self.max_subqueries)
            if not sub_queries:
                logger.warning("decomposition.fallback", query=query)
                return _single(query, intent, "Fallback: decomposition output was not usable")
            reasoning = payload.get("reasoning", "") if isinstance(payload, dict) else ""
            return QueryDecomposition(
                original_query=query,
                intent=intent.intent,
                complexity=intent.complexity,
                sub_queries=sub_queries,
                reasoning=str(reasoning) or "Decomposed by language model",
            )

        sub_queries = _heuristic_sub_queries(query, intent)[: self.max_subqueries]
        if len(sub_queries) <= 1:
            return _single(query, intent, "No separable parts found, no decomposition needed")
        return QueryDecomposition(
            original_query=query,
            intent=intent.intent,
            complexity=intent.complexity,
            sub_queries=sub_queries,
            reasoning=f"Heuristic {intent.intent} decomposition into {len(sub_queries)} sub-queries",
        )


def plan_execution_order(sub_queries: list[SubQuery]) -> list[list[SubQuery]]:
    """Group sub-queries into batches that respect dependencies.

    Sub-queries in one batch are independent of each other and can run
    concurrently. Dependencies on unknown ids are ignored; sub-queries caught
    in a cycle are placed together in a final batch.
    """

    known = {sub_query.id for sub_query in sub_queries}
    remaining = sorted(sub_queries, key=lambda sub_query: sub_query.priority)
    done: set[str] = set()
    batches: list[list[SubQuery]] = []

    while remaining:
        ready = [
            sub_query
            for sub_query in remaining
            if sub_query.dependency is None
            or sub_query.dependency not in known
            or sub_query.dependency == sub_query.id
            or sub_query.dependency in done
        ]
        if not ready:
            logger.warning(
                "decomposition.dependency_cycle",
                sub_query_ids=[sub_query.id for sub_query in remaining],
            )
            batches.append(remaining)
            break
        batches.append(ready)
        done.update(sub_query.id for sub_query in ready)
        remaining = [sub_query for sub_query in remaining if sub_query.id not in done]

    return batches


def _single(query: str, intent: IntentClassification, reasoning: str) -> QueryDecomposition:
    return QueryDecomposition(
        original_query=query,
        intent=intent.intent,
        complexity=intent.complexity,
        sub_queries=[SubQuery(id="q1", text=query, intent=intent.intent, priority=1)],
        reasoning=reasoning,
    )


def _sanitize(payload: Any, max_subqueries: int) -> list[SubQuery]:
    if not isinstance(payload, dict) or not isinstance(payload.get("subQueries"), list):
        return []

    raw_items = [
        item
        for item in payload["subQueries"]
        if isinstance(item, dict) and str(item.get("query", "")).strip()
    ][:max_subqueries]

    id_map: dict[str, str] = {}
    for index, item in enumerate(raw_items, start=1):
        id_map.setdefault(str(item.get("id", f"q{index}")), f"q{index}")

    sub_queries: list[SubQuery] = []
    for index, item in enumerate(raw_items, start=1):
        new_id = f"q{index}"
        dependency = item.get("dependency")
        mapped = id_map.get(str(dependency)) if dependency is not None else None
        intent = item.get("intent")
        try:
            priority = int(item.get("priority", 3))
        except (TypeError, ValueError):
            priority = 3
        sub_queries.append(
            SubQuery(
                id=new_id,
                text=str(item["query"]).strip(),
                intent=intent if intent in INTENTS else "single_fact",
                dependency=mapped if mapped != new_id else None,
                priority=min(5, max(1, priority)),
            )
        )
    return sub_queries


def _heuristic_sub_queries(query: str, intent: IntentClassification) -> list[SubQuery]:
    text = query.strip()

    if intent.intent == "comparison":
        match = _COMPARISON_PAIR.search(text) or _VERSUS_PAIR.search(text)
        if not match:
            return [SubQuery(id="q1", text=text, intent="comparison", priority=1)]
        first = match.group("a").strip()
        second = match.group("b").strip()
        return [
            SubQuery(id="q1", text=f"What is {first}?", priority=1),
            SubQuery(id="q2", text=f"What is {second}?", priority=1),
            SubQuery(id="q3", text=text, intent="comparison", dependency="q2", priority=2),
        ]

    if intent.intent == "multi_part":
        if text.count("?") >= 2:
            parts = [f"{part.strip()}?" for part in text.split("?") if part.strip()]
        else:
            lead = _LEAD_VERB.match(text)
            prefix = lead.group(1) if lead else ""
            rest = text[lead.end() :] if lead else text
            items = [item.strip(" ?.!") for item in _LIST_SPLIT.split(rest) if item.strip(" ?.!")]
            parts = [f"{prefix} {item}".strip() for item in items]
        return [
            SubQuery(id=f"q{index}", text=part, priority=min(5, index))
            for index, part in enumerate(parts, start=1)
        ]

    if intent.intent == "how_to":
        match = _HOW_TO_TOPIC.match(text)
        subs = [SubQuery(id="q1", text=text, intent="how_to", priority=1)]
        if match:
            subs.append(
                SubQuery(
                    id="q2",
                    text=f"prerequisites and requirements to {match.group('topic')}",
                    priority=2,
                )
            )
        return subs

    if intent.intent == "exploration":
        lead = _LEAD_VERB.match(text)
        topic = text[lead.end() :].strip(" ?.!") if lead else text.strip(" ?.!")
        return [
            SubQuery(id="q1", text=text, intent="exploration", priority=1),
            SubQuery(id="q2", text=f"key points and examples of {topic}", intent="exploration", priority=2),
        ]

    return [SubQuery(id="q1", text=text, intent=intent.intent, priority=1)]
