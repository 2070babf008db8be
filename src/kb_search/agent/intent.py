"""Query intent classification with an LLM or keyword heuristics."""

from __future__ import annotations

import re
from typing import Any

from langchain_core.prompts import ChatPromptTemplate

from kb_search.agent.llm import invoke_json
from kb_search.types import IntentClassification, QueryIntent

INTENTS: tuple[QueryIntent, ...] = (
    "single_fact",
    "multi_part",
    "comparison",
    "exploration",
    "how_to",
)

_INTENT_SYSTEM_PROMPT = """
You classify search queries against a personal knowledge base of recordings.

Intents:
- single_fact: one specific fact ("When was the launch meeting?")
- multi_part: several distinct questions in one query
- comparison: contrasts two or more things
- exploration: open-ended overview of a topic
- how_to: procedure or steps

Rate complexity from 1 (trivial) to 5 (needs several retrieval steps).
Respond with JSON only, no prose:
{{"intent": "<intent>", "confidence": <0..1>, "complexity": <1..5>, "reasoning": "<short>"}}
""".strip()

INTENT_PROMPT = ChatPromptTemplate.from_messages(
    [("system", _INTENT_SYSTEM_PROMPT), ("human", "Query: {query}")]
)

_COMPARISON = re.compile(
    r"\b(difference between|differences between|compare|comparison|versus|vs\.?|"
    r"which is better|better than|pros and cons)\b",
    flags=re.IGNORECASE,
)
_HOW_TO = re.compile(
    r"^\s*how (?:to|do|does|can|should|would)\b|\bsteps (?:to|for)\b|\bguide to\b",
    flags=re.IGNORECASE,
)
_EXPLORATION = re.compile(
    r"^\s*(tell me about|explain|describe|give me an overview|overview of|what is|what are)\b",
    flags=re.IGNORECASE,
)
_CONJUNCTION = re.compile(r"\b(and|also|as well as)\b", flags=re.IGNORECASE)


def classify_heuristically(query: str) -> IntentClassification:
    """Keyword rules used when no model is available or its answer is unusable."""

    text = query.strip()
    if _COMPARISON.search(text):
        return IntentClassification(
            intent="comparison",
            confidence=0.7,
            complexity=4,
            reasoning="Detected comparison keywords",
        )
    if _HOW_TO.search(text):
        return IntentClassification(
            intent="how_to",
            confidence=0.7,
            complexity=3,
            reasoning="Detected procedural phrasing",
        )
    question_marks = text.count("?")
    commas = text.count(",")
    if question_marks >= 2 or commas >= 2 or (
        _CONJUNCTION.search(text) and _EXPLORATION.search(text)
    ):
        return IntentClassification(
            intent="multi_part",
            confidence=0.6,
            complexity=3,
            reasoning="Detected multiple questions or enumerated topics",
        )
    exploration = _EXPLORATION.match(text)
    if exploration:
        topic_words = len(text[exploration.end() :].split())
        return IntentClassification(
            intent="exploration",
            confidence=0.6,
            complexity=3 if topic_words >= 2 else 2,
            reasoning="Detected open-ended exploration phrasing",
        )
    return IntentClassification(
        intent="single_fact",
        confidence=0.5,
        complexity=1,
        reasoning="No multi-step pattern detected; treating as a single fact lookup",
    )


class QueryIntentClassifier:
    """Classifies queries with an optional LangChain chat model.

    Without a model the keyword heuristics decide. With a model, an
    unparseable answer falls back to the heuristics while a failed call raises
    `ProviderError`.
    """

    def __init__(self, llm: Any | None = None) -> None:
        self.llm = llm

    async def classify(self, query: str) -> IntentClassification:
        if self.llm is None:
            return classify_heuristically(query)

        payload = await invoke_json(self.llm, INTENT_PROMPT, query=query)
        if not isinstance(payload, dict):
            return classify_heuristically(query)

        intent = payload.get("intent")
        if intent not in INTENTS:
            return classify_heuristically(query)
        return IntentClassification(
            intent=intent,
            confidence=_clamp(_as_float(payload.get("confidence"), 0.5), 0.0, 1.0),
            complexity=int(_clamp(_as_float(payload.get("complexity"), 1), 1, 5)),
            reasoning=str(payload.get("reasoning", "")),
        )


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
