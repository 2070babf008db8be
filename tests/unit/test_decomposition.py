import json

import pytest
from langchain_core.messages import AIMessage

from kb_search.agent.decomposition import QueryDecomposer, plan_execution_order
from kb_search.types import SubQuery


class _FakeLLM:
    def __init__(self, *answers: object) -> None:
        self.answers = [json.dumps(answer) for answer in answers]

    async def ainvoke(self, messages):
        return AIMessage(content=self.answers.pop(0))


def _texts(decomposition) -> list[str]:
    return [sub_query.text for sub_query in decomposition.sub_queries]


@pytest.mark.asyncio
async def test_simple_query_is_not_decomposed() -> None:
    decomposition = await QueryDecomposer().decompose("When was the launch meeting")

    assert _texts(decomposition) == ["When was the launch meeting"]
    assert decomposition.sub_queries[0].id == "q1"
    assert decomposition.reasoning == "Simple query, no decomposition needed"


@pytest.mark.asyncio
async def test_low_complexity_exploration_is_not_decomposed() -> None:
    decomposition = await QueryDecomposer().decompose("Explain pricing")

    assert decomposition.intent == "exploration"
    assert len(decomposition.sub_queries) == 1


@pytest.mark.asyncio
async def test_comparison_splits_into_definitions_then_comparison() -> None:
    decomposition = await QueryDecomposer().decompose(
        "What is the difference between Kafka and RabbitMQ?"
    )

    assert decomposition.intent == "comparison"
    assert _texts(decomposition) == [
        "What is Kafka?",
        "What is RabbitMQ?",
        "What is the difference between Kafka and RabbitMQ?",
    ]
    last = decomposition.sub_queries[2]
    assert last.dependency == "q2"
    assert last.priority == 2

    batches = plan_execution_order(decomposition.sub_queries)
    assert [[sub_query.id for sub_query in batch] for batch in batches] == [["q1", "q2"], ["q3"]]


@pytest.mark.asyncio
async def test_multi_part_question_splits_on_question_marks() -> None:
    decomposition = await QueryDecomposer().decompose(
        "What did Sam say about pricing? When is the launch?"
    )

    assert _texts(decomposition) == ["What did Sam say about pricing?", "When is the launch?"]


@pytest.mark.asyncio
async def test_multi_part_list_keeps_the_lead_verb() -> None:
    decomposition = await QueryDecomposer().decompose("Explain pricing, hiring, and the roadmap")

    assert _texts(decomposition) == ["Explain pricing", "Explain hiring", "Explain the roadmap"]
    assert [sub_query.priority for sub_query in decomposition.sub_queries] == [1, 2, 3]


@pytest.mark.asyncio
async def test_how_to_adds_prerequisites() -> None:
    decomposition = await QueryDecomposer().decompose("How do I rotate API keys?")

    assert _texts(decomposition) == [
        "How do I rotate API keys?",
        "prerequisites and requirements to rotate API keys",
    ]


@pytest.mark.asyncio
async def test_exploration_adds_key_points() -> None:
    decomposition = await QueryDecomposer().decompose("Tell me about the hiring plan")

    assert _texts(decomposition)[1] == "key points and examples of the hiring plan"


@pytest.mark.asyncio
async def test_max_subqueries_caps_heuristic_output() -> None:
    decomposition = await QueryDecomposer(max_subqueries=2).decompose(
        "Explain pricing, hiring, and the roadmap"
    )

    assert len(decomposition.sub_queries) == 2


@pytest.mark.asyncio
async def test_model_output_is_sanitised() -> None:
    llm = _FakeLLM(
        {"intent": "comparison", "confidence": 0.9, "complexity": 4, "reasoning": "two systems"},
        {
            "subQueries": [
                {"id": "a", "query": "What is Kafka?", "priority": 1},
                {"id": "b", "query": "   ", "priority": 1},
                {"id": "c", "query": "Kafka vs RabbitMQ", "intent": "bogus", "dependency": "a", "priority": 9},
                {"id": "d", "query": "Self reference", "dependency": "d", "priority": "high"},
            ],
            "reasoning": "definitions first",
        },
    )

    decomposition = await QueryDecomposer(llm=llm).decompose("Kafka or RabbitMQ for events?")

    assert _texts(decomposition) == ["What is Kafka?", "Kafka vs RabbitMQ", "Self reference"]
    second, third = decomposition.sub_queries[1], decomposition.sub_queries[2]
    assert second.id == "q2"
    assert second.dependency == "q1"
    assert second.intent == "single_fact"
    assert second.priority == 5
    assert third.dependency is None
    assert third.priority == 3
    assert decomposition.reasoning == "definitions first"


@pytest.mark.asyncio
async def test_unusable_model_output_falls_back_to_single_query() -> None:
    llm = _FakeLLM(
        {"intent": "multi_part", "confidence": 0.8, "complexity": 3, "reasoning": "two asks"},
        {"subQueries": []},
    )

    decomposition = await QueryDecomposer(llm=llm).decompose("Budget and roadmap status?")

    assert _texts(decomposition) == ["Budget and roadmap status?"]
    assert decomposition.reasoning == "Fallback: decomposition output was not usable"


def test_execution_order_handles_unknown_dependencies_and_cycles() -> None:
    sub_queries = [
        SubQuery(id="q1", text="a", dependency="q2", priority=1),
        SubQuery(id="q2", text="b", dependency="q1", priority=1),
        SubQuery(id="q3", text="c", dependency="missing", priority=2),
        SubQuery(id="q4", text="d", dependency="q3", priority=1),
    ]

    batches = plan_execution_order(sub_queries)

    assert [[sub_query.id for sub_query in batch] for batch in batches] == [
        ["q3"],
        ["q4"],
        ["q1", "q2"],
    ]
