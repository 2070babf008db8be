from kb_search.agent.decomposition import DECOMPOSE_PROMPT
from kb_search.agent.evaluator import EVALUATE_PROMPT
from kb_search.agent.intent import INTENT_PROMPT, INTENTS


def test_prompts_demand_json_only_answers() -> None:
    for prompt in (INTENT_PROMPT, DECOMPOSE_PROMPT, EVALUATE_PROMPT):
        system = prompt.messages[0].prompt.template
        assert "Respond with JSON only" in system


def test_intent_prompt_lists_every_supported_intent() -> None:
    rendered = INTENT_PROMPT.format_messages(query="How do I rotate keys?")

    for intent in INTENTS:
        assert intent in rendered[0].content
    assert rendered[1].content == "Query: How do I rotate keys?"


def test_decompose_prompt_renders_the_subquery_cap_and_schema() -> None:
    rendered = DECOMPOSE_PROMPT.format_messages(
        query="Compare Kafka and RabbitMQ", intent="comparison", complexity=4, max_subqueries=3
    )

    assert "at most 3 focused sub-queries" in rendered[0].content
    assert '"subQueries"' in rendered[0].content
    assert "Intent: comparison" in rendered[1].content


def test_evaluate_prompt_asks_for_gaps_and_refinement_flag() -> None:
    rendered = EVALUATE_PROMPT.format_messages(query="kafka retention", passages="[0] seven days")

    assert '"gaps"' in rendered[0].content
    assert '"needsRefinement"' in rendered[0].content
    assert rendered[1].content.endswith("[0] seven days")
