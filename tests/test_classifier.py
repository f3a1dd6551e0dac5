from __future__ import annotations

import pytest

from agentmind.memory.cognitive.classifier import (
    CategoryClassifier,
    DefaultCategoryStrategy,
    KeywordCategoryStrategy,
    LLMCategoryStrategy,
    estimate_observation_importance,
    estimate_reflection_importance,
)
from agentmind.memory.cognitive.prompts import (
    build_answer_prompt,
    build_question_prompt,
    parse_category,
    parse_generated_questions,
    parse_reflection_answer,
)
from agentmind.memory.cognitive.schemas import ReflectionCategory

from tests.fakes import ScriptedLLMClient, make_llm_service


def test_parse_generated_questions_reads_question_blocks() -> None:
    response = (
        "QUESTION_1: What patterns do I see in where food appears?\n"
        "QUESTION_2: Why?\n"
        "QUESTION_3: How has stress changed the way I explore?\n"
        "QUESTION_4: What would I do differently next time around?"
    )

    questions = parse_generated_questions(response)

    assert questions == [
        "What patterns do I see in where food appears?",
        "How has stress changed the way I explore?",
        "What would I do differently next time around?",
    ]
    assert len(parse_generated_questions(response, limit=1)) == 1


def test_parse_generated_questions_falls_back_to_numbered_list() -> None:
    response = "Here you go:\n1. What keeps leading me into dead ends?\n2) Which resources matter the most?"

    assert parse_generated_questions(response) == [
        "What keeps leading me into dead ends?",
        "Which resources matter the most?",
    ]
    assert parse_generated_questions("no questions at all") == []


def test_parse_reflection_answer_markers_and_fallback() -> None:
    assert parse_reflection_answer("INSIGHT: Water is scarce.\n\nExtra notes") == "Water is scarce."
    assert parse_reflection_answer("META-INSIGHT: I think in loops.") == "I think in loops."
    assert (
        parse_reflection_answer("ok\nI have realised that corridors hide dead ends.")
        == "I have realised that corridors hide dead ends."
    )
    assert parse_reflection_answer("   ") == ""


def test_parse_category_is_strict() -> None:
    assert parse_category("CATEGORY: social") is ReflectionCategory.SOCIAL
    assert parse_category("category: Emotional") is ReflectionCategory.EMOTIONAL
    assert parse_category("strategy") is None
    assert parse_category("CATEGORY: banana") is None


def test_prompt_builders_embed_inputs() -> None:
    question_prompt = build_question_prompt(["saw a rat", "found bread"], count=2)
    assert "1. saw a rat" in question_prompt
    assert "QUESTION_2:" in question_prompt and "QUESTION_3:" not in question_prompt

    answer_prompt = build_answer_prompt("Where is food?", ["found bread"])
    assert "QUESTION: Where is food?" in answer_prompt
    assert answer_prompt.endswith("INSIGHT:")


@pytest.mark.parametrize(
    "text, expected",
    [
        ("I should rest before exploring", ReflectionCategory.STRATEGY),
        ("Whenever I turn left I get lost", ReflectionCategory.PATTERN),
        ("I feel anxious in the dark", ReflectionCategory.EMOTIONAL),
        ("My relationship with Bob improved", ReflectionCategory.SOCIAL),
        ("My thinking is too slow", ReflectionCategory.META),
        ("The river flows south", None),
    ],
)
def test_keyword_strategy_rules(text: str, expected: ReflectionCategory) -> None:
    assert KeywordCategoryStrategy().match(text) is expected


@pytest.mark.asyncio
async def test_classifier_uses_llm_answer_first() -> None:
    classifier = CategoryClassifier.default(make_llm_service(ScriptedLLMClient(["CATEGORY: social"])))

    result = await classifier.classify("I should share food")

    assert result.category is ReflectionCategory.SOCIAL
    assert result.source == "llm"


@pytest.mark.asyncio
async def test_llm_strategy_accepts_bare_category_word() -> None:
    strategy = LLMCategoryStrategy(make_llm_service(ScriptedLLMClient(["Pattern."])))
    assert await strategy.classify("anything") is ReflectionCategory.PATTERN


@pytest.mark.asyncio
async def test_classifier_falls_through_when_llm_unavailable() -> None:
    classifier = CategoryClassifier.default(make_llm_service())

    keyword = await classifier.classify("I should always carry water")
    default = await classifier.classify("The river flows south")

    assert (keyword.category, keyword.source) == (ReflectionCategory.STRATEGY, "keyword")
    assert (default.category, default.source) == (ReflectionCategory.LEARNING, "default")


@pytest.mark.asyncio
async def test_classifier_falls_through_on_unparsable_llm_reply() -> None:
    llm = make_llm_service(ScriptedLLMClient(["I am not sure what you mean by that."]))
    classifier = CategoryClassifier([LLMCategoryStrategy(llm), DefaultCategoryStrategy(ReflectionCategory.META)])

    result = await classifier.classify("Something happened")

    assert result.category is ReflectionCategory.META
    assert result.source == "default"


def test_classifier_always_ends_with_default() -> None:
    classifier = CategoryClassifier([KeywordCategoryStrategy()])
    assert isinstance(classifier.strategies[-1], DefaultCategoryStrategy)


def test_reflection_importance_boosts_and_cap() -> None:
    assert estimate_reflection_importance("The river flows south") == 7
    assert estimate_reflection_importance("Water is critical") == 9
    assert estimate_reflection_importance("I learned a pattern") == 8
    assert estimate_reflection_importance("Critical pattern: I always realize this insight") == 10


@pytest.mark.parametrize(
    "text, expected",
    [
        ("I see the exit!", 9),
        ("Found some water", 7),
        ("Reached a junction", 5),
        ("Walked forward", 3),
    ],
)
def test_observation_importance_heuristic(text: str, expected: int) -> None:
    assert estimate_observation_importance(text) == expected
