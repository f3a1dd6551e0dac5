from __future__ import annotations

import asyncio

import pytest

from agentmind.memory.cognitive.reflection import ReflectionState

from tests.fakes import FakeClock, ScriptedLLMClient, make_agent, reflective_reply


def _reflective_agent(**config: object):
    clock = FakeClock()
    client = ScriptedLLMClient(handler=reflective_reply)
    return make_agent(llm_client=client, clock=clock, **config), client, clock


def _assert_tree_invariants(agent) -> None:
    store = agent.store
    for record in store.reflections():
        parents = [store.get(memory_id) for memory_id in record.evidence_ids]
        assert parents and all(parent is not None for parent in parents)
        assert record.level == max(parent.level for parent in parents) + 1
        assert record.level <= agent.config.max_reflection_depth
        if record.level == 1:
            assert all(not parent.is_reflection for parent in parents)
        else:
            assert all(parent.is_reflection for parent in parents)


@pytest.mark.asyncio
async def test_importance_below_threshold_does_not_trigger() -> None:
    agent, client, _ = _reflective_agent()
    for importance in [9, 2, 9, 3, 9]:
        agent.record_observation(f"event with importance {importance}", importance)

    result = await agent.maybe_reflect()

    assert agent.reflection.tracker.current_sum == 32
    assert result.trigger is None
    assert agent.store.reflections() == []
    assert client.prompts == []


@pytest.mark.asyncio
async def test_crossing_threshold_runs_exactly_one_cycle() -> None:
    agent, _, _ = _reflective_agent()
    for importance in [9, 2, 9, 3, 9]:
        agent.record_observation(f"early event {importance}", importance)

    inserted = 0
    while True:
        agent.record_observation(f"found water source number {inserted}", 9)
        inserted += 1
        result = await agent.maybe_reflect()
        if result.ran:
            break
        assert result.trigger is None

    # 32 + 14 * 9 = 158 is the first sum at or above the threshold.
    assert inserted == 14
    reflections = agent.store.reflections()
    assert 1 <= len(reflections) <= 3
    assert all(record.level == 1 for record in reflections)
    assert all(record.confidence == 0.8 for record in reflections)
    assert all(record.question for record in reflections)
    assert agent.reflection.tracker.current_sum == 0
    assert agent.reflection.statistics().importance_sum_triggers == 1
    assert agent.reflection.state is ReflectionState.ACCUMULATING
    _assert_tree_invariants(agent)

    assert (await agent.maybe_reflect()).trigger is None


@pytest.mark.asyncio
async def test_residual_policy_keeps_the_overflow() -> None:
    agent, _, _ = _reflective_agent(accumulator_reset="residual")
    for index in range(17):
        agent.record_observation(f"found food cache {index}", 9)

    result = await agent.maybe_reflect()

    assert result.ran
    assert agent.reflection.tracker.current_sum == 17 * 9 - 150


@pytest.mark.asyncio
async def test_reflection_evidence_and_category() -> None:
    agent, _, _ = _reflective_agent()
    ids = {agent.record_observation(f"found water near pillar {index}", 10) for index in range(15)}

    result = await agent.maybe_reflect()

    assert len(result.reflections) == 3
    for record in result.reflections:
        assert set(record.evidence_ids) <= ids
        assert 1 <= len(record.evidence_ids) <= 10
        assert record.category.value == "strategy"
        assert record.importance == 7
    tree = agent.get_reflection_tree()
    assert len(tree.first_order) == 3
    assert tree.max_depth == 1


@pytest.mark.asyncio
async def test_answer_failure_commits_nothing() -> None:
    def failing_answers(prompt: str):
        if "INSIGHT:" in prompt and "QUESTION_1:" not in prompt:
            return RuntimeError("model crashed mid-answer")
        return reflective_reply(prompt)

    clock = FakeClock()
    agent = make_agent(llm_client=ScriptedLLMClient(handler=failing_answers), clock=clock)
    for index in range(17):
        agent.record_observation(f"found a lantern {index}", 9)
    clock.advance(30)
    before = {record.id: record.last_accessed_at for record in agent.store.all()}
    total_before = agent.reflection.tracker.current_sum

    result = await agent.maybe_reflect()

    assert result.failed_stages == ["first_order"]
    assert result.reflections == []
    assert agent.store.reflections() == []
    assert agent.reflection.tracker.current_sum == total_before
    assert {record.id: record.last_accessed_at for record in agent.store.all()} == before
    assert all(record.embedding is None for record in agent.store.all())
    stats = agent.reflection.statistics()
    assert stats.failed_stages == 1
    assert stats.questions_generated == 3
    assert stats.questions_answered == 0

    # The accumulator is still above threshold, so the next tick retries.
    assert agent.reflection.should_reflect() == "importance"


@pytest.mark.asyncio
async def test_unusable_questions_abort_the_stage() -> None:
    agent = make_agent(llm_client=ScriptedLLMClient(["I have no questions."]))
    for index in range(17):
        agent.record_observation(f"saw a shadow {index}", 9)

    result = await agent.maybe_reflect()

    assert result.failed_stages == ["first_order"]
    assert agent.store.reflections() == []


@pytest.mark.asyncio
async def test_heuristic_llm_skips_stage_without_raising() -> None:
    agent = make_agent()
    for index in range(17):
        agent.record_observation(f"dead end number {index}", 9)

    result = await agent.maybe_reflect()

    assert result.failed_stages == ["first_order"]
    assert agent.reflection.statistics().failed_stages == 1


@pytest.mark.asyncio
async def test_categorization_failure_falls_through_to_keywords() -> None:
    def no_categories(prompt: str):
        if prompt.startswith("Categorize"):
            return RuntimeError("categorizer offline")
        return reflective_reply(prompt)

    agent = make_agent(llm_client=ScriptedLLMClient(handler=no_categories))
    for index in range(17):
        agent.record_observation(f"found bread {index}", 9)

    result = await agent.maybe_reflect()

    assert len(result.reflections) == 3
    # The canned insight contains "should", which the keyword rules map to strategy.
    assert all(record.category.value == "strategy" for record in result.reflections)
    assert result.failed_stages == []


@pytest.mark.asyncio
async def test_time_trigger_needs_pending_memories() -> None:
    agent, _, clock = _reflective_agent()
    clock.advance(200)
    assert agent.reflection.should_reflect() is None

    agent.record_observation("a faint breeze from the west", 3)
    assert agent.reflection.should_reflect() == "time"

    result = await agent.maybe_reflect()

    assert result.trigger == "time"
    assert result.reflections
    assert agent.reflection.statistics().time_triggers == 1
    assert agent.reflection.should_reflect() is None


@pytest.mark.asyncio
async def test_time_trigger_can_be_disabled() -> None:
    agent, _, clock = _reflective_agent(enable_time_trigger=False)
    agent.record_observation("a faint breeze", 3)
    clock.advance(10_000)
    assert agent.reflection.should_reflect() is None


@pytest.mark.asyncio
async def test_meta_reflections_build_higher_levels() -> None:
    agent, _, _ = _reflective_agent(reflection_threshold=10, min_reflections_for_meta=5)

    for cycle in range(2):
        agent.record_observation(f"found a spring in cave {cycle}", 10)
        result = await agent.maybe_reflect()
        assert result.ran and result.failed_stages == []

    tree = agent.get_reflection_tree()
    assert len(tree.first_order) == 6
    assert tree.second_order
    assert 2 <= tree.max_depth <= agent.config.max_reflection_depth
    _assert_tree_invariants(agent)
    stats = agent.reflection.statistics()
    assert stats.reflections_by_level[1] == 6
    assert stats.reflections_by_level[2] >= 1


@pytest.mark.asyncio
async def test_meta_reflection_needs_enough_reflections() -> None:
    agent, _, _ = _reflective_agent(reflection_threshold=10, min_reflections_for_meta=50)

    for cycle in range(3):
        agent.record_observation(f"found a spring in cave {cycle}", 10)
        await agent.maybe_reflect()

    assert agent.get_reflection_tree().max_depth == 1


@pytest.mark.asyncio
async def test_meta_reflections_can_be_disabled() -> None:
    agent, _, _ = _reflective_agent(reflection_threshold=10, enable_meta_reflections=False)

    for cycle in range(3):
        agent.record_observation(f"found a spring in cave {cycle}", 10)
        await agent.maybe_reflect()

    assert agent.get_reflection_tree().max_depth == 1


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped() -> None:
    gate = asyncio.Event()
    clock = FakeClock()
    agent = make_agent(llm_client=ScriptedLLMClient(handler=reflective_reply, gate=gate), clock=clock)
    for index in range(17):
        agent.record_observation(f"found rope {index}", 9)

    running = asyncio.ensure_future(agent.maybe_reflect())
    for _ in range(20):
        await asyncio.sleep(0)
        if agent.reflection.is_reflecting:
            break

    skipped = await agent.maybe_reflect()
    gate.set()
    finished = await running

    assert skipped.skipped is True
    assert finished.ran and len(finished.reflections) == 3


@pytest.mark.asyncio
async def test_force_reflection_ignores_threshold() -> None:
    agent, _, _ = _reflective_agent()
    agent.record_observation("found a key", 7)

    result = await agent.force_reflection()

    assert result.trigger == "manual"
    assert result.reflections
    assert agent.reflection.statistics().manual_triggers == 1
    assert agent.reflection.tracker.current_sum == 0


@pytest.mark.asyncio
async def test_reflect_on_topic_leaves_accumulator_alone() -> None:
    agent, _, _ = _reflective_agent()
    agent.record_observation("found water by the gate", 7)
    agent.record_observation("found water by the tree", 7)

    record = await agent.reflect_on("Where do I usually find water?")

    assert record is not None
    assert record.level == 1
    assert record.question == "Where do I usually find water?"
    assert agent.reflection.tracker.current_sum == 14


@pytest.mark.asyncio
async def test_statistics_and_debug_info() -> None:
    agent, _, _ = _reflective_agent()
    for index in range(17):
        agent.record_observation(f"found a map piece {index}", 9)
    await agent.maybe_reflect()

    payload = agent.reflection.statistics().to_payload()

    assert payload["total_reflections"] == 3
    assert payload["reflections_by_category"] == {"strategy": 3}
    assert payload["average_confidence"] == pytest.approx(0.8)
    assert payload["questions_answered"] == 3
    assert "Reflection Engine" in agent.reflection.debug_info()
    assert [record.id for record in agent.reflection.reflections_for_planning(2)]
    assert "CURRENT GOAL: escape" in agent.planning_prompt("escape", "standing at a junction")
