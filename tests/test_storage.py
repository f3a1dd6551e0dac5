from __future__ import annotations

import json

import pytest

from agentmind.memory.cognitive.schemas import MemoryKind, ReflectionCategory
from agentmind.memory.cognitive.storage import MemoryStore

from tests.fakes import FakeClock


def _store() -> tuple[MemoryStore, FakeClock]:
    clock = FakeClock()
    return MemoryStore(clock=clock), clock


def test_observation_gets_identity_and_timestamps() -> None:
    store, clock = _store()
    record = store.add_observation("Saw a junction to the north", 5, tags=["navigation"])

    assert record.id in store
    assert record.kind is MemoryKind.OBSERVATION
    assert record.created_at == record.last_accessed_at == clock.value
    assert record.level == 0
    assert record.tags == ["navigation"]


def test_importance_is_clamped_and_validated() -> None:
    store, _ = _store()
    assert store.add_observation("very loud noise", 15).importance == 10
    assert store.add_observation("a pebble", 0).importance == 1
    assert store.add_observation("a rounded guess", 6.6).importance == 7

    with pytest.raises(ValueError):
        store.add_observation("boolean importance", True)
    with pytest.raises(ValueError):
        store.add_observation("string importance", "high")  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        store.add_observation("   ", 5)


def test_reflection_levels_follow_evidence() -> None:
    store, _ = _store()
    first = store.add_observation("Found water near the gate", 7)
    second = store.add_observation("Found water near the bridge", 7)

    insight = store.add_reflection(
        "Water is usually near crossings.",
        8,
        evidence_ids=[first.id, second.id],
        category=ReflectionCategory.PATTERN,
        confidence=0.8,
        question="Where is water?",
    )
    meta = store.add_reflection(
        "I learn best from repeated sightings.",
        9,
        evidence_ids=[insight.id],
        category=ReflectionCategory.META,
        confidence=0.8,
    )

    assert insight.level == 1
    assert insight.evidence_ids == (first.id, second.id)
    assert "reflection" in insight.tags and "pattern" in insight.tags
    assert meta.level == 2
    assert [record.id for record in store.reflections(min_level=2)] == [meta.id]


def test_reflection_invariants_are_enforced() -> None:
    store, _ = _store()
    observation = store.add_observation("Heard footsteps", 4)
    insight = store.add_reflection(
        "Someone else is here.",
        7,
        evidence_ids=[observation.id],
        category=ReflectionCategory.SOCIAL,
        confidence=0.8,
    )

    with pytest.raises(ValueError):
        store.add_reflection("", 7, evidence_ids=[], category=ReflectionCategory.LEARNING, confidence=0.5)
    with pytest.raises(ValueError):
        store.add_reflection(
            "Dangling", 7, evidence_ids=["missing"], category=ReflectionCategory.LEARNING, confidence=0.5
        )
    with pytest.raises(ValueError):
        store.add_reflection(
            "Same level",
            7,
            evidence_ids=[insight.id],
            category=ReflectionCategory.META,
            confidence=0.5,
            level=1,
        )
    with pytest.raises(ValueError):
        store.add_reflection(
            "Overconfident",
            7,
            evidence_ids=[observation.id],
            category=ReflectionCategory.LEARNING,
            confidence=1.5,
        )
    assert len(store) == 2


def test_recent_orders_by_creation_time() -> None:
    store, clock = _store()
    older = store.add_observation("older", 3)
    clock.advance(10)
    plan = store.add_plan("go east", 5)
    clock.advance(10)
    newer = store.add_observation("newer", 3)

    assert [record.id for record in store.recent(2)] == [newer.id, plan.id]
    assert [record.id for record in store.recent(5, kinds=[MemoryKind.OBSERVATION])] == [newer.id, older.id]
    assert "plan" in plan.tags


def test_mark_accessed_never_moves_backwards() -> None:
    store, clock = _store()
    record = store.add_observation("a torch on the wall", 4)
    clock.advance(100)
    store.mark_accessed([record.id])
    assert record.last_accessed_at == clock.value

    store.mark_accessed([record.id], at=clock.value - 50)
    assert record.last_accessed_at == clock.value


def test_location_and_tag_queries() -> None:
    store, _ = _store()
    near = store.add_observation("berries", 6, location=(1.0, 1.0), tags=["food"])
    store.add_observation("far away rock", 2, location=(20.0, 20.0))

    assert store.at_location((0.0, 0.0), radius=2.0) == [near]
    assert store.by_tag("food") == [near]


def test_reflection_tree_links_levels() -> None:
    store, _ = _store()
    observation = store.add_observation("Dead end to the south", 5)
    first = store.add_reflection(
        "Southern paths are risky.",
        8,
        evidence_ids=[observation.id],
        category=ReflectionCategory.STRATEGY,
        confidence=0.8,
    )
    second = store.add_reflection(
        "I avoid repeating mistakes.",
        9,
        evidence_ids=[first.id],
        category=ReflectionCategory.META,
        confidence=0.8,
    )

    tree = store.reflection_tree()

    assert tree.root_observations == [observation.id]
    assert [node.id for node in tree.first_order] == [first.id]
    assert [node.id for node in tree.second_order] == [second.id]
    assert tree.first_order[0].child_ids == [second.id]
    assert tree.total_nodes == 2
    assert tree.max_depth == 2
    assert tree.insights[0] == second.text


def test_snapshot_export_and_import() -> None:
    store, _ = _store()
    observation = store.add_observation("A locked door", 6, location=(2.0, 3.0))
    store.add_reflection(
        "Doors need keys.",
        7,
        evidence_ids=[observation.id],
        category=ReflectionCategory.LEARNING,
        confidence=0.8,
    )

    restored = MemoryStore(clock=FakeClock())
    assert restored.import_json(store.export_json()) == 2
    assert restored.snapshot() == store.snapshot()
    assert restored.reflection_tree().total_nodes == 1

    with pytest.raises(ValueError):
        restored.import_json(store.export_json())


def test_statistics_counts_kinds() -> None:
    store, _ = _store()
    store.add_observation("one", 2)
    store.add_plan("two", 4)

    stats = store.statistics()

    assert stats["total"] == 2
    assert stats["by_kind"] == {"observation": 1, "reflection": 0, "plan": 1}
    assert stats["avg_importance"] == 3.0


def test_import_rejects_records_that_break_reflection_levels() -> None:
    store, _ = _store()
    observation = store.add_observation("A locked door", 6)
    store.add_reflection(
        "Doors need keys.",
        7,
        evidence_ids=[observation.id],
        category=ReflectionCategory.LEARNING,
        confidence=0.8,
    )
    payload = json.loads(store.export_json())
    payload[1]["level"] = 0

    restored = MemoryStore(clock=FakeClock())
    with pytest.raises(ValueError):
        restored.import_json(json.dumps(payload))
    assert len(restored) == 0


def test_import_rejects_observation_with_evidence() -> None:
    store, _ = _store()
    first = store.add_observation("A torch", 3)
    second = store.add_observation("A lit torch", 3)
    payload = json.loads(store.export_json())
    payload[1]["evidence_ids"] = [first.id]

    restored = MemoryStore(clock=FakeClock())
    with pytest.raises(ValueError):
        restored.import_json(json.dumps(payload))
    assert second.id not in restored
