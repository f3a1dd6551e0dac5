"""Importance-triggered reflection with recursive meta-reflection."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .classifier import CategoryClassifier, Classification, estimate_reflection_importance
from .clients import GenerateOptions
from .config import CognitiveConfig
from .errors import HeuristicModeError, ProviderError
from .llm import LLMService
from .prompts import (
    build_answer_prompt,
    build_meta_prompt,
    build_question_prompt,
    parse_generated_questions,
    parse_reflection_answer,
)
from .retrieval import RetrievalEngine, RetrievalOutcome
from .schemas import MemoryKind, MemoryRecord
from .storage import MemoryStore

logger = logging.getLogger(__name__)

TRIGGER_IMPORTANCE = "importance"
TRIGGER_TIME = "time"
TRIGGER_MANUAL = "manual"

RAW_KINDS = (MemoryKind.OBSERVATION, MemoryKind.PLAN)


class ReflectionState(str, Enum):
    ACCUMULATING = "accumulating"
    QUESTION_GENERATION = "question_generation"
    ANSWER_SYNTHESIS = "answer_synthesis"
    META_REFLECTION = "meta_reflection"


class ReflectionStageError(RuntimeError):
    """Raised inside a stage when the model output cannot be used."""


@dataclass
class ImportanceTracker:
    """Running importance sum of memories not yet reflected upon."""

    threshold: float
    current_sum: float = 0.0
    memories_contributed: List[str] = field(default_factory=list)

    @property
    def pending(self) -> int:
        return len(self.memories_contributed)

    def add(self, memory_id: str, importance: float) -> None:
        self.current_sum += importance
        self.memories_contributed.append(memory_id)

    def snapshot(self) -> Tuple[float, int]:
        return self.current_sum, len(self.memories_contributed)

    def consume(self, snapshot: Tuple[float, int], policy: str) -> None:
        """Drop what the finished cycle covered; later additions survive."""

        consumed, count = snapshot
        if policy == "residual":
            consumed = min(consumed, self.threshold)
        self.current_sum = max(0.0, self.current_sum - consumed)
        del self.memories_contributed[:count]


@dataclass
class ReflectionStatistics:
    total_reflections: int
    reflections_by_level: Dict[int, int]
    reflections_by_category: Dict[str, int]
    average_confidence: float
    questions_generated: int
    questions_answered: int
    importance_sum_triggers: int
    time_triggers: int
    manual_triggers: int
    failed_stages: int
    last_reflection_time: float
    current_importance_sum: float
    next_trigger_at: float
    meta_sums: Dict[int, float]
    state: str

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "total_reflections": self.total_reflections,
            "reflections_by_level": {str(level): count for level, count in self.reflections_by_level.items()},
            "reflections_by_category": dict(self.reflections_by_category),
            "average_confidence": self.average_confidence,
            "questions_generated": self.questions_generated,
            "questions_answered": self.questions_answered,
            "importance_sum_triggers": self.importance_sum_triggers,
            "time_triggers": self.time_triggers,
            "manual_triggers": self.manual_triggers,
            "failed_stages": self.failed_stages,
            "last_reflection_time": self.last_reflection_time,
            "current_importance_sum": self.current_importance_sum,
            "next_trigger_at": self.next_trigger_at,
            "meta_sums": {str(level): value for level, value in self.meta_sums.items()},
            "state": self.state,
        }


@dataclass
class ReflectionCycleResult:
    trigger: Optional[str] = None
    reflections: List[MemoryRecord] = field(default_factory=list)
    meta_reflections: List[MemoryRecord] = field(default_factory=list)
    failed_stages: List[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def created(self) -> List[MemoryRecord]:
        return [*self.reflections, *self.meta_reflections]

    @property
    def ran(self) -> bool:
        return self.trigger is not None and not self.skipped

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "trigger": self.trigger,
            "reflections": [record.id for record in self.reflections],
            "meta_reflections": [record.id for record in self.meta_reflections],
            "failed_stages": list(self.failed_stages),
            "skipped": self.skipped,
        }


@dataclass
class _Draft:
    question: str
    insight: str
    classification: Classification
    outcome: RetrievalOutcome


class ReflectionEngine:
    """Per-agent reflection state machine.

    Raw memories feed an importance accumulator.  When it reaches the
    threshold, or the time interval elapses with unreflected memories pending,
    a cycle runs: questions are generated from recent memories, evidence is
    retrieved for each question and an insight is synthesised from it.  Every
    stage computes all of its artifacts before writing anything, so a failed
    stage leaves the store and the accumulators untouched.
    """

    def __init__(
        self,
        store: MemoryStore,
        retrieval: RetrievalEngine,
        llm: LLMService,
        *,
        config: Optional[CognitiveConfig] = None,
        classifier: Optional[CategoryClassifier] = None,
    ) -> None:
        self.store = store
        self.retrieval = retrieval
        self.llm = llm
        self.config = config or CognitiveConfig()
        if classifier is None:
            classifier = CategoryClassifier.default(llm if self.config.use_llm_categorization else None)
        self.classifier = classifier

        self.state = ReflectionState.ACCUMULATING
        self.tracker = ImportanceTracker(threshold=self.config.reflection_threshold)
        self.meta_trackers: Dict[int, ImportanceTracker] = {}
        self.last_reflection_time = store.now()
        self._lock = asyncio.Lock()

        self.questions_generated = 0
        self.questions_answered = 0
        self.importance_sum_triggers = 0
        self.time_triggers = 0
        self.manual_triggers = 0
        self.failed_stages = 0

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------
    def note_memory(self, record: MemoryRecord) -> None:
        if record.is_reflection:
            self._meta_tracker(record.level).add(record.id, record.importance)
        else:
            self.tracker.add(record.id, record.importance)

    def _meta_tracker(self, level: int) -> ImportanceTracker:
        tracker = self.meta_trackers.get(level)
        if tracker is None:
            tracker = ImportanceTracker(threshold=self.config.effective_meta_threshold)
            self.meta_trackers[level] = tracker
        return tracker

    def should_reflect(self) -> Optional[str]:
        """Return the trigger that would fire now, or ``None``."""

        if self.tracker.current_sum >= self.config.reflection_threshold:
            return TRIGGER_IMPORTANCE
        if (
            self.config.enable_time_trigger
            and self.tracker.pending > 0
            and self.store.now() - self.last_reflection_time >= self.config.reflection_interval
        ):
            return TRIGGER_TIME
        return None

    @property
    def is_reflecting(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------
    async def maybe_reflect(self) -> ReflectionCycleResult:
        if self._lock.locked():
            logger.debug("Reflection already in progress, skipping tick")
            return ReflectionCycleResult(skipped=True)
        async with self._lock:
            trigger = self.should_reflect()
            if trigger is None:
                return ReflectionCycleResult()
            return await self._run_cycle(trigger)

    async def force_reflection(self) -> ReflectionCycleResult:
        async with self._lock:
            return await self._run_cycle(TRIGGER_MANUAL)

    async def _run_cycle(self, trigger: str) -> ReflectionCycleResult:
        result = ReflectionCycleResult(trigger=trigger)
        if trigger == TRIGGER_IMPORTANCE:
            self.importance_sum_triggers += 1
        elif trigger == TRIGGER_TIME:
            self.time_triggers += 1
        else:
            self.manual_triggers += 1
        logger.info(
            "Reflection triggered by %s (importance sum %.1f)", trigger, self.tracker.current_sum
        )

        snapshot = self.tracker.snapshot()
        try:
            result.reflections = await self._first_order_stage()
        except (ProviderError, ReflectionStageError) as exc:
            self._stage_failed("first_order", exc)
            result.failed_stages.append("first_order")
            return result
        finally:
            self.state = ReflectionState.ACCUMULATING

        self.tracker.consume(snapshot, self.config.accumulator_reset)
        self.last_reflection_time = self.store.now()
        for record in result.reflections:
            self.note_memory(record)

        if self.config.enable_meta_reflections:
            try:
                result.meta_reflections = await self._meta_stages(result)
            finally:
                self.state = ReflectionState.ACCUMULATING

        logger.info(
            "Reflection cycle complete: %s first-order, %s meta",
            len(result.reflections),
            len(result.meta_reflections),
        )
        return result

    def _stage_failed(self, stage: str, exc: Exception) -> None:
        self.failed_stages += 1
        if isinstance(exc, HeuristicModeError):
            logger.debug("Skipping %s reflection stage in heuristic mode", stage)
        else:
            logger.warning("Reflection stage %s failed, nothing committed: %s", stage, exc)

    async def _first_order_stage(self) -> List[MemoryRecord]:
        recent = self.store.recent(self.config.recent_memories_for_questions, kinds=RAW_KINDS)
        if not recent:
            return []
        self.state = ReflectionState.QUESTION_GENERATION
        questions = await self._generate_questions([memory.text for memory in recent])

        self.state = ReflectionState.ANSWER_SYNTHESIS
        drafts = await self._synthesise(questions, self.store.raw_memories(), meta=False)
        return self._commit(drafts)

    async def _meta_stages(self, result: ReflectionCycleResult) -> List[MemoryRecord]:
        created: List[MemoryRecord] = []
        level = 1
        while level < self.config.max_reflection_depth:
            if not self._meta_ready(level):
                level += 1
                continue
            self.state = ReflectionState.META_REFLECTION
            tracker = self._meta_tracker(level)
            snapshot = tracker.snapshot()
            try:
                records = await self._meta_stage(level)
            except (ProviderError, ReflectionStageError) as exc:
                stage = f"meta_level_{level}"
                self._stage_failed(stage, exc)
                result.failed_stages.append(stage)
                break
            tracker.consume(snapshot, self.config.accumulator_reset)
            for record in records:
                self.note_memory(record)
            created.extend(records)
            level += 1
        return created

    def _meta_ready(self, level: int) -> bool:
        tracker = self.meta_trackers.get(level)
        if tracker is None or tracker.current_sum < self.config.effective_meta_threshold:
            return False
        candidates = self.store.reflections(min_level=1, max_level=level)
        return len(candidates) >= self.config.min_reflections_for_meta

    async def _meta_stage(self, level: int) -> List[MemoryRecord]:
        candidates = self.store.reflections(min_level=1, max_level=level)
        recent = sorted(candidates, key=lambda item: item.created_at, reverse=True)
        recent = recent[: self.config.recent_memories_for_questions]
        questions = await self._generate_questions([memory.text for memory in recent])
        drafts = await self._synthesise(questions, candidates, meta=True)
        return self._commit(drafts)

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------
    async def _generate_questions(self, texts: Sequence[str]) -> List[str]:
        count = self.config.questions_per_reflection
        response = await self.llm.generate(
            build_question_prompt(texts, count=count),
            GenerateOptions(temperature=self.config.question_temperature, max_tokens=300),
        )
        questions = parse_generated_questions(response, limit=count)
        if not questions:
            raise ReflectionStageError("model returned no usable questions")
        self.questions_generated += len(questions)
        logger.debug("Generated reflection questions: %s", questions)
        return questions

    async def _synthesise(
        self, questions: Sequence[str], candidates: Sequence[MemoryRecord], *, meta: bool
    ) -> List[_Draft]:
        drafts: List[_Draft] = []
        options = GenerateOptions(temperature=self.config.answer_temperature, max_tokens=150)
        for question in questions:
            outcome = await self.retrieval.rank(question, candidates, self.config.evidence_per_question)
            if not outcome.results:
                raise ReflectionStageError(f"no evidence retrieved for {question!r}")
            evidence = [memory.text for memory in outcome.memories]
            if meta:
                prompt = build_meta_prompt(question, evidence)
            else:
                prompt = build_answer_prompt(question, evidence)
            insight = parse_reflection_answer(await self.llm.generate(prompt, options))
            if not insight:
                raise ReflectionStageError(f"empty insight for {question!r}")
            classification = await self.classifier.classify(insight)
            drafts.append(_Draft(question, insight, classification, outcome))
        return drafts

    def _commit(self, drafts: Sequence[_Draft]) -> List[MemoryRecord]:
        records: List[MemoryRecord] = []
        for draft in drafts:
            record = self.store.add_reflection(
                draft.insight,
                estimate_reflection_importance(draft.insight),
                evidence_ids=draft.outcome.memory_ids,
                category=draft.classification.category,
                confidence=self.config.reflection_confidence,
                question=draft.question,
            )
            self.retrieval.apply(draft.outcome, self.store)
            self.questions_answered += 1
            records.append(record)
            logger.info(
                "Stored level-%s %s reflection: %s", record.level, record.category.value, record.text
            )
        return records

    # ------------------------------------------------------------------
    # Manual reflection and introspection
    # ------------------------------------------------------------------
    async def reflect_on(self, topic: str) -> Optional[MemoryRecord]:
        """Synthesise one reflection about ``topic`` without touching the accumulators."""

        async with self._lock:
            candidates = self.store.raw_memories()
            if not candidates:
                return None
            try:
                drafts = await self._synthesise([topic], candidates, meta=False)
            except (ProviderError, ReflectionStageError) as exc:
                self._stage_failed("topic", exc)
                return None
            return self._commit(drafts)[0]

    def reflections_for_planning(self, limit: int = 5) -> List[MemoryRecord]:
        ranked = sorted(
            self.store.reflections(),
            key=lambda item: (item.importance, item.level, item.created_at),
            reverse=True,
        )
        return ranked[: max(0, limit)]

    def statistics(self) -> ReflectionStatistics:
        reflections = self.store.reflections()
        by_level: Dict[int, int] = {}
        by_category: Dict[str, int] = {}
        for record in reflections:
            by_level[record.level] = by_level.get(record.level, 0) + 1
            if record.category is not None:
                by_category[record.category.value] = by_category.get(record.category.value, 0) + 1
        confidences = [record.confidence for record in reflections if record.confidence is not None]
        return ReflectionStatistics(
            total_reflections=len(reflections),
            reflections_by_level=by_level,
            reflections_by_category=by_category,
            average_confidence=sum(confidences) / len(confidences) if confidences else 0.0,
            questions_generated=self.questions_generated,
            questions_answered=self.questions_answered,
            importance_sum_triggers=self.importance_sum_triggers,
            time_triggers=self.time_triggers,
            manual_triggers=self.manual_triggers,
            failed_stages=self.failed_stages,
            last_reflection_time=self.last_reflection_time,
            current_importance_sum=self.tracker.current_sum,
            next_trigger_at=self.config.reflection_threshold,
            meta_sums={level: tracker.current_sum for level, tracker in self.meta_trackers.items()},
            state=self.state.value,
        )

    def debug_info(self) -> str:
        stats = self.statistics()
        remaining = max(0.0, self.config.reflection_interval - (self.store.now() - self.last_reflection_time))
        levels = ", ".join(f"L{level}={count}" for level, count in sorted(stats.reflections_by_level.items()))
        return "\n".join(
            [
                "Reflection Engine:",
                f"  State: {stats.state}",
                f"  Total reflections: {stats.total_reflections} ({levels or 'none'})",
                f"  Importance sum: {stats.current_importance_sum:.0f}/{stats.next_trigger_at:.0f}",
                f"  Time trigger in: {remaining:.1f}s",
                f"  Questions generated/answered: {stats.questions_generated}/{stats.questions_answered}",
                f"  Failed stages: {stats.failed_stages}",
            ]
        )


__all__ = [
    "ImportanceTracker",
    "ReflectionCycleResult",
    "ReflectionEngine",
    "ReflectionStageError",
    "ReflectionState",
    "ReflectionStatistics",
    "TRIGGER_IMPORTANCE",
    "TRIGGER_MANUAL",
    "TRIGGER_TIME",
]
