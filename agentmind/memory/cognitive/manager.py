"""Per-agent facade over the memory store, retrieval and reflection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from .classifier import CategoryClassifier, estimate_observation_importance
from .config import CognitiveConfig
from .embeddings import EmbeddingService
from .llm import LLMService
from .prompts import build_planning_prompt
from .reflection import ReflectionCycleResult, ReflectionEngine
from .retrieval import RetrievalEngine, RetrievalOutcome
from .schemas import MemoryKind, MemoryRecord, ReflectionTree
from .storage import Clock, MemoryStore

logger = logging.getLogger(__name__)


@dataclass
class AgentMemory:
    """Memory stream, retrieval and reflection for a single agent."""

    agent_id: str
    embeddings: EmbeddingService
    llm: LLMService
    config: CognitiveConfig = field(default_factory=CognitiveConfig)
    clock: Optional[Clock] = None
    classifier: Optional[CategoryClassifier] = None
    store: MemoryStore = field(init=False)
    retrieval: RetrievalEngine = field(init=False)
    reflection: ReflectionEngine = field(init=False)

    def __post_init__(self) -> None:
        self.store = MemoryStore(clock=self.clock)
        self.retrieval = RetrievalEngine(
            self.embeddings,
            weights=self.config.retrieval_weights,
            recency_half_life=self.config.recency_half_life,
            clock=self.store.now,
            top_k=self.config.retrieval_top_k,
        )
        self.reflection = ReflectionEngine(
            self.store,
            self.retrieval,
            self.llm,
            config=self.config,
            classifier=self.classifier,
        )

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------
    def record_observation(
        self,
        text: str,
        importance: Optional[float] = None,
        *,
        tags: Sequence[str] = (),
        location: Optional[Tuple[float, float]] = None,
    ) -> str:
        if importance is None:
            importance = estimate_observation_importance(text)
        record = self.store.add_observation(text, importance, tags=tags, location=location)
        self.reflection.note_memory(record)
        return record.id

    def record_plan(
        self,
        text: str,
        importance: float = 5,
        *,
        tags: Sequence[str] = (),
        location: Optional[Tuple[float, float]] = None,
    ) -> str:
        record = self.store.add_plan(text, importance, tags=tags, location=location)
        self.reflection.note_memory(record)
        return record.id

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------
    async def retrieve(self, query: str, k: Optional[int] = None) -> List[MemoryRecord]:
        outcome = await self.retrieve_scored(query, k)
        return outcome.memories

    async def retrieve_scored(self, query: str, k: Optional[int] = None) -> RetrievalOutcome:
        return await self.retrieval.retrieve(query, self.store.all(), k, store=self.store)

    async def retrieve_by_kind(
        self, kind: MemoryKind, query: Optional[str] = None, k: Optional[int] = None
    ) -> List[MemoryRecord]:
        outcome = await self.retrieval.retrieve_by_kind(self.store, kind, query, k)
        return outcome.memories

    async def retrieve_by_location(
        self,
        location: Tuple[float, float],
        radius: float = 3.0,
        query: Optional[str] = None,
        k: Optional[int] = None,
    ) -> List[MemoryRecord]:
        outcome = await self.retrieval.retrieve_by_location(self.store, location, radius, query, k)
        return outcome.memories

    # ------------------------------------------------------------------
    # Reflection
    # ------------------------------------------------------------------
    async def maybe_reflect(self) -> ReflectionCycleResult:
        return await self.reflection.maybe_reflect()

    async def force_reflection(self) -> ReflectionCycleResult:
        return await self.reflection.force_reflection()

    async def reflect_on(self, topic: str) -> Optional[MemoryRecord]:
        return await self.reflection.reflect_on(topic)

    def get_reflection_tree(self) -> ReflectionTree:
        return self.store.reflection_tree(max_insights=self.config.max_insights)

    def planning_prompt(self, goal: str, context: str, limit: int = 5) -> str:
        """Prompt for the planner that folds in the top reflections."""

        reflections = self.reflection.reflections_for_planning(limit)
        return build_planning_prompt(goal, [record.text for record in reflections], context)

    def statistics(self) -> Mapping[str, Any]:
        return {
            "agent_id": self.agent_id,
            "memories": self.store.statistics(),
            "retrieval": self.retrieval.statistics(),
            "reflection": self.reflection.statistics().to_payload(),
        }


__all__ = ["AgentMemory"]
