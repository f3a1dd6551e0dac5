"""Memory retrieval scored by recency, importance and relevance."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from .config import RetrievalWeights
from .embeddings import EmbeddingResult, EmbeddingService, cosine_similarity
from .schemas import MAX_IMPORTANCE, MemoryKind, MemoryRecord, RetrievalResult
from .storage import Clock, MemoryStore

logger = logging.getLogger(__name__)


@dataclass
class RetrievalOutcome:
    """Ranked results plus the side effects that retrieving them implies.

    Nothing is written to the records until :meth:`RetrievalEngine.apply` runs,
    so a caller can rank, inspect and then discard an outcome.
    """

    results: List[RetrievalResult] = field(default_factory=list)
    degraded: bool = False
    accessed_at: Optional[float] = None
    pending_embeddings: Dict[str, List[float]] = field(default_factory=dict)
    embedding_space: Optional[str] = None
    applied: bool = False
    _embedded: Dict[str, MemoryRecord] = field(default_factory=dict, repr=False)

    @property
    def memories(self) -> List[MemoryRecord]:
        return [result.memory for result in self.results]

    @property
    def memory_ids(self) -> List[str]:
        return [result.memory.id for result in self.results]

    def __iter__(self) -> Iterator[RetrievalResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)


class RetrievalEngine:
    """Rank candidate memories for a query.

    ``score = w_r * recency + w_i * importance + w_v * relevance`` where recency
    decays exponentially with ``recency_half_life`` seconds since the record
    was last accessed, importance is ``importance / 10`` and relevance is the
    cosine similarity between query and record embeddings mapped to ``[0, 1]``.
    When the query embedding is degraded the relevance term is dropped.
    """

    def __init__(
        self,
        embeddings: EmbeddingService,
        *,
        weights: Optional[RetrievalWeights] = None,
        recency_half_life: float = 3600.0,
        clock: Optional[Clock] = None,
        top_k: int = 10,
    ) -> None:
        if recency_half_life <= 0:
            raise ValueError("recency_half_life must be positive")
        self.embeddings = embeddings
        self._weights = weights or RetrievalWeights()
        self.recency_half_life = recency_half_life
        self.top_k = top_k
        self._clock: Clock = clock or time.monotonic
        self._lock = threading.Lock()
        self.total_retrievals = 0
        self.degraded_count = 0
        self.embeddings_generated = 0
        self.last_latency = 0.0

    # ------------------------------------------------------------------
    # Weights
    # ------------------------------------------------------------------
    @property
    def weights(self) -> RetrievalWeights:
        return self._weights

    def set_weights(
        self,
        recency: Optional[float] = None,
        importance: Optional[float] = None,
        relevance: Optional[float] = None,
    ) -> RetrievalWeights:
        current = self._weights
        self._weights = RetrievalWeights(
            recency=current.recency if recency is None else recency,
            importance=current.importance if importance is None else importance,
            relevance=current.relevance if relevance is None else relevance,
        )
        logger.info("Retrieval weights updated: %s", self._weights.to_payload())
        return self._weights

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------
    def recency_score(self, memory: MemoryRecord, now: float) -> float:
        elapsed = max(0.0, now - memory.last_accessed_at)
        return 0.5 ** (elapsed / self.recency_half_life)

    @staticmethod
    def importance_score(memory: MemoryRecord) -> float:
        return memory.importance / MAX_IMPORTANCE

    @staticmethod
    def relevance_score(query_vector: Sequence[float], memory_vector: Sequence[float]) -> float:
        return (cosine_similarity(query_vector, memory_vector) + 1.0) / 2.0

    async def rank(
        self, query: str, candidates: Sequence[MemoryRecord], k: Optional[int] = None
    ) -> RetrievalOutcome:
        """Score ``candidates`` against ``query`` without mutating any record."""

        limit = self.top_k if k is None else k
        if limit <= 0 or not candidates:
            return RetrievalOutcome()

        started = time.perf_counter()
        now = self._clock()
        query_result = await self.embeddings.embed_detailed(query)
        degraded = query_result.degraded
        pending: Dict[str, List[float]] = {}
        embedded: Dict[str, MemoryRecord] = {}

        # A failover while the candidates are embedded moves them into another
        # space; the query is then re-embedded there once.
        for _ in range(2):
            if degraded:
                break
            missing = [
                memory for memory in candidates if not self._comparable(memory, query_result)
            ]
            if not missing:
                break
            batch = await self.embeddings.embed_batch_detailed(memory.text for memory in missing)
            if batch.degraded:
                degraded = True
                break
            if batch.space == query_result.space:
                for memory, vector in zip(missing, batch.vectors):
                    pending[memory.id] = vector
                    embedded[memory.id] = memory
                break
            logger.info(
                "Embedding space changed %s -> %s during retrieval, re-embedding query",
                query_result.space,
                batch.space,
            )
            query_result = await self.embeddings.embed_detailed(query)
            degraded = query_result.degraded
        else:
            degraded = True

        weights = self._weights
        scored: List[RetrievalResult] = []
        for memory in candidates:
            recency = self.recency_score(memory, now)
            importance = self.importance_score(memory)
            score = weights.recency * recency + weights.importance * importance
            relevance: Optional[float] = None
            if not degraded:
                vector = pending.get(memory.id) or memory.embedding or []
                relevance = self.relevance_score(query_result.vector, vector)
                score += weights.relevance * relevance
            scored.append(
                RetrievalResult(
                    memory=memory,
                    score=score,
                    recency_score=recency,
                    importance_score=importance,
                    relevance_score=relevance,
                )
            )

        scored.sort(key=lambda item: (item.score, item.memory.last_accessed_at), reverse=True)

        with self._lock:
            self.total_retrievals += 1
            if degraded:
                self.degraded_count += 1
            self.last_latency = time.perf_counter() - started
        if degraded:
            logger.warning("Retrieval for %r ranked without relevance (degraded embeddings)", query)
        logger.debug("Ranked %s candidates for %r", len(candidates), query)

        return RetrievalOutcome(
            results=scored[:limit],
            degraded=degraded,
            accessed_at=now,
            pending_embeddings=pending,
            embedding_space=None if degraded else query_result.space,
            _embedded=embedded,
        )

    @staticmethod
    def _comparable(memory: MemoryRecord, query: EmbeddingResult) -> bool:
        return (
            bool(memory.embedding)
            and memory.embedding_space == query.space
            and len(memory.embedding) == len(query.vector)
        )

    def apply(self, outcome: RetrievalOutcome, store: Optional[MemoryStore] = None) -> None:
        """Commit the touches and computed embeddings of ``outcome``."""

        if outcome.applied or outcome.accessed_at is None:
            return
        if store is not None:
            for memory_id, vector in outcome.pending_embeddings.items():
                store.set_embedding(memory_id, vector, outcome.embedding_space)
            store.mark_accessed(outcome.memory_ids, at=outcome.accessed_at)
        else:
            for result in outcome.results:
                memory = result.memory
                memory.last_accessed_at = max(memory.last_accessed_at, outcome.accessed_at)
            for memory_id, vector in outcome.pending_embeddings.items():
                record = outcome._embedded.get(memory_id)
                if record is not None:
                    record.embedding = list(vector)
                    record.embedding_space = outcome.embedding_space
        with self._lock:
            self.embeddings_generated += len(outcome.pending_embeddings)
        outcome.applied = True

    async def retrieve(
        self,
        query: str,
        candidates: Sequence[MemoryRecord],
        k: Optional[int] = None,
        *,
        store: Optional[MemoryStore] = None,
    ) -> RetrievalOutcome:
        outcome = await self.rank(query, candidates, k)
        self.apply(outcome, store)
        return outcome

    # ------------------------------------------------------------------
    # Filtered retrieval
    # ------------------------------------------------------------------
    async def retrieve_by_kind(
        self,
        store: MemoryStore,
        kind: MemoryKind,
        query: Optional[str] = None,
        k: Optional[int] = None,
    ) -> RetrievalOutcome:
        candidates = store.by_kind(kind)
        if query:
            return await self.retrieve(query, candidates, k, store=store)
        return self._retrieve_without_query(store, candidates, k)

    async def retrieve_by_location(
        self,
        store: MemoryStore,
        location: Tuple[float, float],
        radius: float = 3.0,
        query: Optional[str] = None,
        k: Optional[int] = None,
    ) -> RetrievalOutcome:
        candidates = store.at_location(location, radius)
        if query:
            return await self.retrieve(query, candidates, k, store=store)
        return self._retrieve_without_query(store, candidates, k)

    def _retrieve_without_query(
        self, store: MemoryStore, candidates: Sequence[MemoryRecord], k: Optional[int]
    ) -> RetrievalOutcome:
        limit = self.top_k if k is None else k
        if limit <= 0 or not candidates:
            return RetrievalOutcome()
        now = self._clock()
        weights = self._weights
        scored = []
        for memory in candidates:
            recency = self.recency_score(memory, now)
            importance = self.importance_score(memory)
            scored.append(
                RetrievalResult(
                    memory=memory,
                    score=weights.recency * recency + weights.importance * importance,
                    recency_score=recency,
                    importance_score=importance,
                    relevance_score=None,
                )
            )
        scored.sort(key=lambda item: (item.score, item.memory.last_accessed_at), reverse=True)
        outcome = RetrievalOutcome(results=scored[:limit], accessed_at=now)
        self.apply(outcome, store)
        return outcome

    async def generate_missing_embeddings(self, store: MemoryStore) -> int:
        """Embed every record whose vector is missing or from another space.

        Returns how many vectors were stored.
        """

        missing = store.needing_embeddings(self.embeddings.space)
        if not missing:
            return 0
        batch = await self.embeddings.embed_batch_detailed(memory.text for memory in missing)
        if batch.degraded:
            logger.warning("Skipped storing %s degraded embeddings", len(missing))
            return 0
        for memory, vector in zip(missing, batch.vectors):
            store.set_embedding(memory.id, vector, batch.space)
        with self._lock:
            self.embeddings_generated += len(missing)
        logger.info("Generated embeddings for %s memories", len(missing))
        return len(missing)

    def statistics(self) -> Mapping[str, object]:
        return {
            "total_retrievals": self.total_retrievals,
            "degraded_count": self.degraded_count,
            "embeddings_generated": self.embeddings_generated,
            "last_latency": self.last_latency,
            "recency_half_life": self.recency_half_life,
            "weights": self._weights.to_payload(),
        }


__all__ = ["RetrievalEngine", "RetrievalOutcome"]
