"""Append-only in-memory store for one agent's memory stream."""

from __future__ import annotations

import json
import logging
import math
import threading
import time
import uuid
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .schemas import (
    MemoryKind,
    MemoryRecord,
    ReflectionCategory,
    ReflectionTree,
    build_reflection_tree,
    clamp_importance,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class MemoryStore:
    """Observations, reflections and plans belonging to one agent.

    Records are never removed.  Every mutation goes through a lock so that the
    store can be read from other threads while an agent is writing.
    """

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self._clock: Clock = clock or time.monotonic
        self._records: List[MemoryRecord] = []
        self._index: Dict[str, MemoryRecord] = {}
        self._lock = threading.Lock()

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def add_observation(
        self,
        text: str,
        importance: float,
        *,
        tags: Sequence[str] = (),
        location: Optional[Tuple[float, float]] = None,
    ) -> MemoryRecord:
        return self._append(
            MemoryKind.OBSERVATION, text, importance, tags=list(tags), location=location
        )

    def add_plan(
        self,
        text: str,
        importance: float,
        *,
        tags: Sequence[str] = (),
        location: Optional[Tuple[float, float]] = None,
    ) -> MemoryRecord:
        return self._append(
            MemoryKind.PLAN, text, importance, tags=[*tags, "plan"], location=location
        )

    def add_reflection(
        self,
        text: str,
        importance: float,
        *,
        evidence_ids: Sequence[str],
        category: ReflectionCategory,
        confidence: float,
        question: Optional[str] = None,
        level: Optional[int] = None,
        tags: Sequence[str] = (),
    ) -> MemoryRecord:
        """Append a reflection after checking the tree invariants.

        ``level`` defaults to one above the highest evidence level.  Dangling
        evidence ids or a level that does not exceed every evidence level raise
        :class:`ValueError`.
        """

        evidence = tuple(dict.fromkeys(evidence_ids))
        if not evidence:
            raise ValueError("A reflection needs at least one evidence id")
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"Confidence must lie in [0, 1], got {confidence}")

        with self._lock:
            missing = [memory_id for memory_id in evidence if memory_id not in self._index]
            if missing:
                raise ValueError(f"Dangling evidence ids: {', '.join(missing)}")
            floor = max(self._index[memory_id].level for memory_id in evidence)
            resolved_level = floor + 1 if level is None else level
            if resolved_level <= floor:
                raise ValueError(
                    f"Reflection level {resolved_level} must exceed evidence level {floor}"
                )
            record = self._build(
                MemoryKind.REFLECTION,
                text,
                importance,
                tags=[*tags, category.value, "reflection"],
                location=None,
            )
            record.level = resolved_level
            record.question = question
            record.category = category
            record.evidence_ids = evidence
            record.confidence = confidence
            self._store(record)
        return record

    def _append(
        self,
        kind: MemoryKind,
        text: str,
        importance: float,
        *,
        tags: List[str],
        location: Optional[Tuple[float, float]],
    ) -> MemoryRecord:
        with self._lock:
            record = self._build(kind, text, importance, tags=tags, location=location)
            self._store(record)
        return record

    def _build(
        self,
        kind: MemoryKind,
        text: str,
        importance: float,
        *,
        tags: List[str],
        location: Optional[Tuple[float, float]],
    ) -> MemoryRecord:
        if not isinstance(text, str) or not text.strip():
            raise ValueError("Memory text must be a non-empty string")
        if isinstance(importance, float) and math.isnan(importance):
            raise ValueError("Importance must not be NaN")
        now = self._clock()
        return MemoryRecord(
            id=str(uuid.uuid4()),
            kind=kind,
            text=text.strip(),
            importance=clamp_importance(importance),
            created_at=now,
            last_accessed_at=now,
            tags=tags,
            location=location,
        )

    def _store(self, record: MemoryRecord) -> None:
        self._records.append(record)
        self._index[record.id] = record
        logger.debug("Stored %s %s (importance=%s)", record.kind.value, record.id, record.importance)

    def mark_accessed(self, memory_ids: Iterable[str], *, at: Optional[float] = None) -> None:
        timestamp = self._clock() if at is None else at
        with self._lock:
            for memory_id in memory_ids:
                record = self._index.get(memory_id)
                if record is not None:
                    record.last_accessed_at = max(record.last_accessed_at, timestamp)

    def set_embedding(
        self, memory_id: str, embedding: Sequence[float], space: Optional[str] = None
    ) -> None:
        """Store a vector together with the embedding space that produced it."""

        with self._lock:
            record = self._index.get(memory_id)
            if record is not None:
                record.embedding = [float(x) for x in embedding]
                record.embedding_space = space

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, memory_id: str) -> Optional[MemoryRecord]:
        return self._index.get(memory_id)

    def __contains__(self, memory_id: object) -> bool:
        return memory_id in self._index

    def __len__(self) -> int:
        return len(self._records)

    def all(self) -> List[MemoryRecord]:
        with self._lock:
            return list(self._records)

    def by_kind(self, kind: MemoryKind) -> List[MemoryRecord]:
        return [record for record in self.all() if record.kind is kind]

    def raw_memories(self) -> List[MemoryRecord]:
        """Everything except reflections."""

        return [record for record in self.all() if not record.is_reflection]

    def reflections(self, *, min_level: int = 1, max_level: Optional[int] = None) -> List[MemoryRecord]:
        return [
            record
            for record in self.all()
            if record.is_reflection
            and record.level >= min_level
            and (max_level is None or record.level <= max_level)
        ]

    def recent(self, count: int = 10, *, kinds: Optional[Iterable[MemoryKind]] = None) -> List[MemoryRecord]:
        allowed = set(kinds) if kinds is not None else None
        records = [
            record for record in self.all() if allowed is None or record.kind in allowed
        ]
        records.sort(key=lambda item: item.created_at, reverse=True)
        return records[: max(0, count)]

    def at_location(self, location: Tuple[float, float], radius: float = 3.0) -> List[MemoryRecord]:
        matches: List[MemoryRecord] = []
        for record in self.all():
            if record.location is None:
                continue
            distance = math.hypot(record.location[0] - location[0], record.location[1] - location[1])
            if distance <= radius:
                matches.append(record)
        return matches

    def by_tag(self, tag: str) -> List[MemoryRecord]:
        return [record for record in self.all() if tag in record.tags]

    def needing_embeddings(self, space: Optional[str] = None) -> List[MemoryRecord]:
        """Records without a vector, or with one from a space other than ``space``."""

        return [
            record
            for record in self.all()
            if not record.embedding or (space is not None and record.embedding_space != space)
        ]

    def reflection_tree(self, *, max_insights: int = 5) -> ReflectionTree:
        return build_reflection_tree(self.all(), max_insights=max_insights)

    def statistics(self) -> Mapping[str, object]:
        records = self.all()
        by_kind = {kind.value: 0 for kind in MemoryKind}
        for record in records:
            by_kind[record.kind.value] += 1
        average = sum(record.importance for record in records) / len(records) if records else 0.0
        return {
            "total": len(records),
            "by_kind": by_kind,
            "with_embeddings": sum(1 for record in records if record.embedding),
            "avg_importance": round(average, 1),
        }

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------
    def snapshot(self) -> List[Mapping[str, object]]:
        return [record.to_payload() for record in self.all()]

    def export_json(self) -> str:
        return json.dumps(self.snapshot(), ensure_ascii=False, indent=2)

    def import_json(self, payload: str) -> int:
        """Append records from :meth:`export_json` output; return how many were loaded."""

        data = json.loads(payload)
        if not isinstance(data, list):
            raise ValueError("Expected a JSON list of memory records")
        records = [MemoryRecord.from_payload(item) for item in data]
        with self._lock:
            known: Dict[str, MemoryRecord] = dict(self._index)
            for record in records:
                if record.id in known:
                    raise ValueError(f"Duplicate memory id {record.id}")
                known[record.id] = record
            for record in records:
                missing = [memory_id for memory_id in record.evidence_ids if memory_id not in known]
                if missing:
                    raise ValueError(f"Dangling evidence ids: {', '.join(missing)}")
            for record in records:
                self._check_imported(record, known)
            for record in records:
                self._store(record)
        logger.info("Imported %s memories", len(records))
        return len(records)

    @staticmethod
    def _check_imported(record: MemoryRecord, known: Mapping[str, MemoryRecord]) -> None:
        """Apply the :meth:`add_reflection` invariants to an imported record."""

        if not record.is_reflection:
            if record.evidence_ids or record.level != 0:
                raise ValueError(f"Memory {record.id} is not a reflection but has level or evidence")
            return
        if not record.evidence_ids:
            raise ValueError(f"Reflection {record.id} has no evidence ids")
        if record.confidence is not None and not 0.0 <= record.confidence <= 1.0:
            raise ValueError(f"Reflection {record.id} confidence must lie in [0, 1]")
        floor = max(known[memory_id].level for memory_id in record.evidence_ids)
        if record.level <= floor:
            raise ValueError(
                f"Reflection {record.id} level {record.level} must exceed evidence level {floor}"
            )


__all__ = ["Clock", "MemoryStore"]
