"""Typed data structures used by the cognitive memory system."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple


class MemoryKind(str, Enum):
    OBSERVATION = "observation"
    REFLECTION = "reflection"
    PLAN = "plan"


class ReflectionCategory(str, Enum):
    """Category attached to every reflection record."""

    STRATEGY = "strategy"
    PATTERN = "pattern"
    EMOTIONAL = "emotional"
    LEARNING = "learning"
    SOCIAL = "social"
    META = "meta"

    @classmethod
    def parse(cls, value: object) -> Optional["ReflectionCategory"]:
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        return None


MIN_IMPORTANCE = 1
MAX_IMPORTANCE = 10


def clamp_importance(value: float) -> int:
    """Round and clamp an importance estimate into ``[1, 10]``."""

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Importance must be numeric, got {value!r}")
    return max(MIN_IMPORTANCE, min(MAX_IMPORTANCE, int(round(value))))


@dataclass
class MemoryRecord:
    """A single entry of an agent's memory stream.

    Observations and plans sit at ``level`` 0.  Reflections carry the extra
    reflection fields and always point at the records they were grounded in.
    """

    id: str
    kind: MemoryKind
    text: str
    importance: int
    created_at: float
    last_accessed_at: float
    embedding: Optional[List[float]] = None
    embedding_space: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    location: Optional[Tuple[float, float]] = None
    level: int = 0
    question: Optional[str] = None
    category: Optional[ReflectionCategory] = None
    evidence_ids: Tuple[str, ...] = ()
    confidence: Optional[float] = None

    @property
    def is_reflection(self) -> bool:
        return self.kind is MemoryKind.REFLECTION

    def to_payload(self) -> Mapping[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "text": self.text,
            "importance": self.importance,
            "created_at": self.created_at,
            "last_accessed_at": self.last_accessed_at,
            "embedding": list(self.embedding) if self.embedding is not None else None,
            "embedding_space": self.embedding_space,
            "tags": list(self.tags),
            "location": list(self.location) if self.location is not None else None,
            "level": self.level,
        }
        if self.is_reflection:
            payload.update(
                {
                    "question": self.question,
                    "category": self.category.value if self.category else None,
                    "evidence_ids": list(self.evidence_ids),
                    "confidence": self.confidence,
                }
            )
        return payload

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "MemoryRecord":
        location = data.get("location")
        embedding = data.get("embedding")
        return cls(
            id=str(data["id"]),
            kind=MemoryKind(data["kind"]),
            text=str(data["text"]),
            importance=clamp_importance(data["importance"]),
            created_at=float(data["created_at"]),
            last_accessed_at=float(data.get("last_accessed_at", data["created_at"])),
            embedding=[float(x) for x in embedding] if embedding is not None else None,
            embedding_space=data.get("embedding_space"),
            tags=[str(tag) for tag in data.get("tags") or []],
            location=(float(location[0]), float(location[1])) if location else None,
            level=int(data.get("level") or 0),
            question=data.get("question"),
            category=ReflectionCategory.parse(data.get("category")),
            evidence_ids=tuple(str(x) for x in data.get("evidence_ids") or ()),
            confidence=float(data["confidence"]) if data.get("confidence") is not None else None,
        )


@dataclass
class RetrievalResult:
    """A scored memory returned by the retrieval engine."""

    memory: MemoryRecord
    score: float
    recency_score: float
    importance_score: float
    relevance_score: Optional[float]

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "memory_id": self.memory.id,
            "text": self.memory.text,
            "score": self.score,
            "recency": self.recency_score,
            "importance": self.importance_score,
            "relevance": self.relevance_score,
        }


@dataclass
class ReflectionNode:
    """View of one reflection record inside a :class:`ReflectionTree`."""

    id: str
    content: str
    level: int
    parent_ids: List[str]
    child_ids: List[str]
    importance: int
    timestamp: float
    category: Optional[ReflectionCategory]
    confidence: Optional[float]
    question: Optional[str] = None

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "level": self.level,
            "parent_ids": list(self.parent_ids),
            "child_ids": list(self.child_ids),
            "importance": self.importance,
            "timestamp": self.timestamp,
            "category": self.category.value if self.category else None,
            "confidence": self.confidence,
            "question": self.question,
        }


@dataclass
class ReflectionTree:
    """Derived, level-ordered view over an agent's reflections."""

    root_observations: List[str] = field(default_factory=list)
    first_order: List[ReflectionNode] = field(default_factory=list)
    second_order: List[ReflectionNode] = field(default_factory=list)
    higher_order: List[ReflectionNode] = field(default_factory=list)
    insights: List[str] = field(default_factory=list)

    @property
    def nodes(self) -> List[ReflectionNode]:
        return [*self.first_order, *self.second_order, *self.higher_order]

    @property
    def total_nodes(self) -> int:
        return len(self.nodes)

    @property
    def max_depth(self) -> int:
        return max((node.level for node in self.nodes), default=0)

    def level(self, level: int) -> List[ReflectionNode]:
        return [node for node in self.nodes if node.level == level]

    def __iter__(self) -> Iterable[ReflectionNode]:
        return iter(self.nodes)

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "root_observations": list(self.root_observations),
            "first_order": [node.to_payload() for node in self.first_order],
            "second_order": [node.to_payload() for node in self.second_order],
            "higher_order": [node.to_payload() for node in self.higher_order],
            "insights": list(self.insights),
            "total_nodes": self.total_nodes,
            "max_depth": self.max_depth,
        }


def build_reflection_tree(
    records: Sequence[MemoryRecord], *, max_insights: int = 5
) -> ReflectionTree:
    """Organise reflection records by level and link parents to children."""

    by_id = {record.id: record for record in records}
    reflections = [record for record in records if record.is_reflection]
    children: Dict[str, List[str]] = {}
    for reflection in reflections:
        for parent_id in reflection.evidence_ids:
            children.setdefault(parent_id, []).append(reflection.id)

    tree = ReflectionTree()
    roots: List[str] = []
    for reflection in sorted(reflections, key=lambda item: (item.level, item.created_at)):
        node = ReflectionNode(
            id=reflection.id,
            content=reflection.text,
            level=reflection.level,
            parent_ids=list(reflection.evidence_ids),
            child_ids=list(children.get(reflection.id, [])),
            importance=reflection.importance,
            timestamp=reflection.created_at,
            category=reflection.category,
            confidence=reflection.confidence,
            question=reflection.question,
        )
        if node.level <= 1:
            tree.first_order.append(node)
        elif node.level == 2:
            tree.second_order.append(node)
        else:
            tree.higher_order.append(node)
        for parent_id in reflection.evidence_ids:
            parent = by_id.get(parent_id)
            if parent is not None and not parent.is_reflection and parent_id not in roots:
                roots.append(parent_id)

    tree.root_observations = roots
    ranked = sorted(
        reflections,
        key=lambda item: (item.importance, item.level, item.created_at),
        reverse=True,
    )
    tree.insights = [record.text for record in ranked[:max_insights]]
    return tree


@dataclass
class ProviderStats:
    """Per-provider call accounting."""

    name: str
    model: str = "unknown"
    total_calls: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    avg_latency: float = 0.0
    error_count: int = 0
    consecutive_failures: int = 0
    is_available: bool = False

    def record_success(self, *, latency: float, tokens: int, cost: float) -> None:
        self.total_calls += 1
        self.total_tokens += tokens
        self.total_cost += cost
        self.avg_latency += (latency - self.avg_latency) / self.total_calls
        self.consecutive_failures = 0

    def record_failure(self) -> None:
        self.error_count += 1
        self.consecutive_failures += 1

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "name": self.name,
            "model": self.model,
            "total_calls": self.total_calls,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "total_tokens": self.total_tokens,
            "total_cost": self.total_cost,
            "avg_latency": self.avg_latency,
            "error_count": self.error_count,
            "consecutive_failures": self.consecutive_failures,
            "is_available": self.is_available,
        }


def dumps_payload(data: Mapping[str, Any]) -> str:
    """Render ``data`` as formatted JSON for logs and the CLI."""

    return json.dumps(data, ensure_ascii=False, indent=2)


__all__ = [
    "MAX_IMPORTANCE",
    "MIN_IMPORTANCE",
    "MemoryKind",
    "MemoryRecord",
    "ProviderStats",
    "ReflectionCategory",
    "ReflectionNode",
    "ReflectionTree",
    "RetrievalResult",
    "build_reflection_tree",
    "clamp_importance",
    "dumps_payload",
]
