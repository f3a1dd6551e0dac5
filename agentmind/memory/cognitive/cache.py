"""Bounded LRU cache for embedding vectors keyed by embedding space and text."""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Any, Dict, List, Mapping, Optional, Tuple

CacheKey = Tuple[str, str]


class EmbeddingCache:
    """Thread-safe LRU mapping ``(space, text) -> vector``.

    ``space`` names the provider and model that produced the vector, so one
    cache can be shared by sessions on different providers without handing a
    vector from one embedding space to a caller working in another.  Lookups
    refresh recency; inserts beyond ``max_size`` evict the least recently used
    entry.
    """

    def __init__(self, max_size: int = 10000) -> None:
        if max_size < 0:
            raise ValueError("max_size must be non-negative")
        self.max_size = max_size
        self._entries: "OrderedDict[CacheKey, List[float]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, text: str, space: str = "") -> Optional[List[float]]:
        key = (space, text)
        with self._lock:
            vector = self._entries.get(key)
            if vector is None:
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return list(vector)

    def put(self, text: str, vector: List[float], space: str = "") -> Optional[str]:
        """Insert ``vector`` and return the text of the evicted entry, if any."""

        if self.max_size == 0:
            return None
        key = (space, text)
        evicted: Optional[str] = None
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = list(vector)
            if len(self._entries) > self.max_size:
                (_, evicted), _ = self._entries.popitem(last=False)
                self.evictions += 1
        return evicted

    def contains(self, text: str, space: str = "") -> bool:
        with self._lock:
            return (space, text) in self._entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> List[CacheKey]:
        with self._lock:
            return list(self._entries.keys())

    def __contains__(self, text: object) -> bool:
        key = text if isinstance(text, tuple) else ("", text)
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Mapping[str, Any]:
        with self._lock:
            payload: Dict[str, Any] = {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
            }
        return payload


__all__ = ["CacheKey", "EmbeddingCache"]
