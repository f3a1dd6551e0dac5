"""Unified embedding abstraction with fallback chain, LRU cache and statistics."""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .cache import EmbeddingCache
from .clients import EMBEDDING_PROVIDERS, ProviderClient, build_embedding_client, pseudo_embedding
from .errors import (
    AllProvidersExhausted,
    InvalidResponse,
    ProviderError,
    ProviderTimeout,
    RateLimited,
)
from .schemas import ProviderStats

if TYPE_CHECKING:
    from .config import CognitiveConfig

logger = logging.getLogger(__name__)


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """Cosine similarity in ``[-1, 1]``; 0.0 for empty, mismatched or zero vectors."""

    if not vec1 or not vec2 or len(vec1) != len(vec2):
        return 0.0
    dot = sum(a * b for a, b in zip(vec1, vec2))
    norm1 = math.sqrt(sum(a * a for a in vec1))
    norm2 = math.sqrt(sum(b * b for b in vec2))
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return max(-1.0, min(1.0, dot / (norm1 * norm2)))


@dataclass
class ProviderState:
    """Failover state for one embedding session.

    Holds the active provider, the availability flags from the last
    health check and per-provider statistics.  Instances are injected into
    :class:`EmbeddingService` so separate sessions never share failover state.
    """

    active: str
    stats: Dict[str, ProviderStats] = field(default_factory=dict)
    fallback_switches: int = 0
    degraded_count: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def ensure(self, name: str, *, model: str = "unknown", available: bool = False) -> ProviderStats:
        with self._lock:
            stats = self.stats.get(name)
            if stats is None:
                stats = ProviderStats(name=name, model=model, is_available=available)
                self.stats[name] = stats
            return stats

    def is_available(self, name: str) -> bool:
        stats = self.stats.get(name)
        return bool(stats and stats.is_available)

    def mark_available(self, name: str, available: bool) -> None:
        with self._lock:
            stats = self.stats[name]
            stats.is_available = available
            if available:
                stats.consecutive_failures = 0

    def record_success(self, name: str, *, latency: float, tokens: int, cost: float, model: str) -> None:
        with self._lock:
            stats = self.stats[name]
            stats.model = model
            stats.record_success(latency=latency, tokens=tokens, cost=cost)

    def record_failure(self, name: str, *, unavailable_after: int) -> bool:
        """Count a failure; return ``True`` when the provider was just marked unavailable."""

        with self._lock:
            stats = self.stats[name]
            stats.record_failure()
            if unavailable_after > 0 and stats.consecutive_failures >= unavailable_after and stats.is_available:
                stats.is_available = False
                return True
            return False

    def record_cache(self, *, hits: int = 0, misses: int = 0) -> None:
        with self._lock:
            stats = self.stats.get(self.active)
            if stats is not None:
                stats.cache_hits += hits
                stats.cache_misses += misses

    def record_degraded(self) -> None:
        with self._lock:
            self.degraded_count += 1

    def switch(self, name: str) -> Optional[str]:
        """Make ``name`` active; return the previous provider when it changed."""

        with self._lock:
            if self.active == name:
                return None
            previous = self.active
            self.active = name
            self.fallback_switches += 1
            return previous


@dataclass
class EmbeddingResult:
    """One vector plus the embedding space (``provider:model``) it lives in.

    Vectors are only comparable when their ``space`` matches.  Degraded
    pseudo-embeddings carry no space.
    """

    vector: List[float]
    provider: Optional[str]
    cached: bool = False
    degraded: bool = False
    space: Optional[str] = None


@dataclass
class BatchEmbeddingResult:
    vectors: List[List[float]]
    degraded: bool = False
    cache_hits: int = 0
    space: Optional[str] = None


@dataclass
class UnifiedEmbeddingStats:
    provider: str
    model: str
    dimension: Optional[int]
    total_calls: int
    cache_hits: int
    cache_misses: int
    total_cost: float
    avg_latency: float
    errors: int
    degraded_count: int
    fallback_switches: int
    availability: Dict[str, bool]
    providers: Dict[str, Mapping[str, Any]]
    cache: Mapping[str, Any]

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "dimension": self.dimension,
            "total_calls": self.total_calls,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "total_cost": self.total_cost,
            "avg_latency": self.avg_latency,
            "errors": self.errors,
            "degraded_count": self.degraded_count,
            "fallback_switches": self.fallback_switches,
            "availability": dict(self.availability),
            "providers": dict(self.providers),
            "cache": dict(self.cache),
        }


class EmbeddingService:
    """Single entry point over several embedding providers.

    Calls consult the cache, then the active provider, then the fallback chain
    in order.  The first provider that answers becomes active (sticky
    failover).  When the whole chain fails a deterministic pseudo-embedding is
    returned instead of raising, and ``degraded_count`` is incremented.
    """

    def __init__(
        self,
        clients: Mapping[str, ProviderClient],
        *,
        provider: str,
        fallback_chain: Sequence[str] = ("openai", "ollama", "heuristic"),
        cache: Optional[EmbeddingCache] = None,
        max_cache_size: int = 10000,
        enable_cache: bool = True,
        state: Optional[ProviderState] = None,
        fallback_dimension: int = 1536,
        timeout: float = 30.0,
        health_timeout: float = 5.0,
        max_retries: int = 0,
        retry_backoff: float = 1.0,
        unavailable_after_failures: int = 3,
    ) -> None:
        if provider not in clients:
            raise ValueError(f"Primary embedding provider '{provider}' is not configured")
        unknown = [name for name in fallback_chain if name not in clients]
        if unknown:
            raise ValueError(f"Fallback providers without a client: {', '.join(unknown)}")

        self.clients: Dict[str, ProviderClient] = dict(clients)
        self.primary = provider
        self.fallback_chain: List[str] = list(fallback_chain)
        self.cache = cache if cache is not None else EmbeddingCache(max_cache_size)
        self.enable_cache = enable_cache
        self.state = state if state is not None else ProviderState(active=provider)
        self.fallback_dimension = fallback_dimension
        self.timeout = timeout
        self.health_timeout = health_timeout
        self.max_retries = max(0, max_retries)
        self.retry_backoff = retry_backoff
        self.unavailable_after_failures = unavailable_after_failures
        self._dimension: Optional[int] = self.clients[self.state.active].dimension

        for name, client in self.clients.items():
            self.state.ensure(name, model=client.model, available=client.has_credentials())

        logger.info(
            "EmbeddingService initialised (primary=%s, fallback=%s)",
            self.primary,
            " -> ".join(self.fallback_chain),
        )

    @classmethod
    def from_config(
        cls,
        config: "CognitiveConfig",
        *,
        cache: Optional[EmbeddingCache] = None,
        state: Optional[ProviderState] = None,
    ) -> "EmbeddingService":
        names = [config.embedding_provider, *config.embedding_fallback_chain]
        clients: Dict[str, ProviderClient] = {}
        for name in names:
            if name not in clients:
                clients[name] = build_embedding_client(
                    name,
                    config.provider_credentials,
                    fallback_dimension=config.fallback_dimension,
                    timeout=config.embedding_timeout,
                    max_concurrency=config.max_concurrency,
                )
        return cls(
            clients,
            provider=config.embedding_provider,
            fallback_chain=config.embedding_fallback_chain,
            cache=cache,
            max_cache_size=config.max_cache_size,
            enable_cache=config.enable_cache,
            state=state,
            fallback_dimension=config.fallback_dimension,
            timeout=config.embedding_timeout,
            health_timeout=config.health_timeout,
            max_retries=config.max_retries,
            retry_backoff=config.retry_backoff,
            unavailable_after_failures=config.unavailable_after_failures,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def current_provider(self) -> str:
        return self.state.active

    @property
    def current_model(self) -> str:
        return self.clients[self.state.active].model

    @property
    def dimension(self) -> int:
        return self._dimension or self.fallback_dimension

    @property
    def space(self) -> str:
        """Embedding space of the active provider."""

        return self.space_of(self.state.active)

    def space_of(self, name: str) -> str:
        client = self.clients[name]
        model = getattr(client, "embedding_model", None) or client.model
        return f"{name}:{model}"

    def is_cached(self, text: str) -> bool:
        return self.cache.contains(text, self.space)

    async def embed(self, text: str) -> List[float]:
        result = await self.embed_detailed(text)
        return result.vector

    async def embed_detailed(self, text: str) -> EmbeddingResult:
        if self.enable_cache:
            space = self.space
            cached = self.cache.get(text, space)
            if cached is not None:
                self.state.record_cache(hits=1)
                return EmbeddingResult(
                    vector=cached, provider=self.state.active, cached=True, space=space
                )
            self.state.record_cache(misses=1)

        try:
            vectors, provider = await self._embed_with_fallback([text])
        except AllProvidersExhausted as exc:
            logger.warning("All embedding providers failed, using pseudo-embedding: %s", exc)
            self.state.record_degraded()
            return EmbeddingResult(
                vector=pseudo_embedding(text, self.dimension), provider=None, degraded=True
            )

        vector = vectors[0]
        produced = self.space_of(provider)
        if self.enable_cache:
            self.cache.put(text, vector, produced)
        return EmbeddingResult(vector=list(vector), provider=provider, space=produced)

    async def embed_batch(self, texts: Iterable[str]) -> List[List[float]]:
        result = await self.embed_batch_detailed(texts)
        return result.vectors

    async def embed_batch_detailed(self, texts: Iterable[str]) -> BatchEmbeddingResult:
        """Embed ``texts`` in order; every returned vector shares one space."""

        items = list(texts)
        space = self.space
        if not items:
            return BatchEmbeddingResult(vectors=[], space=space)

        results: List[Optional[List[float]]] = [None] * len(items)
        pending: Dict[str, List[int]] = {}
        hits = 0
        for index, text in enumerate(items):
            cached = self.cache.get(text, space) if self.enable_cache else None
            if cached is not None:
                results[index] = cached
                hits += 1
            else:
                pending.setdefault(text, []).append(index)
        if self.enable_cache:
            self.state.record_cache(hits=hits, misses=len(items) - hits)

        for _ in range(len(self.clients) + 1):
            if not pending:
                return BatchEmbeddingResult(
                    vectors=[vector for vector in results if vector is not None],
                    cache_hits=hits,
                    space=space,
                )
            unique = list(pending)
            try:
                vectors, provider = await self._embed_with_fallback(unique)
            except AllProvidersExhausted as exc:
                logger.warning(
                    "All embedding providers failed for batch of %s, using pseudo-embeddings: %s",
                    len(unique),
                    exc,
                )
                return self._degraded_batch(items, hits)

            stale: Dict[str, List[int]] = {}
            produced = self.space_of(provider)
            if produced != space:
                # Failover mid-batch: earlier vectors belong to the old space.
                for index, vector in enumerate(results):
                    if vector is not None:
                        stale.setdefault(items[index], []).append(index)
                        results[index] = None
                space = produced
            for text, vector in zip(unique, vectors):
                if self.enable_cache:
                    self.cache.put(text, vector, space)
                for index in pending[text]:
                    results[index] = list(vector)
            pending = stale

        logger.warning("Embedding provider kept changing during a batch of %s", len(items))
        return self._degraded_batch(items, hits)

    def _degraded_batch(self, items: List[str], hits: int) -> BatchEmbeddingResult:
        self.state.record_degraded()
        return BatchEmbeddingResult(
            vectors=[pseudo_embedding(text, self.dimension) for text in items],
            degraded=True,
            cache_hits=hits,
        )

    async def set_provider(self, provider: str) -> bool:
        """Switch the active provider if it is currently available."""

        if provider not in self.clients:
            raise ValueError(f"Unknown embedding provider '{provider}'")
        client = self.clients[provider]
        if client.locality != "heuristic" and not self.state.is_available(provider):
            logger.warning("Embedding provider %s is not available", provider)
            return False
        self._promote(provider, client.dimension)
        return True

    async def cycle_provider(self) -> str:
        order = [name for name in EMBEDDING_PROVIDERS if name in self.clients]
        order.extend(name for name in self.clients if name not in order)
        current = self.state.active
        start = (order.index(current) + 1) if current in order else 0
        for offset in range(len(order)):
            candidate = order[(start + offset) % len(order)]
            if await self.set_provider(candidate):
                return candidate
        return self.state.active

    async def check_health(self) -> Dict[str, bool]:
        """Probe every provider concurrently and refresh availability flags."""

        names = list(self.clients)
        outcomes = await asyncio.gather(*(self._check_one(name) for name in names))
        availability = dict(zip(names, outcomes))
        for name, available in availability.items():
            self.state.mark_available(name, available)
        logger.debug("Embedding provider health: %s", availability)
        return availability

    def provider_status(self) -> Dict[str, bool]:
        return {name: self.state.is_available(name) for name in self.clients}

    def statistics(self) -> UnifiedEmbeddingStats:
        providers = {name: stats.to_payload() for name, stats in self.state.stats.items()}
        active = self.state.stats[self.state.active]
        return UnifiedEmbeddingStats(
            provider=self.state.active,
            model=active.model,
            dimension=self._dimension,
            total_calls=sum(stats.total_calls for stats in self.state.stats.values()),
            cache_hits=sum(stats.cache_hits for stats in self.state.stats.values()),
            cache_misses=sum(stats.cache_misses for stats in self.state.stats.values()),
            total_cost=sum(stats.total_cost for stats in self.state.stats.values()),
            avg_latency=active.avg_latency,
            errors=sum(stats.error_count for stats in self.state.stats.values()),
            degraded_count=self.state.degraded_count,
            fallback_switches=self.state.fallback_switches,
            availability=self.provider_status(),
            providers=providers,
            cache=self.cache.stats(),
        )

    async def aclose(self) -> None:
        await asyncio.gather(*(client.aclose() for client in self.clients.values()))

    cosine_similarity = staticmethod(cosine_similarity)

    # ------------------------------------------------------------------
    # Fallback helpers
    # ------------------------------------------------------------------
    def _candidate_order(self) -> List[str]:
        active = self.state.active
        return [active, *[name for name in self.fallback_chain if name != active]]

    async def _embed_with_fallback(self, texts: List[str]) -> Tuple[List[List[float]], str]:
        attempts: Dict[str, str] = {}
        for name in self._candidate_order():
            if not self.state.is_available(name):
                attempts[name] = "unavailable"
                continue
            try:
                vectors = await self._call_provider(name, texts)
            except ProviderError as exc:
                attempts[name] = str(exc)
                logger.warning("Embedding provider %s failed: %s", name, exc)
                continue
            self._promote(name, len(vectors[0]))
            return vectors, name
        raise AllProvidersExhausted("no embedding provider succeeded", attempts=attempts)

    async def _call_provider(self, name: str, texts: List[str]) -> List[List[float]]:
        client = self.clients[name]
        error: ProviderError = ProviderError("no attempt made", provider=name)
        for attempt in range(self.max_retries + 1):
            started = time.perf_counter()
            try:
                response = await asyncio.wait_for(client.embed(texts), timeout=self.timeout)
                self._validate(name, response.vectors, len(texts))
            except asyncio.TimeoutError as exc:
                error = ProviderTimeout(
                    f"embedding call exceeded {self.timeout}s", provider=name, cause=exc
                )
            except ProviderError as exc:
                error = exc
            else:
                latency = time.perf_counter() - started
                self.state.record_success(
                    name,
                    latency=latency,
                    tokens=response.tokens,
                    cost=response.tokens * client.cost_per_token,
                    model=response.model,
                )
                return response.vectors

            if self.state.record_failure(name, unavailable_after=self.unavailable_after_failures):
                logger.warning(
                    "Embedding provider %s marked unavailable after %s consecutive failures",
                    name,
                    self.unavailable_after_failures,
                )
                break
            if attempt < self.max_retries:
                delay = self.retry_backoff * (2 ** attempt)
                if isinstance(error, RateLimited) and error.retry_after:
                    delay = max(delay, error.retry_after)
                logger.debug("Retrying %s in %.2fs", name, delay)
                await asyncio.sleep(delay)
        raise error

    @staticmethod
    def _validate(name: str, vectors: List[List[float]], expected: int) -> None:
        if len(vectors) != expected:
            raise InvalidResponse(f"expected {expected} vectors, got {len(vectors)}", provider=name)
        dimensions = {len(vector) for vector in vectors}
        if len(dimensions) != 1 or 0 in dimensions:
            raise InvalidResponse("inconsistent embedding dimensions", provider=name)

    def _promote(self, name: str, dimension: Optional[int]) -> None:
        previous = self.state.switch(name)
        if previous is not None:
            logger.info("Embedding provider switched %s -> %s", previous, name)
        if dimension and self._dimension and dimension != self._dimension:
            logger.info(
                "Embedding dimension changed %s -> %s, clearing cache", self._dimension, dimension
            )
            self.cache.clear()
        if dimension:
            self._dimension = dimension

    async def _check_one(self, name: str) -> bool:
        client = self.clients[name]
        try:
            return bool(
                await asyncio.wait_for(
                    client.health_check(self.health_timeout), timeout=self.health_timeout
                )
            )
        except (asyncio.TimeoutError, ProviderError) as exc:
            logger.debug("Health check for %s failed: %s", name, exc)
            return False


__all__ = [
    "BatchEmbeddingResult",
    "EmbeddingResult",
    "EmbeddingService",
    "ProviderState",
    "UnifiedEmbeddingStats",
    "cosine_similarity",
]
