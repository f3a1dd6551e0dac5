"""Cognitive memory system for simulated agents.

This subpackage gives every agent a memory stream that it can query and
reflect upon.  It wires together

* embedding and text-generation providers behind a sticky fallback chain,
* an append-only memory store with a derived reflection tree,
* retrieval scored by recency, importance and relevance, and
* an importance-triggered reflection engine with recursive meta-reflections.
"""

from .cache import EmbeddingCache
from .classifier import (
    CategoryClassifier,
    Classification,
    DefaultCategoryStrategy,
    KeywordCategoryStrategy,
    LLMCategoryStrategy,
    estimate_observation_importance,
    estimate_reflection_importance,
)
from .clients import GenerateOptions, HeuristicClient, ProviderClient, pseudo_embedding
from .config import CognitiveConfig, ProviderCredentials, RetrievalWeights
from .embeddings import EmbeddingService, ProviderState, cosine_similarity
from .errors import (
    AllProvidersExhausted,
    HeuristicModeError,
    InvalidResponse,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
)
from .llm import LLMService
from .manager import AgentMemory
from .reflection import ReflectionCycleResult, ReflectionEngine, ReflectionState, ReflectionStatistics
from .retrieval import RetrievalEngine, RetrievalOutcome
from .runtime import CognitiveRuntime, main as runtime_main
from .schemas import (
    MemoryKind,
    MemoryRecord,
    ReflectionCategory,
    ReflectionNode,
    ReflectionTree,
    RetrievalResult,
)
from .storage import MemoryStore

__all__ = [
    "AgentMemory",
    "AllProvidersExhausted",
    "CategoryClassifier",
    "Classification",
    "CognitiveConfig",
    "CognitiveRuntime",
    "DefaultCategoryStrategy",
    "EmbeddingCache",
    "EmbeddingService",
    "GenerateOptions",
    "HeuristicClient",
    "HeuristicModeError",
    "InvalidResponse",
    "KeywordCategoryStrategy",
    "LLMCategoryStrategy",
    "LLMService",
    "MemoryKind",
    "MemoryRecord",
    "MemoryStore",
    "ProviderClient",
    "ProviderCredentials",
    "ProviderError",
    "ProviderState",
    "ProviderTimeout",
    "ProviderUnavailable",
    "RateLimited",
    "ReflectionCategory",
    "ReflectionCycleResult",
    "ReflectionEngine",
    "ReflectionNode",
    "ReflectionState",
    "ReflectionStatistics",
    "ReflectionTree",
    "RetrievalEngine",
    "RetrievalOutcome",
    "RetrievalResult",
    "RetrievalWeights",
    "cosine_similarity",
    "estimate_observation_importance",
    "estimate_reflection_importance",
    "pseudo_embedding",
    "runtime_main",
]
