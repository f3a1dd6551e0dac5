"""Configuration objects for the cognitive memory stack."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional, Tuple, Union

from .clients import EMBEDDING_PROVIDERS, LLM_PROVIDERS

ACCUMULATOR_POLICIES = ("zero", "residual")


@dataclass
class RetrievalWeights:
    recency: float = 1.0
    importance: float = 1.0
    relevance: float = 1.0

    def __post_init__(self) -> None:
        values = (self.recency, self.importance, self.relevance)
        if any(value < 0 for value in values):
            raise ValueError("Retrieval weights must be non-negative")
        if not any(values):
            raise ValueError("At least one retrieval weight must be positive")

    def to_payload(self) -> Mapping[str, float]:
        return asdict(self)


@dataclass
class ProviderCredentials:
    """API keys and endpoints for the backing providers."""

    openai_api_key: Optional[str] = None
    openai_provider: str = "openai"
    openai_base_url: Optional[str] = None
    openai_embedding_model: str = "text-embedding-3-small"
    openai_chat_model: str = "gpt-4o-mini"
    voyage_api_key: Optional[str] = None
    voyage_model: str = "voyage-2"
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-3-haiku-20240307"
    ollama_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2:3b-instruct-q4_K_M"
    ollama_embedding_model: str = "nomic-embed-text"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ProviderCredentials":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            openai_api_key=env.get("OPENAI_API_KEY"),
            openai_provider=env.get("OPENAI_PROVIDER", defaults.openai_provider),
            openai_base_url=env.get("OPENAI_BASE_URL"),
            openai_embedding_model=env.get("OPENAI_EMBEDDING_MODEL", defaults.openai_embedding_model),
            openai_chat_model=env.get("OPENAI_CHAT_MODEL", defaults.openai_chat_model),
            voyage_api_key=env.get("VOYAGE_API_KEY"),
            voyage_model=env.get("VOYAGE_MODEL", defaults.voyage_model),
            anthropic_api_key=env.get("ANTHROPIC_API_KEY"),
            anthropic_model=env.get("ANTHROPIC_MODEL", defaults.anthropic_model),
            ollama_url=env.get("OLLAMA_URL", defaults.ollama_url),
            ollama_model=env.get("OLLAMA_MODEL", defaults.ollama_model),
            ollama_embedding_model=env.get("OLLAMA_EMBEDDING_MODEL", defaults.ollama_embedding_model),
        )

    def to_payload(self, *, redact: bool = True) -> Mapping[str, Any]:
        payload = asdict(self)
        if redact:
            for key in ("openai_api_key", "voyage_api_key", "anthropic_api_key"):
                if payload.get(key):
                    payload[key] = "***"
        return payload


@dataclass
class CognitiveConfig:
    """Single structured configuration object for one simulation session."""

    embedding_provider: str = "openai"
    embedding_fallback_chain: Tuple[str, ...] = ("openai", "ollama", "heuristic")
    provider_credentials: ProviderCredentials = field(default_factory=ProviderCredentials)
    max_cache_size: int = 10000
    enable_cache: bool = True
    llm_provider: str = "heuristic"
    reflection_threshold: float = 150.0
    reflection_interval: float = 180.0
    retrieval_weights: RetrievalWeights = field(default_factory=RetrievalWeights)

    # Retrieval
    recency_half_life: float = 3600.0
    retrieval_top_k: int = 10

    # Providers
    fallback_dimension: int = 1536
    embedding_timeout: float = 30.0
    generation_timeout: float = 30.0
    health_timeout: float = 5.0
    health_check_interval: float = 60.0
    max_retries: int = 0
    retry_backoff: float = 1.0
    unavailable_after_failures: int = 3
    max_concurrency: int = 4

    # Reflection
    accumulator_reset: str = "zero"
    enable_time_trigger: bool = True
    questions_per_reflection: int = 3
    evidence_per_question: int = 10
    recent_memories_for_questions: int = 20
    reflection_confidence: float = 0.8
    use_llm_categorization: bool = True
    enable_meta_reflections: bool = True
    meta_reflection_threshold: Optional[float] = None
    min_reflections_for_meta: int = 5
    max_reflection_depth: int = 3
    question_temperature: float = 0.8
    answer_temperature: float = 0.7
    max_insights: int = 5

    def __post_init__(self) -> None:
        self.embedding_fallback_chain = tuple(self.embedding_fallback_chain)
        for name in (self.embedding_provider, *self.embedding_fallback_chain):
            if name not in EMBEDDING_PROVIDERS:
                raise ValueError(f"Unknown embedding provider '{name}'")
        if self.llm_provider not in LLM_PROVIDERS:
            raise ValueError(f"Unknown LLM provider '{self.llm_provider}'")
        if self.accumulator_reset not in ACCUMULATOR_POLICIES:
            raise ValueError(
                f"accumulator_reset must be one of {ACCUMULATOR_POLICIES}, got {self.accumulator_reset!r}"
            )
        if self.reflection_threshold <= 0:
            raise ValueError("reflection_threshold must be positive")
        if self.reflection_interval <= 0:
            raise ValueError("reflection_interval must be positive")
        if self.recency_half_life <= 0:
            raise ValueError("recency_half_life must be positive")
        if self.max_cache_size < 0:
            raise ValueError("max_cache_size must be non-negative")
        if self.questions_per_reflection < 1:
            raise ValueError("questions_per_reflection must be at least 1")
        if self.max_reflection_depth < 1:
            raise ValueError("max_reflection_depth must be at least 1")
        if not 0.0 <= self.reflection_confidence <= 1.0:
            raise ValueError("reflection_confidence must lie in [0, 1]")

    @property
    def effective_meta_threshold(self) -> float:
        if self.meta_reflection_threshold is None:
            return self.reflection_threshold
        return self.meta_reflection_threshold

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CognitiveConfig":
        known = {item.name for item in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        values: MutableMapping[str, Any] = dict(data)
        credentials = values.get("provider_credentials")
        if isinstance(credentials, Mapping):
            values["provider_credentials"] = ProviderCredentials(**credentials)
        weights = values.get("retrieval_weights")
        if isinstance(weights, Mapping):
            values["retrieval_weights"] = RetrievalWeights(**weights)
        chain = values.get("embedding_fallback_chain")
        if chain is not None:
            values["embedding_fallback_chain"] = tuple(chain)
        return cls(**values)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "CognitiveConfig":
        with Path(path).expanduser().open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, Mapping):
            raise ValueError("Configuration file must contain a JSON object")
        config = cls.from_mapping(data)
        if "provider_credentials" not in data:
            config.provider_credentials = ProviderCredentials.from_env()
        return config

    @classmethod
    def from_env(cls, **overrides: Any) -> "CognitiveConfig":
        overrides.setdefault("provider_credentials", ProviderCredentials.from_env())
        return cls(**overrides)

    def to_payload(self) -> Mapping[str, Any]:
        payload: Dict[str, Any] = asdict(self)
        payload["embedding_fallback_chain"] = list(self.embedding_fallback_chain)
        payload["provider_credentials"] = self.provider_credentials.to_payload()
        return payload


__all__ = [
    "ACCUMULATOR_POLICIES",
    "CognitiveConfig",
    "ProviderCredentials",
    "RetrievalWeights",
]
