"""Async provider clients for embeddings and text generation.

Every client exposes the same small contract (``embed``, ``generate``,
``health_check``, ``has_credentials``) so that the embedding and LLM
abstractions can treat them uniformly.  SDK and transport failures are
translated into :mod:`agentmind.memory.cognitive.errors` at this boundary.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import os
import re
import time
from copy import deepcopy
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from .errors import (
    HeuristicModeError,
    InvalidResponse,
    ProviderError,
    ProviderUnavailable,
    translate_provider_error,
)

if TYPE_CHECKING:
    import httpx
    from anthropic import AsyncAnthropic
    from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


PLACEHOLDER_KEYS = frozenset(
    {
        "your-openai-api-key-here",
        "your-voyage-api-key-here",
        "your-anthropic-api-key-here",
    }
)

DEFAULT_EXTRA_BODY: Mapping[str, Any] = {
    "extra_body": {"chat_template_kwargs": {"enable_thinking": False}}
}

OPENAI_PROVIDER_PRESETS: Mapping[str, Mapping[str, Any]] = {
    "openai": {"base_url": None, "api_key_env": "OPENAI_API_KEY", "locality": "cloud"},
    "deepseek": {
        "base_url": "https://api.deepseek.com",
        "api_key_env": "DEEPSEEK_API_KEY",
        "locality": "cloud",
    },
    "vllm": {"base_url": "http://localhost:8000/v1", "api_key_env": None, "locality": "local"},
}


def usable_key(value: Optional[str]) -> bool:
    return bool(value) and value not in PLACEHOLDER_KEYS


@dataclass
class GenerateOptions:
    temperature: float = 0.7
    max_tokens: int = 150
    stop_sequences: Optional[Sequence[str]] = None


@dataclass
class EmbeddingResponse:
    vectors: List[List[float]]
    tokens: int
    model: str


@dataclass
class GenerationResponse:
    text: str
    tokens: int
    model: str


# ----------------------------------------------------------------------
# Deterministic pseudo-embedding
# ----------------------------------------------------------------------
_TOKEN_RE = re.compile(r"[a-z0-9']+")


def pseudo_embedding(text: str, dimension: int = 1536) -> List[float]:
    """Feature-hashed embedding derived purely from ``text``.

    Word tokens and character trigrams are hashed into signed buckets, so
    identical text yields a bit-identical vector and overlapping text yields a
    positive cosine similarity.  The result is L2-normalised.
    """

    if dimension <= 0:
        raise ValueError("dimension must be positive")

    vector = [0.0] * dimension
    tokens = _TOKEN_RE.findall(text.lower())
    compact = " ".join(tokens)
    weighted = [(token, 1.0) for token in tokens]
    weighted.extend((compact[i : i + 3], 0.5) for i in range(max(0, len(compact) - 2)))

    for feature, weight in weighted:
        digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
        bucket = int.from_bytes(digest[:4], "big") % dimension
        sign = 1.0 if digest[4] & 1 else -1.0
        vector[bucket] += sign * weight

    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0.0:
        digest = hashlib.blake2b(text.encode("utf-8"), digest_size=64).digest()
        vector = [digest[i % len(digest)] / 255.0 - 0.5 for i in range(dimension)]
        norm = math.sqrt(sum(value * value for value in vector))
    return [value / norm for value in vector]


# ----------------------------------------------------------------------
# Base client
# ----------------------------------------------------------------------
class ProviderClient:
    """Shared plumbing: concurrency bound, error translation, validation."""

    name = "base"
    locality = "cloud"
    supports_embeddings = True
    supports_generation = True

    def __init__(
        self,
        *,
        model: str,
        dimension: Optional[int] = None,
        cost_per_token: float = 0.0,
        max_concurrency: int = 4,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.model = model
        self.dimension = dimension
        self.cost_per_token = cost_per_token
        self.max_concurrency = max_concurrency
        self._semaphore: Optional[asyncio.Semaphore] = None

    @property
    def slots(self) -> asyncio.Semaphore:
        """Concurrency bound, created on first use inside the running loop."""

        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)
        return self._semaphore

    def has_credentials(self) -> bool:
        return True

    async def health_check(self, timeout: float = 5.0) -> bool:
        return self.has_credentials()

    async def embed(self, texts: Iterable[str]) -> EmbeddingResponse:
        items = list(texts)
        if not items:
            return EmbeddingResponse(vectors=[], tokens=0, model=self.model)
        if not self.supports_embeddings:
            raise ProviderUnavailable("embeddings are not supported", provider=self.name)

        async with self.slots:
            try:
                response = await self._embed(items)
            except ProviderError as exc:
                raise translate_provider_error(exc, self.name)
            except Exception as exc:
                raise translate_provider_error(exc, self.name) from exc

        if len(response.vectors) != len(items):
            raise InvalidResponse(
                f"expected {len(items)} vectors, received {len(response.vectors)}",
                provider=self.name,
            )
        if response.vectors and self.dimension is None:
            self.dimension = len(response.vectors[0])
        return response

    async def generate(
        self, prompt: str, options: Optional[GenerateOptions] = None
    ) -> GenerationResponse:
        if not self.supports_generation:
            raise ProviderUnavailable("text generation is not supported", provider=self.name)
        opts = options or GenerateOptions()
        async with self.slots:
            try:
                response = await self._generate(prompt, opts)
            except ProviderError as exc:
                raise translate_provider_error(exc, self.name)
            except Exception as exc:
                raise translate_provider_error(exc, self.name) from exc

        if not response.text.strip():
            raise InvalidResponse("empty completion", provider=self.name)
        return response

    async def aclose(self) -> None:
        return None

    # Implemented by subclasses -----------------------------------------
    async def _embed(self, texts: List[str]) -> EmbeddingResponse:
        raise NotImplementedError

    async def _generate(self, prompt: str, options: GenerateOptions) -> GenerationResponse:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, model={self.model!r})"


# ----------------------------------------------------------------------
# OpenAI-compatible endpoints (OpenAI, DeepSeek, vLLM)
# ----------------------------------------------------------------------
class OpenAIClient(ProviderClient):
    """Thin wrapper over :class:`openai.AsyncOpenAI` with provider defaults."""

    def __init__(
        self,
        *,
        model: str = "text-embedding-3-small",
        provider: str = "openai",
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_key_env: Optional[str] = None,
        dimension: Optional[int] = None,
        cost_per_token: float = 0.00000002,
        default_extra_body: Optional[Mapping[str, Any]] = None,
        timeout: float = 30.0,
        max_concurrency: int = 4,
    ) -> None:
        provider_key = provider.lower()
        if provider_key not in OPENAI_PROVIDER_PRESETS:
            raise ValueError(f"Unsupported provider '{provider}'")
        preset = OPENAI_PROVIDER_PRESETS[provider_key]

        if api_key is None:
            env_name = api_key_env or preset["api_key_env"]
            api_key = os.environ.get(env_name) if env_name else None

        extra = default_extra_body
        if extra is None and provider_key == "vllm":
            extra = DEFAULT_EXTRA_BODY

        super().__init__(
            model=model,
            dimension=dimension,
            cost_per_token=cost_per_token,
            max_concurrency=max_concurrency,
        )
        self.name = "openai" if provider_key == "openai" else provider_key
        self.provider = provider_key
        self.locality = preset["locality"]
        self.base_url = base_url or preset["base_url"]
        self.api_key = api_key or ""
        self.timeout = timeout
        self.default_extra_body = dict(extra or {})
        self._client: Optional[AsyncOpenAI] = None

    def has_credentials(self) -> bool:
        if self.locality == "local":
            return True
        return usable_key(self.api_key)

    def _get_client(self) -> AsyncOpenAI:
        if not self.has_credentials():
            raise ProviderUnavailable("no API key configured", provider=self.name)
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(
                base_url=self.base_url,
                api_key=self.api_key or "EMPTY",
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    async def health_check(self, timeout: float = 5.0) -> bool:
        if self.locality != "local":
            return self.has_credentials()
        import httpx

        try:
            async with httpx.AsyncClient(timeout=timeout) as http:
                response = await http.get(f"{str(self.base_url).rstrip('/')}/models")
            return response.status_code == 200
        except httpx.HTTPError as exc:
            logger.debug("%s liveness check failed: %s", self.name, exc)
            return False

    # ------------------------------------------------------------------
    # Chat completions
    # ------------------------------------------------------------------
    async def _generate(self, prompt: str, options: GenerateOptions) -> GenerationResponse:
        client = self._get_client()
        payload: MutableMapping[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }
        if options.stop_sequences:
            payload["stop"] = list(options.stop_sequences)
        if self.default_extra_body:
            payload.update(deepcopy(self.default_extra_body))

        logger.debug("Dispatching chat request: %s", payload)
        response = await client.chat.completions.create(**payload)
        logger.debug("Chat raw response: %s", response)
        choice = response.choices[0].message
        usage = getattr(response, "usage", None)
        tokens = int(getattr(usage, "total_tokens", 0) or 0)
        return GenerationResponse(
            text=(getattr(choice, "content", "") or "").strip(),
            tokens=tokens,
            model=self.model,
        )

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------
    async def _embed(self, texts: List[str]) -> EmbeddingResponse:
        client = self._get_client()
        payload: MutableMapping[str, Any] = {"model": self.model, "input": texts}
        logger.debug("Dispatching embedding request for %s texts", len(texts))
        response = await client.embeddings.create(**payload)
        vectors: List[List[float]] = []
        for entry in sorted(response.data, key=lambda item: getattr(item, "index", 0)):
            vector = getattr(entry, "embedding", None)
            if vector is None:
                continue
            vectors.append([float(x) for x in vector])
        usage = getattr(response, "usage", None)
        tokens = int(getattr(usage, "total_tokens", 0) or 0)
        return EmbeddingResponse(vectors=vectors, tokens=tokens, model=self.model)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


# ----------------------------------------------------------------------
# Voyage AI
# ----------------------------------------------------------------------
class VoyageClient(ProviderClient):
    """Voyage AI retrieval embeddings over plain HTTPS."""

    name = "voyage"
    supports_generation = False

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: str = "voyage-2",
        base_url: str = "https://api.voyageai.com/v1",
        dimension: Optional[int] = 1024,
        cost_per_token: float = 0.00000012,
        timeout: float = 30.0,
        max_concurrency: int = 4,
    ) -> None:
        super().__init__(
            model=model,
            dimension=dimension,
            cost_per_token=cost_per_token,
            max_concurrency=max_concurrency,
        )
        self.api_key = api_key if api_key is not None else os.environ.get("VOYAGE_API_KEY", "")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http: Optional[httpx.AsyncClient] = None

    def has_credentials(self) -> bool:
        return usable_key(self.api_key)

    def _get_http(self) -> httpx.AsyncClient:
        if not self.has_credentials():
            raise ProviderUnavailable("no API key configured", provider=self.name)
        if self._http is None:
            import httpx

            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        return self._http

    async def _embed(self, texts: List[str]) -> EmbeddingResponse:
        http = self._get_http()
        response = await http.post("/embeddings", json={"model": self.model, "input": texts})
        response.raise_for_status()
        data = response.json()
        entries = sorted(data["data"], key=lambda item: item.get("index", 0))
        vectors = [[float(x) for x in entry["embedding"]] for entry in entries]
        usage = data.get("usage") or {}
        tokens = int(usage.get("total_tokens") or sum(len(text.split()) for text in texts))
        return EmbeddingResponse(vectors=vectors, tokens=tokens, model=self.model)

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None


# ----------------------------------------------------------------------
# Ollama (local server)
# ----------------------------------------------------------------------
class OllamaClient(ProviderClient):
    """Local Ollama server: native ``/api`` endpoints over httpx."""

    name = "ollama"
    locality = "local"

    def __init__(
        self,
        *,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.2:3b-instruct-q4_K_M",
        embedding_model: str = "nomic-embed-text",
        dimension: Optional[int] = 768,
        timeout: float = 30.0,
        max_concurrency: int = 4,
    ) -> None:
        super().__init__(model=model, dimension=dimension, max_concurrency=max_concurrency)
        self.base_url = base_url.rstrip("/")
        self.embedding_model = embedding_model
        self.timeout = timeout
        self._http: Optional[httpx.AsyncClient] = None

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            import httpx

            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
            )
        return self._http

    async def health_check(self, timeout: float = 5.0) -> bool:
        import httpx

        try:
            response = await self._get_http().get("/api/tags", timeout=timeout)
        except httpx.HTTPError as exc:
            logger.debug("Ollama liveness check failed: %s", exc)
            return False

        if response.status_code != 200:
            return False

        try:
            models = [str(item.get("name", "")) for item in response.json().get("models", [])]
        except ValueError:
            models = []
        family = self.model.split(":")[0]
        if not any(name == self.model or name.startswith(family) for name in models):
            logger.warning(
                "Model %s not found in Ollama (available: %s)", self.model, ", ".join(models)
            )
        return True

    async def _embed(self, texts: List[str]) -> EmbeddingResponse:
        http = self._get_http()
        vectors: List[List[float]] = []
        tokens = 0
        for text in texts:
            response = await http.post(
                "/api/embeddings", json={"model": self.embedding_model, "prompt": text}
            )
            response.raise_for_status()
            data = response.json()
            embedding = data.get("embedding")
            if not isinstance(embedding, list) or not embedding:
                raise InvalidResponse("invalid embedding response", provider=self.name)
            vectors.append([float(x) for x in embedding])
            tokens += int(data.get("prompt_eval_count") or 0)
        return EmbeddingResponse(vectors=vectors, tokens=tokens, model=self.embedding_model)

    async def _generate(self, prompt: str, options: GenerateOptions) -> GenerationResponse:
        request: MutableMapping[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": options.temperature,
                "top_p": 0.9,
                "top_k": 40,
                "num_predict": options.max_tokens,
            },
        }
        if options.stop_sequences:
            request["options"]["stop"] = list(options.stop_sequences)

        started = time.perf_counter()
        response = await self._get_http().post("/api/generate", json=request)
        response.raise_for_status()
        data = response.json()
        if "response" not in data:
            raise InvalidResponse("missing 'response' field", provider=self.name)

        eval_count = int(data.get("eval_count") or 0)
        elapsed = time.perf_counter() - started
        if eval_count and elapsed > 0:
            logger.debug(
                "Ollama response: %.2fs (%.1f tok/s)", elapsed, eval_count / elapsed
            )
        return GenerationResponse(
            text=str(data["response"]).strip(),
            tokens=eval_count + int(data.get("prompt_eval_count") or 0),
            model=self.model,
        )

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None


# ----------------------------------------------------------------------
# Anthropic
# ----------------------------------------------------------------------
class AnthropicClient(ProviderClient):
    """Anthropic messages API; generation only."""

    name = "anthropic"
    supports_embeddings = False

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: str = "claude-3-haiku-20240307",
        cost_per_token: float = 0.00000025,
        timeout: float = 30.0,
        max_concurrency: int = 4,
    ) -> None:
        super().__init__(model=model, cost_per_token=cost_per_token, max_concurrency=max_concurrency)
        self.api_key = api_key if api_key is not None else os.environ.get("ANTHROPIC_API_KEY", "")
        self.timeout = timeout
        self._client: Optional[AsyncAnthropic] = None

    def has_credentials(self) -> bool:
        return usable_key(self.api_key)

    def _get_client(self) -> AsyncAnthropic:
        if not self.has_credentials():
            raise ProviderUnavailable("no API key configured", provider=self.name)
        if self._client is None:
            from anthropic import AsyncAnthropic

            self._client = AsyncAnthropic(api_key=self.api_key, timeout=self.timeout, max_retries=0)
        return self._client

    async def _generate(self, prompt: str, options: GenerateOptions) -> GenerationResponse:
        client = self._get_client()
        kwargs: MutableMapping[str, Any] = {
            "model": self.model,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if options.stop_sequences:
            kwargs["stop_sequences"] = list(options.stop_sequences)

        response = await client.messages.create(**kwargs)
        texts = [
            getattr(block, "text", "")
            for block in response.content
            if getattr(block, "type", None) == "text"
        ]
        if not texts:
            raise InvalidResponse("no text content in response", provider=self.name)
        usage = getattr(response, "usage", None)
        tokens = int(getattr(usage, "input_tokens", 0) or 0) + int(
            getattr(usage, "output_tokens", 0) or 0
        )
        return GenerationResponse(text="".join(texts).strip(), tokens=tokens, model=self.model)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


# ----------------------------------------------------------------------
# Heuristic (no network)
# ----------------------------------------------------------------------
class HeuristicClient(ProviderClient):
    """Deterministic embeddings; refuses text generation."""

    name = "heuristic"
    locality = "heuristic"

    def __init__(self, *, dimension: int = 1536) -> None:
        super().__init__(model="heuristic-hash", dimension=dimension, max_concurrency=64)

    async def _embed(self, texts: List[str]) -> EmbeddingResponse:
        dimension = self.dimension or 1536
        return EmbeddingResponse(
            vectors=[pseudo_embedding(text, dimension) for text in texts],
            tokens=0,
            model=self.model,
        )

    async def generate(
        self, prompt: str, options: Optional[GenerateOptions] = None
    ) -> GenerationResponse:
        raise HeuristicModeError(
            "heuristic mode does not support text generation", provider=self.name
        )


# ----------------------------------------------------------------------
# Factories
# ----------------------------------------------------------------------
EMBEDDING_PROVIDERS = ("openai", "voyage", "ollama", "heuristic")
LLM_PROVIDERS = ("heuristic", "ollama", "anthropic", "openai")


def build_embedding_client(
    name: str,
    credentials: Any,
    *,
    fallback_dimension: int = 1536,
    timeout: float = 30.0,
    max_concurrency: int = 4,
) -> ProviderClient:
    """Create an embedding client from a :class:`ProviderCredentials`-like object."""

    key = name.lower()
    if key == "openai":
        return OpenAIClient(
            model=credentials.openai_embedding_model,
            provider=credentials.openai_provider,
            base_url=credentials.openai_base_url,
            api_key=credentials.openai_api_key,
            dimension=1536,
            cost_per_token=0.00000002,
            default_extra_body={},
            timeout=timeout,
            max_concurrency=max_concurrency,
        )
    if key == "voyage":
        return VoyageClient(
            api_key=credentials.voyage_api_key,
            model=credentials.voyage_model,
            timeout=timeout,
            max_concurrency=max_concurrency,
        )
    if key == "ollama":
        return OllamaClient(
            base_url=credentials.ollama_url,
            model=credentials.ollama_model,
            embedding_model=credentials.ollama_embedding_model,
            timeout=timeout,
            max_concurrency=max_concurrency,
        )
    if key == "heuristic":
        return HeuristicClient(dimension=fallback_dimension)
    raise ValueError(f"Unknown embedding provider '{name}'")


def build_generation_client(
    name: str,
    credentials: Any,
    *,
    timeout: float = 30.0,
    max_concurrency: int = 4,
) -> ProviderClient:
    """Create a text-generation client from a :class:`ProviderCredentials`-like object."""

    key = name.lower()
    if key == "anthropic":
        return AnthropicClient(
            api_key=credentials.anthropic_api_key,
            model=credentials.anthropic_model,
            timeout=timeout,
            max_concurrency=max_concurrency,
        )
    if key == "ollama":
        return OllamaClient(
            base_url=credentials.ollama_url,
            model=credentials.ollama_model,
            embedding_model=credentials.ollama_embedding_model,
            timeout=timeout,
            max_concurrency=max_concurrency,
        )
    if key == "openai":
        return OpenAIClient(
            model=credentials.openai_chat_model,
            provider=credentials.openai_provider,
            base_url=credentials.openai_base_url,
            api_key=credentials.openai_api_key,
            cost_per_token=0.00000015,
            timeout=timeout,
            max_concurrency=max_concurrency,
        )
    if key == "heuristic":
        return HeuristicClient()
    raise ValueError(f"Unknown LLM provider '{name}'")


__all__ = [
    "AnthropicClient",
    "DEFAULT_EXTRA_BODY",
    "EMBEDDING_PROVIDERS",
    "EmbeddingResponse",
    "GenerateOptions",
    "GenerationResponse",
    "HeuristicClient",
    "LLM_PROVIDERS",
    "OllamaClient",
    "OpenAIClient",
    "ProviderClient",
    "VoyageClient",
    "build_embedding_client",
    "build_generation_client",
    "pseudo_embedding",
    "usable_key",
]
