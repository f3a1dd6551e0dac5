"""Unified text-generation abstraction with explicit provider switching."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from .clients import LLM_PROVIDERS, GenerateOptions, ProviderClient, build_generation_client
from .errors import HeuristicModeError, ProviderError, ProviderTimeout, ProviderUnavailable
from .schemas import ProviderStats

if TYPE_CHECKING:
    from .config import CognitiveConfig

logger = logging.getLogger(__name__)

HEURISTIC = "heuristic"


class LLMService:
    """Route generation requests to the current provider.

    Unlike :class:`~agentmind.memory.cognitive.embeddings.EmbeddingService`
    there is no automatic fallback: a failed call raises, and switching is an
    explicit :meth:`set_provider` / :meth:`cycle_provider` operation.
    """

    def __init__(
        self,
        clients: Mapping[str, ProviderClient],
        *,
        provider: str = HEURISTIC,
        timeout: float = 30.0,
        health_timeout: float = 5.0,
    ) -> None:
        self.clients: Dict[str, ProviderClient] = dict(clients)
        if HEURISTIC not in self.clients:
            from .clients import HeuristicClient

            self.clients[HEURISTIC] = HeuristicClient()
        if provider not in self.clients:
            raise ValueError(f"LLM provider '{provider}' is not configured")

        self.timeout = timeout
        self.health_timeout = health_timeout
        self._provider = provider
        self._lock = threading.Lock()
        self._availability: Dict[str, bool] = {
            name: client.locality == "heuristic" or client.has_credentials()
            for name, client in self.clients.items()
        }
        self._stats: Dict[str, ProviderStats] = {
            name: ProviderStats(name=name, model=client.model, is_available=self._availability[name])
            for name, client in self.clients.items()
        }
        logger.info("LLMService initialised with provider: %s", provider)

    @classmethod
    def from_config(cls, config: "CognitiveConfig") -> "LLMService":
        clients: Dict[str, ProviderClient] = {}
        for name in LLM_PROVIDERS:
            clients[name] = build_generation_client(
                name,
                config.provider_credentials,
                timeout=config.generation_timeout,
                max_concurrency=config.max_concurrency,
            )
        return cls(
            clients,
            provider=config.llm_provider,
            timeout=config.generation_timeout,
            health_timeout=config.health_timeout,
        )

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    @property
    def current_provider(self) -> str:
        return self._provider

    @property
    def current_model(self) -> str:
        if self._provider == HEURISTIC:
            return "Heuristic (no LLM)"
        return self.clients[self._provider].model

    async def generate(self, prompt: str, options: Optional[GenerateOptions] = None) -> str:
        provider = self._provider
        if provider == HEURISTIC:
            raise HeuristicModeError(
                "heuristic mode does not support text generation", provider=HEURISTIC
            )

        client = self.clients[provider]
        if not self._availability.get(provider, False):
            raise ProviderUnavailable("provider is not available", provider=provider)

        stats = self._stats[provider]
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                client.generate(prompt, options or GenerateOptions()), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            with self._lock:
                stats.record_failure()
            raise ProviderTimeout(
                f"generation exceeded {self.timeout}s", provider=provider, cause=exc
            ) from exc
        except ProviderError as exc:
            with self._lock:
                stats.record_failure()
            logger.warning("%s generation error: %s", provider, exc)
            raise

        with self._lock:
            stats.model = response.model
            stats.record_success(
                latency=time.perf_counter() - started,
                tokens=response.tokens,
                cost=response.tokens * client.cost_per_token,
            )
        return response.text

    # ------------------------------------------------------------------
    # Provider management
    # ------------------------------------------------------------------
    def is_provider_available(self) -> bool:
        return self._availability.get(self._provider, False)

    async def check_provider(self, provider: str) -> bool:
        """Liveness check for local servers, credential check for cloud services."""

        client = self.clients[provider]
        if client.locality == "heuristic":
            available = True
        elif client.locality == "local":
            try:
                available = bool(
                    await asyncio.wait_for(
                        client.health_check(self.health_timeout), timeout=self.health_timeout
                    )
                )
            except (asyncio.TimeoutError, ProviderError) as exc:
                logger.debug("Liveness check for %s failed: %s", provider, exc)
                available = False
        else:
            available = client.has_credentials()

        with self._lock:
            self._availability[provider] = available
            self._stats[provider].is_available = available
        return available

    async def check_health(self) -> Dict[str, bool]:
        names = list(self.clients)
        outcomes = await asyncio.gather(*(self.check_provider(name) for name in names))
        return dict(zip(names, outcomes))

    async def set_provider(self, provider: str) -> bool:
        if provider not in self.clients:
            raise ValueError(f"Unknown LLM provider '{provider}'")
        if not await self.check_provider(provider):
            logger.warning("LLM provider %s is not available", provider)
            return False
        with self._lock:
            self._provider = provider
        logger.info("Switched LLM provider to %s", provider)
        return True

    async def cycle_provider(self) -> str:
        order = [name for name in LLM_PROVIDERS if name in self.clients]
        order.extend(name for name in self.clients if name not in order)
        start = (order.index(self._provider) + 1) if self._provider in order else 0
        for offset in range(len(order)):
            candidate = order[(start + offset) % len(order)]
            if await self.set_provider(candidate):
                return candidate
        with self._lock:
            self._provider = HEURISTIC
        return HEURISTIC

    def provider_status(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "current": self._provider,
            "available": self.is_provider_available(),
        }
        status.update(self._availability)
        return status

    def statistics(self) -> Dict[str, Mapping[str, Any]]:
        return {name: stats.to_payload() for name, stats in self._stats.items()}

    async def aclose(self) -> None:
        await asyncio.gather(*(client.aclose() for client in self.clients.values()))


__all__ = ["HEURISTIC", "LLMService"]
