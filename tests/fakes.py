from __future__ import annotations

import asyncio
from typing import Callable, Dict, List, Optional, Sequence, Union

from agentmind.memory.cognitive.clients import (
    EmbeddingResponse,
    GenerateOptions,
    GenerationResponse,
    ProviderClient,
    pseudo_embedding,
)
from agentmind.memory.cognitive.config import CognitiveConfig
from agentmind.memory.cognitive.embeddings import EmbeddingService
from agentmind.memory.cognitive.llm import LLMService
from agentmind.memory.cognitive.manager import AgentMemory

DIMENSION = 16


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeEmbeddingClient(ProviderClient):
    """Hash-based vectors with switchable failure and health."""

    def __init__(
        self,
        name: str = "primary",
        *,
        dimension: int = DIMENSION,
        fail: bool = False,
        healthy: bool = True,
        delay: float = 0.0,
        sign: float = 1.0,
        failures: Sequence[BaseException] = (),
        max_concurrency: int = 4,
    ) -> None:
        super().__init__(
            model=f"{name}-embedding", dimension=dimension, max_concurrency=max_concurrency
        )
        self.name = name
        self.fail = fail
        self.healthy = healthy
        self.delay = delay
        # -1.0 gives a second embedding space with the same dimension.
        self.sign = sign
        self.failures: List[BaseException] = list(failures)
        self.calls: List[List[str]] = []

    def vector(self, text: str) -> List[float]:
        return [self.sign * value for value in pseudo_embedding(text, self.dimension or DIMENSION)]

    async def _embed(self, texts: List[str]) -> EmbeddingResponse:
        self.calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        if self.fail:
            raise ConnectionError(f"{self.name} connection refused")
        return EmbeddingResponse(
            vectors=[self.vector(text) for text in texts],
            tokens=len(texts),
            model=self.model,
        )

    async def health_check(self, timeout: float = 5.0) -> bool:
        return self.healthy


Reply = Union[str, BaseException]


def reflective_reply(prompt: str) -> str:
    """Answer each reflection prompt kind with a well-formed response."""

    if prompt.startswith("Categorize"):
        return "CATEGORY: strategy"
    if "QUESTION_1:" in prompt:
        return (
            "QUESTION_1: What patterns am I noticing about where water appears?\n"
            "QUESTION_2: What strategy has worked best for finding food?\n"
            "QUESTION_3: What have I learned about the dangers in this area?"
        )
    if "META-INSIGHT:" in prompt:
        return "META-INSIGHT: My insights show that I plan better when I track resources."
    if "INSIGHT:" in prompt:
        return "INSIGHT: Water sources cluster near the eastern corridor, so I should search there first."
    raise AssertionError(f"Unexpected prompt: {prompt[:80]!r}")


class ScriptedLLMClient(ProviderClient):
    """Generation client driven by a queue of replies or a prompt handler."""

    def __init__(
        self,
        replies: Sequence[Reply] = (),
        *,
        name: str = "scripted",
        handler: Optional[Callable[[str], Reply]] = None,
        gate: Optional[asyncio.Event] = None,
        delay: float = 0.0,
    ) -> None:
        super().__init__(model=f"{name}-model")
        self.name = name
        self.replies: List[Reply] = list(replies)
        self.handler = handler
        self.gate = gate
        self.delay = delay
        self.prompts: List[str] = []

    async def _generate(self, prompt: str, options: GenerateOptions) -> GenerationResponse:
        self.prompts.append(prompt)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.handler is not None:
            reply = self.handler(prompt)
        elif self.replies:
            reply = self.replies.pop(0)
        else:
            raise RuntimeError("no scripted reply left")
        if isinstance(reply, BaseException):
            raise reply
        return GenerationResponse(text=reply, tokens=len(reply.split()), model=self.model)


def make_embedding_service(
    *clients: ProviderClient, provider: Optional[str] = None, **kwargs: object
) -> EmbeddingService:
    if not clients:
        clients = (FakeEmbeddingClient(),)
    mapping: Dict[str, ProviderClient] = {client.name: client for client in clients}
    names = list(mapping)
    kwargs.setdefault("fallback_chain", names)
    kwargs.setdefault("retry_backoff", 0.0)
    return EmbeddingService(mapping, provider=provider or names[0], **kwargs)


def make_llm_service(client: Optional[ProviderClient] = None, **kwargs: object) -> LLMService:
    if client is None:
        return LLMService({}, **kwargs)
    return LLMService({client.name: client}, provider=client.name, **kwargs)


def make_agent(
    *,
    llm_client: Optional[ProviderClient] = None,
    embeddings: Optional[EmbeddingService] = None,
    clock: Optional[FakeClock] = None,
    agent_id: str = "alice",
    **config: object,
) -> AgentMemory:
    return AgentMemory(
        agent_id=agent_id,
        embeddings=embeddings or make_embedding_service(),
        llm=make_llm_service(llm_client),
        config=CognitiveConfig(**config),
        clock=clock or FakeClock(),
    )
