"""Runtime that hosts many agents over shared provider services."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .cache import EmbeddingCache
from .clients import EMBEDDING_PROVIDERS, LLM_PROVIDERS
from .config import CognitiveConfig
from .embeddings import EmbeddingService
from .llm import LLMService
from .manager import AgentMemory
from .reflection import ReflectionCycleResult
from .schemas import dumps_payload
from .storage import Clock

logger = logging.getLogger(__name__)


@dataclass
class CognitiveRuntime:
    """One embedding service, one LLM service and one cache shared by all agents."""

    config: CognitiveConfig = field(default_factory=CognitiveConfig)
    clock: Optional[Clock] = None
    embeddings: Optional[EmbeddingService] = None
    llm: Optional[LLMService] = None
    agents: Dict[str, AgentMemory] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.embeddings is None:
            self.cache = EmbeddingCache(self.config.max_cache_size)
            self.embeddings = EmbeddingService.from_config(self.config, cache=self.cache)
        else:
            self.cache = self.embeddings.cache
        if self.llm is None:
            self.llm = LLMService.from_config(self.config)
        self._monitor_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------
    def agent(self, agent_id: str) -> AgentMemory:
        memory = self.agents.get(agent_id)
        if memory is None:
            memory = AgentMemory(
                agent_id=agent_id,
                embeddings=self.embeddings,
                llm=self.llm,
                config=self.config,
                clock=self.clock,
            )
            self.agents[agent_id] = memory
            logger.info("Registered agent %s", agent_id)
        return memory

    def ingest(
        self,
        agent_id: str,
        text: str,
        importance: Optional[float] = None,
        *,
        tags: Sequence[str] = (),
        location: Optional[Tuple[float, float]] = None,
    ) -> str:
        return self.agent(agent_id).record_observation(
            text, importance, tags=tags, location=location
        )

    async def tick(self) -> Dict[str, ReflectionCycleResult]:
        """Give every agent a chance to reflect; agents run concurrently."""

        names = list(self.agents)
        results = await asyncio.gather(*(self.agents[name].maybe_reflect() for name in names))
        return dict(zip(names, results))

    async def query(self, agent_id: str, text: str, k: Optional[int] = None) -> List[Mapping[str, Any]]:
        outcome = await self.agent(agent_id).retrieve_scored(text, k)
        return [result.to_payload() for result in outcome.results]

    # ------------------------------------------------------------------
    # Provider health
    # ------------------------------------------------------------------
    async def check_health(self) -> Mapping[str, Mapping[str, bool]]:
        embedding_health, llm_health = await asyncio.gather(
            self.embeddings.check_health(), self.llm.check_health()
        )
        return {"embedding": embedding_health, "llm": llm_health}

    def start_health_monitor(self, interval: Optional[float] = None) -> asyncio.Task:
        if self._monitor_task is None or self._monitor_task.done():
            period = self.config.health_check_interval if interval is None else interval
            self._monitor_task = asyncio.ensure_future(self._monitor(period))
        return self._monitor_task

    async def stop_health_monitor(self) -> None:
        task, self._monitor_task = self._monitor_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _monitor(self, interval: float) -> None:
        while True:
            health = await self.check_health()
            logger.debug("Provider health: %s", health)
            await asyncio.sleep(interval)

    def statistics(self) -> Mapping[str, Any]:
        return {
            "embedding": self.embeddings.statistics().to_payload(),
            "llm": {
                "provider": self.llm.current_provider,
                "model": self.llm.current_model,
                "providers": self.llm.statistics(),
            },
            "agents": {name: memory.statistics() for name, memory in self.agents.items()},
        }

    async def aclose(self) -> None:
        await self.stop_health_monitor()
        await asyncio.gather(self.embeddings.aclose(), self.llm.aclose())

    async def __aenter__(self) -> "CognitiveRuntime":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def _iter_observations(stream: Iterable[str]) -> Iterable[Mapping[str, Any]]:
    for raw_line in stream:
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError as exc:  # pragma: no cover - CLI guard
            logger.error("Skipping malformed JSON line: %s", line)
            raise SystemExit(1) from exc
        if not isinstance(event, Mapping) or "agent" not in event or "text" not in event:
            logger.error("Each line must include 'agent' and 'text' fields: %s", line)
            raise SystemExit(1)
        yield event


def _build_config(args: argparse.Namespace) -> CognitiveConfig:
    if args.config:
        config = CognitiveConfig.from_file(args.config)
    else:
        config = CognitiveConfig.from_env()
    overrides: Dict[str, Any] = {}
    if args.embedding_provider:
        overrides["embedding_provider"] = args.embedding_provider
    if args.llm_provider:
        overrides["llm_provider"] = args.llm_provider
    if args.threshold is not None:
        overrides["reflection_threshold"] = args.threshold
    return replace(config, **overrides) if overrides else config


async def _run(runtime: CognitiveRuntime, stream: Iterable[str], args: argparse.Namespace) -> Mapping[str, Any]:
    await runtime.check_health()
    for event in _iter_observations(stream):
        importance = event.get("importance")
        location = event.get("location")
        runtime.ingest(
            str(event["agent"]),
            str(event["text"]),
            float(importance) if importance is not None else None,
            tags=[str(tag) for tag in event.get("tags") or []],
            location=(float(location[0]), float(location[1])) if location else None,
        )
        await runtime.tick()

    if args.force:
        await asyncio.gather(*(memory.force_reflection() for memory in runtime.agents.values()))

    report: Dict[str, Any] = {"agents": {}}
    for name, memory in runtime.agents.items():
        entry: Dict[str, Any] = {"reflection_tree": memory.get_reflection_tree().to_payload()}
        if args.query:
            entry["query"] = {"text": args.query, "results": await runtime.query(name, args.query, args.top_k)}
        report["agents"][name] = entry
    report["statistics"] = runtime.statistics()
    return report


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Feed observations to agents and print their reflections")
    parser.add_argument("--config", type=Path, help="JSON file with CognitiveConfig fields")
    parser.add_argument(
        "--input",
        type=Path,
        help="Optional path to a JSONL file. Defaults to reading from standard input.",
    )
    parser.add_argument("--embedding-provider", choices=EMBEDDING_PROVIDERS, help="Primary embedding provider")
    parser.add_argument("--llm-provider", choices=LLM_PROVIDERS, help="Generation provider")
    parser.add_argument("--threshold", type=float, help="Importance sum that triggers reflection")
    parser.add_argument("--query", help="Retrieve memories for this query from every agent")
    parser.add_argument("--top-k", type=int, default=10, help="Number of memories returned for --query")
    parser.add_argument("--force", action="store_true", help="Force one reflection cycle per agent at the end")
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging to trace prompt/response payloads.",
    )

    args = parser.parse_args(list(argv) if argv is not None else None)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        config = _build_config(args)
    except (OSError, ValueError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    async def _main() -> Mapping[str, Any]:
        async with CognitiveRuntime(config=config) as runtime:
            if args.input:
                with args.input.open("r", encoding="utf-8") as fh:
                    return await _run(runtime, fh, args)
            return await _run(runtime, sys.stdin, args)

    report = asyncio.run(_main())
    print(dumps_payload(report))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
