from __future__ import annotations

import asyncio
import json

import pytest

from agentmind.memory.cognitive import runtime as runtime_module
from agentmind.memory.cognitive.clients import OllamaClient
from agentmind.memory.cognitive.config import CognitiveConfig, ProviderCredentials, RetrievalWeights
from agentmind.memory.cognitive.runtime import CognitiveRuntime

from tests.fakes import (
    FakeClock,
    FakeEmbeddingClient,
    ScriptedLLMClient,
    make_embedding_service,
    make_llm_service,
    reflective_reply,
)


def _runtime(**config: object) -> CognitiveRuntime:
    return CognitiveRuntime(
        config=CognitiveConfig(**config),
        clock=FakeClock(),
        embeddings=make_embedding_service(FakeEmbeddingClient()),
        llm=make_llm_service(ScriptedLLMClient(handler=reflective_reply)),
    )


@pytest.mark.asyncio
async def test_agents_share_services_but_not_memories() -> None:
    runtime = _runtime()
    runtime.ingest("alice", "found water", 7)
    runtime.ingest("bob", "saw a wolf", 9)

    assert runtime.agent("alice").embeddings is runtime.agent("bob").embeddings
    assert runtime.agent("alice").llm is runtime.agent("bob").llm
    assert [record.text for record in runtime.agent("alice").store.all()] == ["found water"]
    assert [record.text for record in runtime.agent("bob").store.all()] == ["saw a wolf"]


@pytest.mark.asyncio
async def test_tick_reflects_every_ready_agent() -> None:
    runtime = _runtime(reflection_threshold=20)
    for index in range(3):
        runtime.ingest("alice", f"found bread {index}", 9)
    runtime.ingest("bob", "quiet hallway", 3)

    results = await runtime.tick()

    assert results["alice"].ran and len(results["alice"].reflections) == 3
    assert results["bob"].trigger is None
    assert runtime.agent("bob").store.reflections() == []


@pytest.mark.asyncio
async def test_query_returns_scored_payloads() -> None:
    runtime = _runtime()
    runtime.ingest("alice", "the exit is behind the statue", 9)
    runtime.ingest("alice", "a cobweb", 1)

    results = await runtime.query("alice", "where is the exit", 1)

    assert len(results) == 1
    assert results[0]["text"] == "the exit is behind the statue"
    assert {"score", "recency", "importance", "relevance"} <= set(results[0])


@pytest.mark.asyncio
async def test_check_health_and_monitor() -> None:
    runtime = _runtime()

    health = await runtime.check_health()
    assert health["embedding"] == {"primary": True}
    assert health["llm"]["scripted"] is True

    task = runtime.start_health_monitor(interval=0.01)
    await asyncio.sleep(0.03)
    assert not task.done()
    await runtime.aclose()
    assert task.cancelled() or task.done()


@pytest.mark.asyncio
async def test_statistics_cover_services_and_agents() -> None:
    runtime = _runtime()
    runtime.ingest("alice", "found a torch", 6)

    stats = runtime.statistics()

    assert stats["embedding"]["provider"] == "primary"
    assert stats["llm"]["provider"] == "scripted"
    assert stats["agents"]["alice"]["memories"]["total"] == 1
    json.dumps(stats)


def test_config_validation_and_mapping() -> None:
    with pytest.raises(ValueError):
        CognitiveConfig(embedding_provider="word2vec")
    with pytest.raises(ValueError):
        CognitiveConfig(accumulator_reset="halve")
    with pytest.raises(ValueError):
        CognitiveConfig.from_mapping({"unknown_key": 1})

    config = CognitiveConfig.from_mapping(
        {
            "embedding_provider": "heuristic",
            "embedding_fallback_chain": ["heuristic"],
            "retrieval_weights": {"recency": 0.5, "importance": 1.0, "relevance": 2.0},
            "provider_credentials": {"openai_api_key": "sk-test"},
        }
    )
    assert config.embedding_fallback_chain == ("heuristic",)
    assert config.retrieval_weights == RetrievalWeights(0.5, 1.0, 2.0)
    payload = config.to_payload()
    assert payload["provider_credentials"]["openai_api_key"] == "***"
    assert payload["embedding_fallback_chain"] == ["heuristic"]
    assert config.effective_meta_threshold == config.reflection_threshold


def test_credentials_from_env_treat_placeholders_as_missing() -> None:
    credentials = ProviderCredentials.from_env(
        {"OPENAI_API_KEY": "your-openai-api-key-here", "OLLAMA_URL": "http://ollama:11434"}
    )
    assert credentials.ollama_url == "http://ollama:11434"

    config = CognitiveConfig(
        embedding_provider="openai",
        embedding_fallback_chain=("openai", "heuristic"),
        provider_credentials=credentials,
    )
    runtime = CognitiveRuntime(config=config, llm=make_llm_service())
    assert runtime.embeddings.provider_status()["openai"] is False


@pytest.mark.asyncio
async def test_observation_without_importance_uses_estimator() -> None:
    runtime = _runtime()
    memory_id = runtime.ingest("alice", "I see the exit!")

    record = runtime.agent("alice").store.get(memory_id)

    assert record.importance == 9
    assert runtime.agent("alice").reflection.tracker.current_sum == 9


def test_cli_prints_trees_and_statistics(tmp_path, monkeypatch, capsys) -> None:
    async def offline(self, timeout: float = 5.0) -> bool:
        return False

    monkeypatch.setattr(OllamaClient, "health_check", offline)
    for name in ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "VOYAGE_API_KEY"):
        monkeypatch.delenv(name, raising=False)

    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps({"embedding_provider": "heuristic", "embedding_fallback_chain": ["heuristic"]}),
        encoding="utf-8",
    )
    input_path = tmp_path / "observations.jsonl"
    input_path.write_text(
        "\n".join(
            [
                json.dumps({"agent": "alice", "text": "found water near the gate", "importance": 7}),
                "# comments are skipped",
                json.dumps({"agent": "bob", "text": "saw the exit", "tags": ["exit"]}),
            ]
        ),
        encoding="utf-8",
    )

    exit_code = runtime_module.main(
        ["--config", str(config_path), "--input", str(input_path), "--query", "water"]
    )

    assert exit_code == 0
    report = json.loads(capsys.readouterr().out)
    assert set(report["agents"]) == {"alice", "bob"}
    assert report["agents"]["alice"]["query"]["results"][0]["text"] == "found water near the gate"
    assert report["agents"]["bob"]["reflection_tree"]["total_nodes"] == 0
    assert report["statistics"]["embedding"]["provider"] == "heuristic"


def test_cli_rejects_invalid_config(tmp_path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"reflection_threshold": -1}), encoding="utf-8")

    assert runtime_module.main(["--config", str(config_path)]) == 2
