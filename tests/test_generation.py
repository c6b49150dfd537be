"""Tests for generation providers and the gateway."""

from __future__ import annotations

import asyncio
from typing import List, Sequence

import pytest
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage

from ragchat.config import get_settings
from ragchat.embeddings.service import EmbeddingConfig, EmbeddingEstimator
from ragchat.generation.gateway import GenerationGateway, build_providers
from ragchat.generation.providers import (
    CANNED_RESPONSES,
    SIMULATION_PROVIDER,
    AnthropicProvider,
    LangChainChatProvider,
    OpenAIProvider,
    SimulatedProvider,
    estimate_tokens,
    estimate_usage,
)
from ragchat.models import ChatMessage, GenerationOptions, ProviderResponse

HI = [ChatMessage(role="user", content="hi")]


class ExplodingProvider:
    def __init__(self, name: str, *, partial: str | None = None) -> None:
        self.name = name
        self.partial = partial
        self.calls = 0

    def is_available(self) -> bool:
        return True

    async def generate(self, messages, options) -> ProviderResponse:
        self.calls += 1
        raise ConnectionError(f"{self.name} is down")

    async def generate_stream(self, messages, on_delta, options) -> ProviderResponse:
        self.calls += 1
        if self.partial:
            await on_delta(self.partial)
        raise ConnectionError(f"{self.name} dropped the stream")


class SleepyProvider:
    name = "sleepy"

    def is_available(self) -> bool:
        return True

    async def generate(self, messages, options) -> ProviderResponse:
        await asyncio.sleep(5)
        raise AssertionError("timeout should have fired")

    async def generate_stream(self, messages, on_delta, options) -> ProviderResponse:
        return await self.generate(messages, options)


def _fake_provider(name: str, *replies: str) -> LangChainChatProvider:
    model = GenericFakeChatModel(messages=iter([AIMessage(content=reply) for reply in replies]))
    return LangChainChatProvider(name, model, model_name=f"{name}-model")


def _gateway(providers: Sequence, **kwargs) -> GenerationGateway:
    return GenerationGateway(
        providers,
        embedder=EmbeddingEstimator(EmbeddingConfig(dim=16)),
        simulator=SimulatedProvider(chunk_delay=0, chunk_jitter=0),
        **kwargs,
    )


def test_token_estimate_rounds_up():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    usage = estimate_usage([ChatMessage(role="user", content="abc")], "defgh")
    assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (1, 2, 2)


def test_no_providers_means_simulation():
    gateway = _gateway([])
    response = asyncio.run(gateway.generate(HI))
    assert gateway.simulation_mode
    assert response.provider == SIMULATION_PROVIDER
    assert response.content in CANNED_RESPONSES
    assert response.usage.total_tokens > 0


def test_simulation_is_deterministic_per_message():
    simulator = SimulatedProvider(chunk_delay=0, chunk_jitter=0)
    first = asyncio.run(simulator.generate(HI))
    second = asyncio.run(simulator.generate(HI))
    assert first.content == second.content


def test_fallback_answers_when_primary_fails():
    primary = ExplodingProvider("primary")
    gateway = _gateway([primary, _fake_provider("fallback", "fallback answer")])
    response = asyncio.run(gateway.generate(HI))
    assert primary.calls == 1
    assert response.provider == "fallback"
    assert response.content == "fallback answer"
    assert response.usage.total_tokens == estimate_usage(HI, "fallback answer").total_tokens


def test_all_providers_failing_degrades_to_simulation():
    gateway = _gateway([ExplodingProvider("one"), ExplodingProvider("two")])
    response = asyncio.run(gateway.generate(HI))
    assert response.provider == SIMULATION_PROVIDER


def test_stream_chunks_concatenate_to_content():
    deltas: List[str] = []

    async def on_chunk(delta: str) -> None:
        deltas.append(delta)

    gateway = _gateway([_fake_provider("fake", "the quick brown fox jumps")])
    response = asyncio.run(gateway.generate_stream(HI, on_chunk))
    assert len(deltas) > 1
    assert "".join(deltas) == response.content == "the quick brown fox jumps"
    assert response.provider == "fake"


def test_simulated_stream_concatenates_without_trailing_space():
    deltas: List[str] = []

    async def on_chunk(delta: str) -> None:
        deltas.append(delta)

    response = asyncio.run(_gateway([]).generate_stream(HI, on_chunk))
    assert "".join(deltas) == response.content
    assert not deltas[-1].endswith(" ")


def test_mid_stream_failure_restarts_on_fallback():
    deltas: List[str] = []
    restarts: List[str] = []

    async def on_chunk(delta: str) -> None:
        deltas.append(delta)

    async def on_restart(provider: str) -> None:
        restarts.append(provider)
        deltas.clear()

    gateway = _gateway([ExplodingProvider("primary", partial="half an ans"), _fake_provider("backup", "full answer")])
    response = asyncio.run(gateway.generate_stream(HI, on_chunk, on_restart=on_restart))
    assert restarts == ["backup"]
    assert response.provider == "backup"
    assert "".join(deltas) == response.content == "full answer"


def test_failure_before_any_output_does_not_restart():
    restarts: List[str] = []

    async def on_chunk(delta: str) -> None:
        pass

    async def on_restart(provider: str) -> None:
        restarts.append(provider)

    gateway = _gateway([ExplodingProvider("primary"), _fake_provider("backup", "answer")])
    asyncio.run(gateway.generate_stream(HI, on_chunk, on_restart=on_restart))
    assert restarts == []


def test_timeout_moves_to_next_provider():
    gateway = _gateway([SleepyProvider(), _fake_provider("quick", "fast answer")], timeout_seconds=0.05)
    response = asyncio.run(gateway.generate(HI))
    assert response.provider == "quick"


def test_callback_errors_propagate_instead_of_failing_over():
    backup = ExplodingProvider("backup")

    async def on_chunk(delta: str) -> None:
        raise RuntimeError("subscriber went away")

    gateway = _gateway([_fake_provider("fake", "some streamed answer"), backup])
    with pytest.raises(RuntimeError, match="subscriber went away"):
        asyncio.run(gateway.generate_stream(HI, on_chunk))
    assert backup.calls == 0


def test_chain_respects_availability_and_fallback_budget():
    gateway = _gateway(
        [
            OpenAIProvider(None),
            _fake_provider("first", "a"),
            _fake_provider("second", "b"),
            _fake_provider("third", "c"),
        ],
        max_fallbacks=1,
    )
    status = gateway.status()
    assert status["primary"] == "first"
    assert status["fallbacks"] == ["second"]
    assert status["simulation"] is False
    assert status["providers"]["openai"] is False
    assert status["embeddings"] == "hash"


def test_placeholder_keys_leave_providers_unavailable():
    settings = get_settings({"openai_api_key": "demo-key", "anthropic_api_key": "your-key"})
    providers = build_providers(settings)
    assert [provider.name for provider in providers] == ["anthropic", "openai"]
    assert not any(provider.is_available() for provider in providers)
    assert not AnthropicProvider(None).is_available()


def test_options_reach_the_model():
    gateway = _gateway([_fake_provider("fake", "ok")])
    response = asyncio.run(gateway.generate(HI, GenerationOptions(temperature=0.1, max_tokens=5)))
    assert response.content == "ok"
    assert response.model == "fake-model"


def test_gateway_embed_delegates_to_estimator():
    gateway = _gateway([])
    vector = asyncio.run(gateway.embed("hello"))
    assert len(vector) == 16
    assert vector == asyncio.run(gateway.embedder.embed("hello"))
