"""Generation providers for ragchat."""

from __future__ import annotations

import asyncio
import hashlib
import math
import random
from typing import Any, Awaitable, Callable, List, Mapping, Protocol, Sequence

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from ragchat.config import credential_configured
from ragchat.metrics.observability import get_logger
from ragchat.models import ChatMessage, GenerationOptions, ProviderResponse, TokenUsage

SIMULATION_PROVIDER = "simulation"

CANNED_RESPONSES: tuple[str, ...] = (
    "I'm running in offline simulation mode, so this answer is a placeholder. Connect a generation provider to get real responses.",
    "Simulation mode is active: no language model is reachable right now, but your message was received and stored.",
    "This is a simulated reply. The chat pipeline, retrieval and streaming are all working; only the model backend is offline.",
    "No generation provider is configured, so I'm answering from a fixed set of demo responses. Add an API key to enable real answers.",
    "Offline response: the assistant could not reach a model provider, so this canned message stands in for a generated answer.",
)

DeltaCallback = Callable[[str], Awaitable[None]]


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters, rounded up."""

    return math.ceil(len(text) / 4)


def estimate_usage(messages: Sequence[ChatMessage], completion: str) -> TokenUsage:
    prompt = "".join(message.content for message in messages)
    return TokenUsage(
        prompt_tokens=estimate_tokens(prompt),
        completion_tokens=estimate_tokens(completion),
        total_tokens=estimate_tokens(prompt + completion),
    )


class GenerationProvider(Protocol):
    """Uniform capability every provider handle exposes to the gateway."""

    name: str

    def is_available(self) -> bool:
        """Return True when the provider can be called (e.g. it has a credential)."""

    async def generate(self, messages: Sequence[ChatMessage], options: GenerationOptions) -> ProviderResponse:
        """Return a complete answer."""

    async def generate_stream(
        self,
        messages: Sequence[ChatMessage],
        on_delta: DeltaCallback,
        options: GenerationOptions,
    ) -> ProviderResponse:
        """Deliver incremental text through ``on_delta`` and return the complete answer."""


def _message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    parts: List[str] = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, Mapping) and block.get("type") == "text":
            parts.append(str(block.get("text", "")))
    return "".join(parts)


def _to_langchain(messages: Sequence[ChatMessage]) -> List[BaseMessage]:
    converted: List[BaseMessage] = []
    for message in messages:
        if message.role == "system":
            converted.append(SystemMessage(content=message.content))
        elif message.role == "assistant":
            converted.append(AIMessage(content=message.content))
        else:
            converted.append(HumanMessage(content=message.content))
    return converted


def _reported_usage(usage: Mapping[str, Any] | None) -> TokenUsage | None:
    if not usage:
        return None
    prompt = int(usage.get("input_tokens") or 0)
    completion = int(usage.get("output_tokens") or 0)
    total = int(usage.get("total_tokens") or prompt + completion)
    if total <= 0:
        return None
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


class LangChainChatProvider:
    """Provider handle backed by any LangChain chat model."""

    def __init__(self, name: str, model: BaseChatModel | None, *, model_name: str | None = None) -> None:
        self.name = name
        self._model = model
        self._model_name = model_name
        self._logger = get_logger("generation")

    def is_available(self) -> bool:
        return self._model is not None

    def _require_model(self) -> BaseChatModel:
        if self._model is None:
            raise RuntimeError(f"Provider {self.name} is not configured")
        return self._model

    async def generate(self, messages: Sequence[ChatMessage], options: GenerationOptions) -> ProviderResponse:
        model = self._require_model()
        result = await model.ainvoke(
            _to_langchain(messages),
            temperature=options.temperature,
            max_tokens=options.max_tokens,
        )
        content = _message_text(result)
        usage = _reported_usage(getattr(result, "usage_metadata", None)) or estimate_usage(messages, content)
        return ProviderResponse(content=content, usage=usage, provider=self.name, model=self._model_name)

    async def generate_stream(
        self,
        messages: Sequence[ChatMessage],
        on_delta: DeltaCallback,
        options: GenerationOptions,
    ) -> ProviderResponse:
        model = self._require_model()
        parts: List[str] = []
        reported = {"input_tokens": 0, "output_tokens": 0, "total_tokens": 0}
        async for chunk in model.astream(
            _to_langchain(messages),
            temperature=options.temperature,
            max_tokens=options.max_tokens,
        ):
            # Anthropic reports input and output tokens on separate chunks
            for key, value in (getattr(chunk, "usage_metadata", None) or {}).items():
                if key in reported and isinstance(value, int):
                    reported[key] += value
            text = _message_text(chunk)
            if not text:
                continue
            parts.append(text)
            await on_delta(text)
        content = "".join(parts)
        usage = _reported_usage(reported) or estimate_usage(messages, content)
        return ProviderResponse(content=content, usage=usage, provider=self.name, model=self._model_name)


class OpenAIProvider(LangChainChatProvider):
    """OpenAI chat completions through ``langchain_openai``."""

    def __init__(self, api_key: str | None, model_name: str = "gpt-4o-mini") -> None:
        model = None
        if credential_configured(api_key):
            # Retries are the gateway's job
            model = ChatOpenAI(model=model_name, api_key=api_key, stream_usage=True, max_retries=0)
        super().__init__("openai", model, model_name=model_name)


class AnthropicProvider(LangChainChatProvider):
    """Anthropic messages API through ``langchain_anthropic``."""

    def __init__(self, api_key: str | None, model_name: str = "claude-3-5-haiku-latest") -> None:
        model = None
        if credential_configured(api_key):
            model = ChatAnthropic(model=model_name, api_key=api_key, max_retries=0)
        super().__init__("anthropic", model, model_name=model_name)


class SimulatedProvider:
    """Deterministic canned-response generator used when no provider is reachable."""

    name = SIMULATION_PROVIDER

    def __init__(
        self,
        *,
        chunk_delay: float = 0.05,
        chunk_jitter: float = 0.1,
        responses: Sequence[str] = CANNED_RESPONSES,
        rng: random.Random | None = None,
    ) -> None:
        if not responses:
            raise ValueError("Simulation needs at least one canned response")
        self._chunk_delay = chunk_delay
        self._chunk_jitter = chunk_jitter
        self._responses = tuple(responses)
        self._rng = rng or random.Random()

    @property
    def responses(self) -> tuple[str, ...]:
        return self._responses

    def is_available(self) -> bool:
        return True

    def select(self, messages: Sequence[ChatMessage]) -> str:
        key = messages[-1].content if messages else ""
        digest = hashlib.sha256(key.encode("utf-8")).digest()
        return self._responses[digest[0] % len(self._responses)]

    async def generate(self, messages: Sequence[ChatMessage], options: GenerationOptions | None = None) -> ProviderResponse:
        content = self.select(messages)
        return ProviderResponse(
            content=content,
            usage=estimate_usage(messages, content),
            provider=self.name,
            model=self.name,
        )

    async def generate_stream(
        self,
        messages: Sequence[ChatMessage],
        on_delta: DeltaCallback,
        options: GenerationOptions | None = None,
    ) -> ProviderResponse:
        response = await self.generate(messages, options)
        words = response.content.split(" ")
        last = len(words) - 1
        for index, word in enumerate(words):
            piece = word if index == last else word + " "
            if piece:
                await on_delta(piece)
            if index < last and (self._chunk_delay or self._chunk_jitter):
                await asyncio.sleep(self._chunk_delay + self._rng.random() * self._chunk_jitter)
        return response
