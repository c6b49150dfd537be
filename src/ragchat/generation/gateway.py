"""Generation gateway: one contract over primary, fallback and simulated providers."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Sequence, Tuple

from ragchat.config import Settings
from ragchat.embeddings.service import EmbeddingEstimator
from ragchat.generation.providers import (
    AnthropicProvider,
    DeltaCallback,
    GenerationProvider,
    OpenAIProvider,
    SimulatedProvider,
)
from ragchat.metrics.observability import PipelineMetrics, get_logger
from ragchat.models import ChatMessage, GenerationOptions, ProviderResponse

RestartCallback = Callable[[str], Awaitable[None]]


class _ConsumerError(Exception):
    """Wraps an exception raised by the caller's chunk callback."""

    def __init__(self, original: Exception) -> None:
        super().__init__(str(original))
        self.original = original


class GenerationGateway:
    """Presents total ``generate``/``generate_stream`` calls over N providers.

    Availability is probed once at construction. The first available provider
    becomes primary and at most ``max_fallbacks`` further available providers
    are kept behind it; the simulator always closes the chain, so neither call
    ever propagates a provider error.

    When a streamed attempt fails after emitting chunks, ``on_restart`` is
    awaited with the next provider's name before that provider emits anything.
    Only deltas delivered after the last restart make up the returned content.
    """

    def __init__(
        self,
        providers: Sequence[GenerationProvider],
        *,
        embedder: EmbeddingEstimator | None = None,
        simulator: SimulatedProvider | None = None,
        max_fallbacks: int = 1,
        timeout_seconds: float = 30.0,
    ) -> None:
        if max_fallbacks < 0:
            raise ValueError("max_fallbacks must be >= 0")
        self._logger = get_logger("generation")
        self._embedder = embedder or EmbeddingEstimator()
        self._simulator = simulator or SimulatedProvider()
        self._timeout = timeout_seconds
        self._availability: Dict[str, bool] = {provider.name: provider.is_available() for provider in providers}
        available = [provider for provider in providers if self._availability[provider.name]]
        self._chain: Tuple[GenerationProvider, ...] = tuple(available[: 1 + max_fallbacks])
        if self._chain:
            self._logger.info(
                "gateway.configured",
                primary=self._chain[0].name,
                fallbacks=[provider.name for provider in self._chain[1:]],
                availability=self._availability,
            )
        else:
            self._logger.warning("gateway.simulation_mode", availability=self._availability)

    @property
    def primary(self) -> str:
        return self._chain[0].name if self._chain else self._simulator.name

    @property
    def fallbacks(self) -> List[str]:
        return [provider.name for provider in self._chain[1:]]

    @property
    def simulation_mode(self) -> bool:
        return not self._chain

    @property
    def embedder(self) -> EmbeddingEstimator:
        return self._embedder

    def status(self) -> Dict[str, object]:
        return {
            "primary": self.primary,
            "fallbacks": self.fallbacks,
            "simulation": self.simulation_mode,
            "providers": dict(self._availability),
            "embeddings": self._embedder.mode,
        }

    async def embed(self, text: str) -> Tuple[float, ...]:
        return await self._embedder.embed(text)

    async def generate(
        self,
        messages: Sequence[ChatMessage],
        options: GenerationOptions | None = None,
    ) -> ProviderResponse:
        options = options or GenerationOptions()
        for provider in self._chain:
            start = time.perf_counter()
            try:
                async with asyncio.timeout(self._timeout):
                    response = await provider.generate(messages, options)
            except Exception as exc:
                self._record_failure(provider.name, exc, streaming=False)
                continue
            PipelineMetrics.observe_generation(provider.name, time.perf_counter() - start)
            return response
        return await self._simulate(messages, options)

    async def generate_stream(
        self,
        messages: Sequence[ChatMessage],
        on_chunk: DeltaCallback,
        options: GenerationOptions | None = None,
        on_restart: RestartCallback | None = None,
    ) -> ProviderResponse:
        options = options or GenerationOptions()
        partial_output = False

        async def forward(delta: str) -> None:
            nonlocal partial_output
            partial_output = True
            try:
                await on_chunk(delta)
            except Exception as exc:
                raise _ConsumerError(exc) from exc

        for provider in self._chain:
            if partial_output:
                await self._restart(provider.name, on_restart)
                partial_output = False
            start = time.perf_counter()
            try:
                async with asyncio.timeout(self._timeout):
                    response = await provider.generate_stream(messages, forward, options)
            except _ConsumerError as exc:
                raise exc.original
            except Exception as exc:
                self._record_failure(provider.name, exc, streaming=True)
                continue
            PipelineMetrics.observe_generation(provider.name, time.perf_counter() - start)
            return response

        if partial_output:
            await self._restart(self._simulator.name, on_restart)
        try:
            return await self._simulate(messages, options, forward)
        except _ConsumerError as exc:
            raise exc.original

    async def _restart(self, provider_name: str, on_restart: RestartCallback | None) -> None:
        self._logger.info("gateway.stream_restart", provider=provider_name)
        if on_restart is not None:
            await on_restart(provider_name)

    async def _simulate(
        self,
        messages: Sequence[ChatMessage],
        options: GenerationOptions,
        on_delta: DeltaCallback | None = None,
    ) -> ProviderResponse:
        start = time.perf_counter()
        if on_delta is None:
            response = await self._simulator.generate(messages, options)
        else:
            response = await self._simulator.generate_stream(messages, on_delta, options)
        PipelineMetrics.observe_generation(self._simulator.name, time.perf_counter() - start)
        return response

    def _record_failure(self, provider_name: str, exc: Exception, *, streaming: bool) -> None:
        PipelineMetrics.record_provider_failure(provider_name)
        self._logger.warning(
            "provider.failed",
            provider=provider_name,
            streaming=streaming,
            error_type=type(exc).__name__,
            detail=str(exc) or "timeout",
        )


def build_providers(settings: Settings) -> List[GenerationProvider]:
    """Instantiate provider handles in the configured priority order."""

    factories: Dict[str, Callable[[], GenerationProvider]] = {
        "openai": lambda: OpenAIProvider(settings.openai_api_key, settings.openai_chat_model),
        "anthropic": lambda: AnthropicProvider(settings.anthropic_api_key, settings.anthropic_chat_model),
    }
    providers: List[GenerationProvider] = []
    for name in settings.provider_order:
        factory = factories.get(name)
        if factory is None:
            raise ValueError(f"Unknown generation provider: {name}")
        providers.append(factory())
    return providers


def build_gateway(settings: Settings, embedder: EmbeddingEstimator) -> GenerationGateway:
    return GenerationGateway(
        build_providers(settings),
        embedder=embedder,
        simulator=SimulatedProvider(
            chunk_delay=settings.simulation_chunk_delay,
            chunk_jitter=settings.simulation_chunk_jitter,
        ),
        max_fallbacks=settings.max_fallbacks,
        timeout_seconds=settings.provider_timeout_seconds,
    )
