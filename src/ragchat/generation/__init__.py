"""Generation providers and the gateway that fronts them."""

from .gateway import GenerationGateway, build_gateway, build_providers
from .providers import (
    CANNED_RESPONSES,
    SIMULATION_PROVIDER,
    AnthropicProvider,
    GenerationProvider,
    LangChainChatProvider,
    OpenAIProvider,
    SimulatedProvider,
    estimate_tokens,
    estimate_usage,
)
from .study import Flashcard, FlashcardDeck, StudyAidService, StudyConfig, Summary, parse_flashcards

__all__ = [
    "CANNED_RESPONSES",
    "SIMULATION_PROVIDER",
    "AnthropicProvider",
    "Flashcard",
    "FlashcardDeck",
    "GenerationGateway",
    "GenerationProvider",
    "LangChainChatProvider",
    "OpenAIProvider",
    "SimulatedProvider",
    "StudyAidService",
    "StudyConfig",
    "Summary",
    "build_gateway",
    "build_providers",
    "estimate_tokens",
    "estimate_usage",
    "parse_flashcards",
]
