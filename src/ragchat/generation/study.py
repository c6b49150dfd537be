"""Single-shot study aids: document summaries and flashcards."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import List, Tuple

from pydantic import TypeAdapter, ValidationError

from ragchat.config import Settings
from ragchat.conversations.repository import QuotaLedger
from ragchat.errors import DocumentNotFoundError, InvalidMessageError, QuotaExceededError
from ragchat.generation.gateway import GenerationGateway
from ragchat.generation.providers import estimate_tokens
from ragchat.metrics.observability import get_logger
from ragchat.models import ChatMessage, ProviderResponse
from ragchat.retrieval.service import RetrievalEngine

SUMMARY_PROMPT = (
    "You are a helpful assistant that creates concise summaries. "
    "Create a summary of the following text in approximately {max_words} words."
)

FLASHCARD_PROMPT = (
    "You are a helpful assistant that creates educational flashcards. "
    "Create exactly {count} flashcards from the following text. "
    'Format each flashcard as JSON with "question" and "answer" fields. '
    "Return only a JSON array of flashcards."
)

FALLBACK_QUESTION = "What is the main topic of this content?"


@dataclass(frozen=True)
class StudyConfig:
    summary_reservation: int = 50
    flashcard_reservation: int = 75
    max_source_chars: int = 10000
    max_flashcards: int = 20

    @classmethod
    def from_settings(cls, settings: Settings) -> "StudyConfig":
        return cls(
            summary_reservation=settings.summary_token_reservation,
            flashcard_reservation=settings.flashcard_token_reservation,
            max_source_chars=settings.study_max_source_chars,
        )


@dataclass(frozen=True)
class Flashcard:
    question: str
    answer: str


@dataclass(frozen=True)
class Summary:
    summary: str
    tokens_used: int
    original_length: int
    provider: str


@dataclass(frozen=True)
class FlashcardDeck:
    flashcards: Tuple[Flashcard, ...]
    tokens_used: int
    provider: str


_FLASHCARDS = TypeAdapter(List[Flashcard])


def parse_flashcards(content: str) -> Tuple[Flashcard, ...]:
    """Parse a JSON array of cards; anything else collapses into one topic card."""

    try:
        cards = _FLASHCARDS.validate_json(content.strip())
    except ValidationError:
        cards = []
    if cards:
        return tuple(cards)
    answer = content[:200] + "..." if len(content) > 200 else content
    return (Flashcard(question=FALLBACK_QUESTION, answer=answer),)


class StudyAidService:
    """Summaries and flashcards over raw text or an indexed document."""

    def __init__(
        self,
        gateway: GenerationGateway,
        quota: QuotaLedger,
        retrieval: RetrievalEngine,
        config: StudyConfig | None = None,
    ) -> None:
        self._gateway = gateway
        self._quota = quota
        self._retrieval = retrieval
        self._config = config or StudyConfig()
        self._logger = get_logger("study")

    def _source_text(self, text: str | None, document_id: str | None) -> str:
        if document_id:
            fragments = self._retrieval.document_fragments(document_id)
            if not fragments:
                raise DocumentNotFoundError(f"Document {document_id} not found or not indexed")
            return "\n".join(fragment.content for fragment in fragments)
        source = (text or "").strip()
        if not source:
            raise InvalidMessageError("Either text or document_id must be provided")
        if len(source) > self._config.max_source_chars:
            raise InvalidMessageError(f"Text exceeds {self._config.max_source_chars} characters")
        return source

    def _reserve(self, user_id: str, tokens: int) -> None:
        if not self._quota.has_quota(user_id, tokens):
            used, limit = self._quota.usage(user_id)
            raise QuotaExceededError(used, limit)

    async def _run(self, user_id: str, instruction: str, source: str) -> Tuple[ProviderResponse, int]:
        started = time.perf_counter()
        response = await self._gateway.generate(
            [ChatMessage(role="system", content=instruction), ChatMessage(role="user", content=source)],
        )
        tokens = response.usage.total_tokens or estimate_tokens(response.content)
        await self._quota.consume(user_id, tokens)
        self._logger.info(
            "study.generated",
            provider=response.provider,
            tokens_used=tokens,
            duration_seconds=time.perf_counter() - started,
        )
        return response, tokens

    async def summarize(
        self,
        user_id: str,
        *,
        text: str | None = None,
        document_id: str | None = None,
        max_words: int = 200,
    ) -> Summary:
        source = self._source_text(text, document_id)
        if max_words <= 0:
            raise InvalidMessageError("max_words must be positive")
        self._reserve(user_id, self._config.summary_reservation)
        response, tokens = await self._run(user_id, SUMMARY_PROMPT.format(max_words=max_words), source)
        return Summary(
            summary=response.content,
            tokens_used=tokens,
            original_length=len(source),
            provider=response.provider,
        )

    async def flashcards(
        self,
        user_id: str,
        *,
        text: str | None = None,
        document_id: str | None = None,
        count: int = 5,
    ) -> FlashcardDeck:
        source = self._source_text(text, document_id)
        if not 1 <= count <= self._config.max_flashcards:
            raise InvalidMessageError(f"count must be between 1 and {self._config.max_flashcards}")
        self._reserve(user_id, self._config.flashcard_reservation)
        response, tokens = await self._run(user_id, FLASHCARD_PROMPT.format(count=count), source)
        return FlashcardDeck(
            flashcards=parse_flashcards(response.content),
            tokens_used=tokens,
            provider=response.provider,
        )
