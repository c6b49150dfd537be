"""Shared domain models used across the ragchat pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Tuple


@dataclass(frozen=True)
class Fragment:
    """Slice of a source document's text, optionally carrying its embedding."""

    document_id: str
    ordinal: int
    content: str
    embedding: Tuple[float, ...] | None = None
    start: int = 0
    end: int = 0
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def fragment_id(self) -> str:
        return f"{self.document_id}#{self.ordinal}"


@dataclass(frozen=True)
class RetrievalResult:
    """Fragment returned from the index during retrieval."""

    fragment_id: str
    document_id: str
    content: str
    similarity: float
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChatMessage:
    """Role/content pair handed to a generation provider."""

    role: str
    content: str


@dataclass(frozen=True)
class GenerationOptions:
    """Per-call sampling options."""

    temperature: float = 0.7
    max_tokens: int = 1000


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class ProviderResponse:
    """Complete answer produced by a generation provider."""

    content: str
    usage: TokenUsage
    provider: str
    model: str | None = None
