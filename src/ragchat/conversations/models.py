"""Conversation aggregate: transcript, settings and derived statistics."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Sequence

from ragchat.models import ChatMessage

DEFAULT_TITLE = "New Conversation"
DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant. Provide accurate, helpful, and concise responses."
TITLE_PREVIEW_CHARS = 50
MAX_TITLE_CHARS = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class MessageMetadata:
    """Accounting attached to a message; every field defaults to an arithmetic-safe zero."""

    tokens_used: int = 0
    provider: str = ""
    processing_time_ms: float = 0.0
    sources: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.tokens_used < 0:
            raise ValueError("tokens_used cannot be negative")
        if self.processing_time_ms < 0:
            raise ValueError("processing_time_ms cannot be negative")
        object.__setattr__(self, "sources", tuple(self.sources))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokens_used": self.tokens_used,
            "provider": self.provider,
            "processing_time_ms": self.processing_time_ms,
            "sources": list(self.sources),
        }


@dataclass(frozen=True)
class Message:
    role: Role
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    metadata: MessageMetadata = field(default_factory=MessageMetadata)

    def __post_init__(self) -> None:
        # Role(...) raises ValueError for anything outside the three fixed roles
        object.__setattr__(self, "role", Role(self.role))

    def to_chat_message(self) -> ChatMessage:
        return ChatMessage(role=self.role.value, content=self.content)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata.to_dict(),
        }


@dataclass(frozen=True)
class GenerationSettings:
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    temperature: float = 0.7
    max_tokens: int = 1000

    def __post_init__(self) -> None:
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError("temperature must be between 0 and 2")
        if not 1 <= self.max_tokens <= 4000:
            raise ValueError("max_tokens must be between 1 and 4000")


@dataclass(frozen=True)
class ConversationSettings:
    rag_enabled: bool = True
    streaming_enabled: bool = True
    memory_enabled: bool = True


@dataclass(frozen=True)
class ConversationStats:
    total_messages: int = 0
    total_tokens_used: int = 0
    average_response_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def compute_stats(messages: Sequence[Message]) -> ConversationStats:
    """Fold the transcript into statistics; the only way stats are ever produced."""

    response_times = [message.metadata.processing_time_ms for message in messages if message.role is Role.ASSISTANT]
    average = sum(response_times) / len(response_times) if response_times else 0.0
    return ConversationStats(
        total_messages=len(messages),
        total_tokens_used=sum(message.metadata.tokens_used for message in messages),
        average_response_time_ms=average,
    )


@dataclass
class Conversation:
    """Aggregate owned by one user; mutated only through its methods."""

    conversation_id: str
    owner_id: str
    title: str = DEFAULT_TITLE
    messages: List[Message] = field(default_factory=list)
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    settings: ConversationSettings = field(default_factory=ConversationSettings)
    stats: ConversationStats = field(default_factory=ConversationStats)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)

    def append_message(
        self,
        role: Role | str,
        content: str,
        metadata: MessageMetadata | None = None,
        *,
        now: datetime | None = None,
    ) -> Message:
        timestamp = now or utcnow()
        message = Message(role=Role(role), content=content, timestamp=timestamp, metadata=metadata or MessageMetadata())
        self.messages.append(message)
        self.stats = compute_stats(self.messages)
        self._touch(timestamp)
        return message

    def derive_title(self) -> bool:
        """Replace the placeholder title with a preview of the first user message.

        Returns True when the title changed.
        """

        if self.title != DEFAULT_TITLE:
            return False
        first_user = next((message for message in self.messages if message.role is Role.USER), None)
        if first_user is None:
            return False
        preview = first_user.content[:TITLE_PREVIEW_CHARS]
        if len(first_user.content) > TITLE_PREVIEW_CHARS:
            preview += "..."
        self.title = preview
        return True

    def context_window(self, limit: int = 10) -> List[ChatMessage]:
        if limit <= 0:
            return []
        history = [message for message in self.messages if message.role is not Role.SYSTEM]
        return [message.to_chat_message() for message in history[-limit:]]

    def update(
        self,
        *,
        title: str | None = None,
        settings: Mapping[str, Any] | None = None,
        generation: Mapping[str, Any] | None = None,
    ) -> None:
        if title is not None:
            cleaned = title.strip()
            if not cleaned or len(cleaned) > MAX_TITLE_CHARS:
                raise ValueError(f"Title must be between 1 and {MAX_TITLE_CHARS} characters")
            self.title = cleaned
        try:
            if settings:
                self.settings = dataclasses.replace(self.settings, **settings)
            if generation:
                self.generation = dataclasses.replace(self.generation, **generation)
        except TypeError as exc:
            raise ValueError(f"Unknown setting: {exc}") from exc
        self._touch(utcnow())

    def deactivate(self) -> None:
        self.is_active = False

    def revert_to(self, message_count: int) -> None:
        """Drop messages appended after ``message_count`` (used when a save fails)."""

        if message_count < 0 or message_count > len(self.messages):
            raise ValueError("message_count out of range")
        del self.messages[message_count:]
        self.stats = compute_stats(self.messages)

    def _touch(self, now: datetime) -> None:
        if now > self.last_activity:
            self.last_activity = now

    def summary(self) -> Dict[str, Any]:
        return {"id": self.conversation_id, "title": self.title, "stats": self.stats.to_dict()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.conversation_id,
            "owner_id": self.owner_id,
            "title": self.title,
            "messages": [message.to_dict() for message in self.messages],
            "generation": dataclasses.asdict(self.generation),
            "settings": dataclasses.asdict(self.settings),
            "stats": self.stats.to_dict(),
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
        }
