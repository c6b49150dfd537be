"""Persistence and quota collaborators for conversations."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Dict, Protocol, Sequence, Tuple
from uuid import uuid4

from ragchat.conversations.models import (
    DEFAULT_TITLE,
    Conversation,
    ConversationSettings,
    GenerationSettings,
)
from ragchat.errors import ConversationNotFoundError, PersistenceError
from ragchat.metrics.observability import get_logger


class ConversationRepository(Protocol):
    """Owner-scoped conversation storage; ``save`` is atomic per conversation."""

    async def create(
        self,
        owner_id: str,
        *,
        title: str | None = None,
        generation: GenerationSettings | None = None,
        settings: ConversationSettings | None = None,
    ) -> Conversation:
        """Create and persist an empty conversation."""

    async def load(self, conversation_id: str, owner_id: str) -> Conversation:
        """Return the owner's active conversation or raise ConversationNotFoundError."""

    async def save(self, conversation: Conversation) -> None:
        """Persist the full aggregate."""

    async def list_for_owner(self, owner_id: str) -> Sequence[Conversation]:
        """Return the owner's active conversations, most recent activity first."""


class InMemoryConversationRepository:
    """Dictionary-backed repository storing deep copies, so callers never share state with it."""

    def __init__(self) -> None:
        self._records: Dict[str, Conversation] = {}
        self._logger = get_logger("conversations")

    async def create(
        self,
        owner_id: str,
        *,
        title: str | None = None,
        generation: GenerationSettings | None = None,
        settings: ConversationSettings | None = None,
    ) -> Conversation:
        conversation = Conversation(
            conversation_id=uuid4().hex,
            owner_id=owner_id,
            title=(title or "").strip() or DEFAULT_TITLE,
            generation=generation or GenerationSettings(),
            settings=settings or ConversationSettings(),
        )
        await self.save(conversation)
        self._logger.info("conversation.created", conversation_id=conversation.conversation_id, owner_id=owner_id)
        return conversation

    async def load(self, conversation_id: str, owner_id: str) -> Conversation:
        record = self._records.get(conversation_id)
        if record is None or record.owner_id != owner_id or not record.is_active:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return copy.deepcopy(record)

    async def save(self, conversation: Conversation) -> None:
        existing = self._records.get(conversation.conversation_id)
        if existing is not None and existing.owner_id != conversation.owner_id:
            raise PersistenceError(f"Conversation {conversation.conversation_id} belongs to another owner")
        self._records[conversation.conversation_id] = copy.deepcopy(conversation)

    async def list_for_owner(self, owner_id: str) -> Sequence[Conversation]:
        owned = [
            copy.deepcopy(record)
            for record in self._records.values()
            if record.owner_id == owner_id and record.is_active
        ]
        return sorted(owned, key=lambda record: record.last_activity, reverse=True)

    def get_any(self, conversation_id: str) -> Conversation | None:
        """Return a stored record regardless of owner or active flag (audit access)."""

        record = self._records.get(conversation_id)
        return copy.deepcopy(record) if record is not None else None


class QuotaLedger(Protocol):
    """Per-user token budget supplied by the auth/session collaborator."""

    def has_quota(self, user_id: str, tokens: int) -> bool:
        """Return True when ``tokens`` more can be spent."""

    async def consume(self, user_id: str, tokens: int) -> None:
        """Record ``tokens`` as spent."""

    def usage(self, user_id: str) -> Tuple[int, int]:
        """Return ``(used, limit)``."""


@dataclass
class TokenAccount:
    used: int = 0
    limit: int = 10000


class InMemoryQuotaLedger:
    def __init__(self, default_limit: int = 10000) -> None:
        self._default_limit = default_limit
        self._accounts: Dict[str, TokenAccount] = {}

    def _account(self, user_id: str) -> TokenAccount:
        account = self._accounts.get(user_id)
        if account is None:
            account = TokenAccount(limit=self._default_limit)
            self._accounts[user_id] = account
        return account

    def set_limit(self, user_id: str, limit: int) -> None:
        self._account(user_id).limit = limit

    def reset(self, user_id: str) -> None:
        self._account(user_id).used = 0

    def has_quota(self, user_id: str, tokens: int) -> bool:
        account = self._account(user_id)
        return account.used + tokens <= account.limit

    async def consume(self, user_id: str, tokens: int) -> None:
        if tokens < 0:
            raise ValueError("tokens cannot be negative")
        self._account(user_id).used += tokens

    def usage(self, user_id: str) -> Tuple[int, int]:
        account = self._account(user_id)
        return account.used, account.limit
