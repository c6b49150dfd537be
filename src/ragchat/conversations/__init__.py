"""Conversation aggregate and its collaborators."""

from .models import (
    DEFAULT_SYSTEM_PROMPT,
    DEFAULT_TITLE,
    Conversation,
    ConversationSettings,
    ConversationStats,
    GenerationSettings,
    Message,
    MessageMetadata,
    Role,
    compute_stats,
)
from .repository import (
    ConversationRepository,
    InMemoryConversationRepository,
    InMemoryQuotaLedger,
    QuotaLedger,
)

__all__ = [
    "DEFAULT_SYSTEM_PROMPT",
    "DEFAULT_TITLE",
    "Conversation",
    "ConversationRepository",
    "ConversationSettings",
    "ConversationStats",
    "GenerationSettings",
    "InMemoryConversationRepository",
    "InMemoryQuotaLedger",
    "Message",
    "MessageMetadata",
    "QuotaLedger",
    "Role",
    "compute_stats",
]
