"""Domain exceptions raised across the ragchat pipeline."""

from __future__ import annotations


class RagChatError(RuntimeError):
    """Base class for errors that cross a component boundary."""


class InvalidMessageError(RagChatError, ValueError):
    """Raised when an utterance is empty or too long."""


class QuotaExceededError(RagChatError):
    """Raised before generation when the user has no token budget left."""

    def __init__(self, used: int, limit: int) -> None:
        super().__init__(f"Token limit exceeded ({used}/{limit} tokens used)")
        self.used = used
        self.limit = limit


class ConversationNotFoundError(RagChatError, LookupError):
    """Raised when a conversation is missing, inactive or owned by someone else."""


class PersistenceError(RagChatError):
    """Raised when the persistence collaborator fails to save."""


class DuplicateFragmentError(RagChatError, ValueError):
    """Raised when indexing a fragment key that is already present."""


class TurnFailedError(RagChatError):
    """Raised when a conversation turn ends in the failed state."""

    def __init__(self, conversation_id: str, reason: str) -> None:
        super().__init__(reason)
        self.conversation_id = conversation_id
        self.reason = reason


class DocumentNotFoundError(RagChatError, LookupError):
    """Raised when a document has no fragments in the index."""
