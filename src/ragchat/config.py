"""Runtime configuration for the ragchat services."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_PLACEHOLDER_PREFIXES = ("demo-", "your-", "sk-replace", "changeme")


def credential_configured(value: str | None) -> bool:
    """Return True when ``value`` looks like a real credential rather than a placeholder."""

    if not value or not value.strip():
        return False
    lowered = value.strip().lower()
    return not lowered.startswith(_PLACEHOLDER_PREFIXES)


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="ragchat_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"

    # Provider credentials; the conventional unprefixed variables are honoured too
    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("ragchat_openai_api_key", "openai_api_key"),
    )
    anthropic_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("ragchat_anthropic_api_key", "anthropic_api_key"),
    )
    openai_chat_model: str = "gpt-4o-mini"
    anthropic_chat_model: str = "claude-3-5-haiku-latest"

    # Generation gateway
    provider_order: tuple[str, ...] = ("anthropic", "openai")
    max_fallbacks: int = 1
    provider_timeout_seconds: float = 30.0
    simulation_chunk_delay: float = 0.05
    simulation_chunk_jitter: float = 0.1

    # Embeddings
    embedding_model: str = "text-embedding-3-small"
    embedding_dim: int = 1536
    use_local_embeddings: bool = False
    local_embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"

    # Retrieval
    retrieval_limit: int = 5
    retrieval_threshold: float = 0.7

    # Fragmenting (ingestion output contract)
    chunk_size: int = 1000
    chunk_overlap: int = 200

    # Conversation turns
    history_limit: int = 10
    max_message_chars: int = 4000
    quota_reservation: int = 100
    default_token_limit: int = 10000
    room_queue_size: int = 1000

    # Study aids
    summary_token_reservation: int = 50
    flashcard_token_reservation: int = 75
    study_max_source_chars: int = 10000

    # Security
    api_key: str | None = None  # if set, required in X-API-Key header

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def openai_configured(self) -> bool:
        return credential_configured(self.openai_api_key)

    @property
    def anthropic_configured(self) -> bool:
        return credential_configured(self.anthropic_api_key)


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
