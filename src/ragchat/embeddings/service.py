"""Embedding backends for ragchat."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Literal, Protocol, Sequence, Tuple

from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings as LangChainEmbeddings
from langchain_openai import OpenAIEmbeddings

LOGGER = logging.getLogger(__name__)

_LCG_MULTIPLIER = 9301
_LCG_INCREMENT = 49297
_LCG_MODULUS = 233280


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding backends."""

    model: str = "text-embedding-3-small"
    dim: int = 1536
    backend: Literal["hash", "openai", "huggingface"] = "hash"
    api_key: str | None = None
    device: str | None = None


class EmbeddingBackend(Protocol):
    """Protocol describing embedding behaviour."""

    async def embed(self, text: str) -> Tuple[float, ...]:
        """Return the embedding vector for ``text``."""

    async def embed_many(self, texts: Sequence[str]) -> Sequence[Tuple[float, ...]]:
        """Return one embedding vector per input text."""


def rolling_hash(text: str) -> int:
    """Signed 32-bit ``h * 31 + c`` string hash."""

    value = 0
    for char in text:
        value = ((value << 5) - value + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return value


class HashEmbeddingBackend:
    """Deterministic pseudo-embedding used when no model backend is reachable.

    A rolling hash of the text seeds a linear-congruential generator that fills
    ``dim`` values in [-0.5, 0.5). Equal texts always map to bit-identical
    vectors, which keeps offline indexing and searching self-consistent.
    """

    def __init__(self, dim: int = 1536) -> None:
        if dim <= 0:
            raise ValueError("Embedding dimension must be positive")
        self._dim = dim

    @property
    def dim(self) -> int:
        return self._dim

    def vector(self, text: str) -> Tuple[float, ...]:
        state = rolling_hash(text)
        values: List[float] = []
        for _ in range(self._dim):
            state = (state * _LCG_MULTIPLIER + _LCG_INCREMENT) % _LCG_MODULUS
            values.append(state / _LCG_MODULUS - 0.5)
        return tuple(values)

    async def embed(self, text: str) -> Tuple[float, ...]:
        return self.vector(text)

    async def embed_many(self, texts: Sequence[str]) -> Sequence[Tuple[float, ...]]:
        return [self.vector(text) for text in texts]


class EmbeddingEstimator:
    """Embeds text through a model backend, degrading silently to hash vectors.

    Callers never see an error from :meth:`embed`: a failing or misconfigured
    backend is logged and the deterministic fallback vector is returned instead.
    """

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        *,
        client: LangChainEmbeddings | None = None,
    ) -> None:
        self._config = config or EmbeddingConfig()
        self._fallback = HashEmbeddingBackend(self._config.dim)
        self._client = client if client is not None else self._build_client()
        if self._client is None:
            LOGGER.info("EmbeddingEstimator running in hash-only mode.")

    @property
    def dim(self) -> int:
        return self._config.dim

    @property
    def mode(self) -> str:
        return "hash" if self._client is None else "model"

    def _build_client(self) -> LangChainEmbeddings | None:
        backend = self._config.backend
        if backend == "hash":
            return None
        try:
            if backend == "openai":
                if not self._config.api_key:
                    return None
                client: LangChainEmbeddings = OpenAIEmbeddings(
                    model=self._config.model,
                    api_key=self._config.api_key,
                )
            else:
                model_kwargs = {"device": self._config.device} if self._config.device else {}
                client = HuggingFaceEmbeddings(model_name=self._config.model, model_kwargs=model_kwargs)
            LOGGER.info("Loaded %s embedding backend %s", backend, self._config.model)
            return client
        except Exception as exc:  # pragma: no cover - model download or client setup failure
            LOGGER.warning("Falling back to hash embeddings: %s", exc)
            return None

    async def embed(self, text: str) -> Tuple[float, ...]:
        if self._client is None:
            return self._fallback.vector(text)
        try:
            vector = await self._client.aembed_query(text)
        except Exception as exc:
            LOGGER.warning("Embedding backend failed, using hash vector: %s", exc)
            return self._fallback.vector(text)
        return self._checked(vector, text)

    async def embed_many(self, texts: Sequence[str]) -> Sequence[Tuple[float, ...]]:
        if not texts:
            return []
        if self._client is None:
            return [self._fallback.vector(text) for text in texts]
        try:
            vectors = await self._client.aembed_documents(list(texts))
        except Exception as exc:
            LOGGER.warning("Batch embedding failed, using hash vectors: %s", exc)
            return [self._fallback.vector(text) for text in texts]
        if len(vectors) != len(texts):
            LOGGER.error("Embedding backend returned %d vectors for %d texts", len(vectors), len(texts))
            return [self._fallback.vector(text) for text in texts]
        return [self._checked(vector, text) for vector, text in zip(vectors, texts)]

    def _checked(self, vector: Sequence[float], text: str) -> Tuple[float, ...]:
        if len(vector) != self._config.dim:
            LOGGER.warning(
                "Embedding dim mismatch: configured=%d, actual=%d",
                self._config.dim,
                len(vector),
            )
            return self._fallback.vector(text)
        return tuple(float(value) for value in vector)
