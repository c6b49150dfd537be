"""Embedding services."""

from .service import EmbeddingBackend, EmbeddingConfig, EmbeddingEstimator, HashEmbeddingBackend, rolling_hash

__all__ = [
    "EmbeddingBackend",
    "EmbeddingConfig",
    "EmbeddingEstimator",
    "HashEmbeddingBackend",
    "rolling_hash",
]
