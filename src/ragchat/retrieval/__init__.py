"""Retrieval components."""

from .service import (
    BatchSearchResult,
    IndexSnapshot,
    IndexStats,
    RetrievalConfig,
    RetrievalEngine,
    VectorIndex,
    cosine_similarity,
)

__all__ = [
    "BatchSearchResult",
    "IndexSnapshot",
    "IndexStats",
    "RetrievalConfig",
    "RetrievalEngine",
    "VectorIndex",
    "cosine_similarity",
]
