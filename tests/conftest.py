from __future__ import annotations

import re
from typing import List

import pytest
from langchain_core.embeddings import Embeddings

from ragchat.embeddings.service import EmbeddingConfig, EmbeddingEstimator

KEYWORD_DIM = 32


class KeywordEmbeddings(Embeddings):
    """Bag-of-words counts folded into a small non-negative vector."""

    def __init__(self, dim: int = KEYWORD_DIM) -> None:
        self.dim = dim

    def _vector(self, text: str) -> List[float]:
        vector = [0.0] * self.dim
        for word in re.findall(r"[a-z]+", text.lower()):
            vector[sum(ord(char) for char in word) % self.dim] += 1.0
        return vector

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        return [self._vector(text) for text in texts]

    def embed_query(self, text: str) -> List[float]:
        return self._vector(text)


@pytest.fixture
def keyword_estimator() -> EmbeddingEstimator:
    return EmbeddingEstimator(EmbeddingConfig(dim=KEYWORD_DIM), client=KeywordEmbeddings())
