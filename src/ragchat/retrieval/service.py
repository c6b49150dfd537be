"""In-memory fragment index with exact cosine-similarity search."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Protocol, Sequence, Tuple

import numpy as np

from ragchat.embeddings.service import EmbeddingEstimator
from ragchat.errors import DuplicateFragmentError
from ragchat.metrics.observability import PipelineMetrics, get_logger
from ragchat.models import Fragment, RetrievalResult


@dataclass(frozen=True)
class RetrievalConfig:
    """Default search parameters."""

    limit: int = 5
    similarity_threshold: float = 0.7


@dataclass(frozen=True)
class IndexStats:
    total_fragments: int
    total_documents: int
    fragments_per_document: Mapping[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class BatchSearchResult:
    query: str
    results: Sequence[RetrievalResult]
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class IndexSnapshot:
    """Portable copy of the index; every fragment carries its embedding."""

    dimension: int
    fragments: Tuple[Fragment, ...] = ()


@dataclass(frozen=True)
class _IndexedFragment:
    vector: np.ndarray
    fragment: Fragment


class VectorIndex(Protocol):
    """Index/remove/search contract shared by every index implementation."""

    async def index(self, document_id: str, fragments: Sequence[Fragment]) -> int:
        """Embed and store fragments for a document, returning the count stored."""

    async def remove(self, document_id: str) -> int:
        """Drop every fragment of a document, returning the count removed."""

    async def search(
        self,
        query: str,
        *,
        limit: int | None = None,
        similarity_threshold: float | None = None,
        document_ids: Sequence[str] | None = None,
    ) -> Sequence[RetrievalResult]:
        """Return fragments ordered by descending similarity."""


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """``dot(a, b) / (|a| * |b|)``; a zero-norm operand yields 0.0."""

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError("Vectors must have the same length")
    norm = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


class RetrievalEngine:
    """Exact linear-scan index over document fragments.

    Entries are kept in insertion order so equal similarities come back in the
    order they were indexed. Mutations are serialized by a lock; searches work
    on a snapshot and never wait on each other.
    """

    def __init__(self, embedder: EmbeddingEstimator, config: RetrievalConfig | None = None) -> None:
        self._embedder = embedder
        self._config = config or RetrievalConfig()
        self._entries: Dict[str, _IndexedFragment] = {}
        self._lock = asyncio.Lock()
        self._logger = get_logger("retrieval")

    @property
    def dim(self) -> int:
        return self._embedder.dim

    def __len__(self) -> int:
        return len(self._entries)

    async def index(self, document_id: str, fragments: Sequence[Fragment]) -> int:
        if not fragments:
            return 0
        for fragment in fragments:
            if fragment.document_id != document_id:
                raise ValueError(
                    f"Fragment {fragment.fragment_id} does not belong to document {document_id}",
                )
        missing = [fragment for fragment in fragments if fragment.embedding is None]
        computed = await self._embedder.embed_many([fragment.content for fragment in missing])
        vectors_by_id = {fragment.fragment_id: vector for fragment, vector in zip(missing, computed)}

        prepared: List[tuple[str, _IndexedFragment]] = []
        for fragment in fragments:
            vector = fragment.embedding if fragment.embedding is not None else vectors_by_id[fragment.fragment_id]
            if len(vector) != self.dim:
                raise ValueError(
                    f"Fragment {fragment.fragment_id} has dimension {len(vector)}, index expects {self.dim}",
                )
            array = np.asarray(vector, dtype=np.float64)
            array.setflags(write=False)
            prepared.append((fragment.fragment_id, _IndexedFragment(vector=array, fragment=fragment)))

        async with self._lock:
            keys = [key for key, _ in prepared]
            duplicates = [key for key in keys if key in self._entries]
            if duplicates or len(set(keys)) != len(keys):
                raise DuplicateFragmentError(
                    f"Fragments already indexed for document {document_id}; remove it before re-indexing",
                )
            self._entries.update(prepared)
            PipelineMetrics.indexed_fragments.set(len(self._entries))
        self._logger.info("index.add", document_id=document_id, fragment_count=len(prepared))
        return len(prepared)

    async def remove(self, document_id: str) -> int:
        async with self._lock:
            keys = [key for key, entry in self._entries.items() if entry.fragment.document_id == document_id]
            for key in keys:
                del self._entries[key]
            PipelineMetrics.indexed_fragments.set(len(self._entries))
        self._logger.info("index.remove", document_id=document_id, fragment_count=len(keys))
        return len(keys)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            PipelineMetrics.indexed_fragments.set(0)
        self._logger.info("index.clear")

    def export(self) -> IndexSnapshot:
        fragments = tuple(
            replace(entry.fragment, embedding=tuple(float(value) for value in entry.vector))
            for entry in list(self._entries.values())
        )
        return IndexSnapshot(dimension=self.dim, fragments=fragments)

    async def restore(self, snapshot: IndexSnapshot) -> int:
        """Replace the whole index with ``snapshot``, keeping its fragment order."""

        if snapshot.dimension != self.dim:
            raise ValueError(f"Snapshot has dimension {snapshot.dimension}, index expects {self.dim}")
        prepared: Dict[str, _IndexedFragment] = {}
        for fragment in snapshot.fragments:
            if fragment.embedding is None or len(fragment.embedding) != self.dim:
                raise ValueError(f"Fragment {fragment.fragment_id} is missing a {self.dim}-dimensional embedding")
            if fragment.fragment_id in prepared:
                raise DuplicateFragmentError(f"Snapshot repeats fragment {fragment.fragment_id}")
            array = np.asarray(fragment.embedding, dtype=np.float64)
            array.setflags(write=False)
            prepared[fragment.fragment_id] = _IndexedFragment(vector=array, fragment=fragment)

        async with self._lock:
            self._entries = prepared
            PipelineMetrics.indexed_fragments.set(len(prepared))
        self._logger.info("index.restore", fragment_count=len(prepared))
        return len(prepared)

    async def search(
        self,
        query: str,
        *,
        limit: int | None = None,
        similarity_threshold: float | None = None,
        document_ids: Sequence[str] | None = None,
    ) -> Sequence[RetrievalResult]:
        effective_limit = self._config.limit if limit is None else limit
        threshold = self._config.similarity_threshold if similarity_threshold is None else similarity_threshold
        if effective_limit <= 0:
            return []
        start = time.perf_counter()
        allowed = set(document_ids) if document_ids is not None else None
        snapshot = [
            entry
            for entry in list(self._entries.values())
            if allowed is None or entry.fragment.document_id in allowed
        ]
        if not snapshot:
            return []

        query_vector = np.asarray(await self._embedder.embed(query), dtype=np.float64)
        matrix = np.vstack([entry.vector for entry in snapshot])
        norms = np.linalg.norm(matrix, axis=1) * float(np.linalg.norm(query_vector))
        dots = matrix @ query_vector
        with np.errstate(divide="ignore", invalid="ignore"):
            similarities = np.where(norms == 0.0, 0.0, dots / np.where(norms == 0.0, 1.0, norms))

        scored = [
            RetrievalResult(
                fragment_id=entry.fragment.fragment_id,
                document_id=entry.fragment.document_id,
                content=entry.fragment.content,
                similarity=float(similarity),
                metadata=self._result_metadata(entry.fragment),
            )
            for entry, similarity in zip(snapshot, similarities)
            if float(similarity) >= threshold
        ]
        # sorted() is stable, so ties keep insertion order
        results = sorted(scored, key=lambda result: result.similarity, reverse=True)[:effective_limit]

        duration = time.perf_counter() - start
        PipelineMetrics.observe_retrieval(duration, len(results), (result.similarity for result in results))
        self._logger.info(
            "retrieval.complete",
            result_count=len(results),
            scanned=len(snapshot),
            duration_seconds=duration,
            threshold=threshold,
        )
        return results

    async def search_many(self, queries: Sequence[str], **options) -> Sequence[BatchSearchResult]:
        outcomes: List[BatchSearchResult] = []
        for query in queries:
            try:
                results = await self.search(query, **options)
            except Exception as exc:
                self._logger.warning("retrieval.batch_query_failed", query=query, detail=str(exc))
                outcomes.append(BatchSearchResult(query=query, results=[], error=str(exc)))
                continue
            outcomes.append(BatchSearchResult(query=query, results=results))
        return outcomes

    def document_fragments(self, document_id: str) -> Sequence[Fragment]:
        fragments = [entry.fragment for entry in self._entries.values() if entry.fragment.document_id == document_id]
        return sorted(fragments, key=lambda fragment: fragment.ordinal)

    async def find_similar_documents(
        self,
        document_id: str,
        *,
        limit: int = 5,
        similarity_threshold: float = 0.8,
    ) -> Sequence[RetrievalResult]:
        """Rank other documents by their best fragment match against this document's first fragment."""

        fragments = self.document_fragments(document_id)
        if not fragments:
            return []
        candidates = await self.search(
            fragments[0].content,
            limit=limit * 3,
            similarity_threshold=similarity_threshold,
        )
        best: Dict[str, RetrievalResult] = {}
        for result in candidates:
            if result.document_id == document_id:
                continue
            current = best.get(result.document_id)
            if current is None or result.similarity > current.similarity:
                best[result.document_id] = result
        return sorted(best.values(), key=lambda result: result.similarity, reverse=True)[:limit]

    def stats(self) -> IndexStats:
        counts: Dict[str, int] = {}
        for entry in self._entries.values():
            doc_id = entry.fragment.document_id
            counts[doc_id] = counts.get(doc_id, 0) + 1
        return IndexStats(
            total_fragments=len(self._entries),
            total_documents=len(counts),
            fragments_per_document=counts,
        )

    @staticmethod
    def _result_metadata(fragment: Fragment) -> Mapping[str, object]:
        metadata: Dict[str, object] = dict(fragment.metadata)
        metadata.update(
            {
                "document_id": fragment.document_id,
                "ordinal": fragment.ordinal,
                "start": fragment.start,
                "end": fragment.end,
            },
        )
        return metadata
