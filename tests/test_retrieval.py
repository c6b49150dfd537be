"""Tests for the in-memory fragment index."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Sequence

import pytest
from langchain_core.embeddings import Embeddings

from ragchat.embeddings.service import EmbeddingConfig, EmbeddingEstimator
from ragchat.errors import DuplicateFragmentError
from ragchat.models import Fragment
from ragchat.retrieval.service import IndexSnapshot, RetrievalConfig, RetrievalEngine, cosine_similarity


class TableEmbeddings(Embeddings):
    """Returns fixed vectors for known query strings."""

    def __init__(self, table: Dict[str, Sequence[float]], dim: int = 3) -> None:
        self.table = table
        self.dim = dim

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        return [self.embed_query(text) for text in texts]

    def embed_query(self, text: str) -> List[float]:
        return list(self.table.get(text, [0.0] * self.dim))


def _table_engine(**config) -> RetrievalEngine:
    embedder = EmbeddingEstimator(
        EmbeddingConfig(dim=3),
        client=TableEmbeddings({"north": (1.0, 0.0, 0.0), "nothing": (0.0, 0.0, 0.0)}),
    )
    return RetrievalEngine(embedder, RetrievalConfig(**config))


def _fragment(document_id: str, ordinal: int, vector: Sequence[float], content: str | None = None) -> Fragment:
    return Fragment(
        document_id=document_id,
        ordinal=ordinal,
        content=content or f"{document_id}-{ordinal}",
        embedding=tuple(vector),
    )


def test_cosine_similarity_edge_cases():
    assert cosine_similarity((1.0, 0.0), (1.0, 0.0)) == pytest.approx(1.0)
    assert cosine_similarity((1.0, 0.0), (-1.0, 0.0)) == pytest.approx(-1.0)
    assert cosine_similarity((0.0, 0.0), (1.0, 0.0)) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity((1.0,), (1.0, 0.0))


def test_search_on_empty_index_returns_nothing():
    async def scenario():
        engine = RetrievalEngine(EmbeddingEstimator(EmbeddingConfig(dim=64)))
        return await engine.search("anything", limit=5, similarity_threshold=0.7)

    assert list(asyncio.run(scenario())) == []


def test_single_fragment_is_found_with_zero_threshold(keyword_estimator):
    async def scenario():
        engine = RetrievalEngine(keyword_estimator)
        await engine.index("d1", [Fragment(document_id="d1", ordinal=0, content="cats are mammals")])
        return await engine.search("what are cats", limit=5, similarity_threshold=0.0)

    results = asyncio.run(scenario())
    assert len(results) == 1
    assert results[0].document_id == "d1"
    assert results[0].content == "cats are mammals"
    assert results[0].similarity > 0.0


def test_results_are_thresholded_ordered_and_stable():
    async def scenario():
        engine = _table_engine()
        await engine.index("a", [_fragment("a", 0, (1.0, 0.0, 0.0))])
        await engine.index("b", [_fragment("b", 0, (1.0, 1.0, 0.0))])
        await engine.index("c", [_fragment("c", 0, (0.0, 1.0, 0.0))])
        await engine.index("d", [_fragment("d", 0, (2.0, 0.0, 0.0))])
        wide = await engine.search("north", limit=10, similarity_threshold=0.5)
        narrow = await engine.search("north", limit=2, similarity_threshold=0.5)
        return wide, narrow

    wide, narrow = asyncio.run(scenario())
    assert [result.document_id for result in wide] == ["a", "d", "b"]
    assert all(result.similarity >= 0.5 for result in wide)
    assert [result.document_id for result in narrow] == ["a", "d"]


def test_zero_norm_vectors_score_zero():
    async def scenario():
        engine = _table_engine()
        await engine.index("z", [_fragment("z", 0, (0.0, 0.0, 0.0))])
        await engine.index("a", [_fragment("a", 0, (1.0, 0.0, 0.0))])
        zero_fragment = await engine.search("north", limit=5, similarity_threshold=0.0)
        zero_query = await engine.search("nothing", limit=5, similarity_threshold=0.0)
        return zero_fragment, zero_query

    zero_fragment, zero_query = asyncio.run(scenario())
    scores = {result.document_id: result.similarity for result in zero_fragment}
    assert scores == {"a": pytest.approx(1.0), "z": 0.0}
    assert all(result.similarity == 0.0 for result in zero_query)


def test_index_remove_round_trip_and_duplicates():
    async def scenario():
        engine = _table_engine()
        fragments = [_fragment("doc", 0, (1.0, 0.0, 0.0)), _fragment("doc", 1, (0.5, 0.5, 0.0))]
        assert await engine.index("doc", fragments) == 2
        with pytest.raises(DuplicateFragmentError):
            await engine.index("doc", fragments[:1])
        assert len(engine) == 2
        assert await engine.remove("doc") == 2
        after_remove = await engine.search("north", limit=5, similarity_threshold=0.0)
        assert await engine.index("doc", fragments) == 2
        assert await engine.remove("missing") == 0
        return after_remove, len(engine)

    after_remove, size = asyncio.run(scenario())
    assert list(after_remove) == []
    assert size == 2


def test_index_rejects_foreign_fragments_and_wrong_dimension():
    async def scenario():
        engine = _table_engine()
        with pytest.raises(ValueError):
            await engine.index("doc", [_fragment("other", 0, (1.0, 0.0, 0.0))])
        with pytest.raises(ValueError):
            await engine.index("doc", [_fragment("doc", 0, (1.0, 0.0))])
        return len(engine)

    assert asyncio.run(scenario()) == 0


def test_search_filters_by_document_and_handles_non_positive_limit():
    async def scenario():
        engine = _table_engine()
        await engine.index("a", [_fragment("a", 0, (1.0, 0.0, 0.0))])
        await engine.index("b", [_fragment("b", 0, (1.0, 0.1, 0.0))])
        filtered = await engine.search("north", limit=5, similarity_threshold=0.0, document_ids=["b"])
        empty = await engine.search("north", limit=0, similarity_threshold=0.0)
        return filtered, empty

    filtered, empty = asyncio.run(scenario())
    assert [result.document_id for result in filtered] == ["b"]
    assert list(empty) == []


def test_search_uses_configured_defaults():
    async def scenario():
        engine = _table_engine(limit=1, similarity_threshold=0.9)
        await engine.index("a", [_fragment("a", 0, (1.0, 0.0, 0.0))])
        await engine.index("b", [_fragment("b", 0, (1.0, 0.0, 0.0))])
        await engine.index("c", [_fragment("c", 0, (0.0, 1.0, 0.0))])
        return await engine.search("north")

    results = asyncio.run(scenario())
    assert [result.document_id for result in results] == ["a"]


def test_stats_fragments_and_similar_documents():
    async def scenario():
        engine = _table_engine()
        await engine.index(
            "a",
            [_fragment("a", 0, (1.0, 0.0, 0.0)), _fragment("a", 1, (0.0, 0.0, 1.0))],
        )
        await engine.index("b", [_fragment("b", 0, (1.0, 0.05, 0.0)), _fragment("b", 1, (0.9, 0.1, 0.0))])
        await engine.index("c", [_fragment("c", 0, (0.0, 1.0, 0.0))])
        similar = await engine.find_similar_documents("a", limit=5, similarity_threshold=0.0)
        return engine.stats(), engine.document_fragments("a"), similar

    # Fragment contents are not in the lookup table, so the lookup query embeds to zeros
    stats, fragments, similar = asyncio.run(scenario())
    assert stats.total_fragments == 5
    assert stats.total_documents == 3
    assert dict(stats.fragments_per_document) == {"a": 2, "b": 2, "c": 1}
    assert [fragment.ordinal for fragment in fragments] == [0, 1]
    assert all(result.document_id != "a" for result in similar)
    assert len({result.document_id for result in similar}) == len(similar)


def test_find_similar_documents_ranks_by_best_match(keyword_estimator):
    async def scenario():
        engine = RetrievalEngine(keyword_estimator)
        await engine.index("cats", [Fragment(document_id="cats", ordinal=0, content="cats purr and cats sleep")])
        await engine.index("more-cats", [Fragment(document_id="more-cats", ordinal=0, content="cats sleep and purr")])
        await engine.index("cars", [Fragment(document_id="cars", ordinal=0, content="engines need fuel")])
        return await engine.find_similar_documents("cats", similarity_threshold=0.5)

    similar = asyncio.run(scenario())
    assert [result.document_id for result in similar] == ["more-cats"]


def test_search_many_reports_each_query(keyword_estimator):
    async def scenario():
        engine = RetrievalEngine(keyword_estimator)
        await engine.index("d1", [Fragment(document_id="d1", ordinal=0, content="cats are mammals")])
        return await engine.search_many(["cats", "fuel"], similarity_threshold=0.1)

    outcomes = asyncio.run(scenario())
    assert [outcome.query for outcome in outcomes] == ["cats", "fuel"]
    assert all(outcome.success for outcome in outcomes)
    assert [result.document_id for result in outcomes[0].results] == ["d1"]
    assert list(outcomes[1].results) == []


def test_clear_empties_the_index():
    async def scenario():
        engine = _table_engine()
        await engine.index("a", [_fragment("a", 0, (1.0, 0.0, 0.0))])
        await engine.clear()
        return len(engine), engine.stats().total_documents

    assert asyncio.run(scenario()) == (0, 0)


def test_export_restore_replaces_index_contents():
    async def scenario():
        source = _table_engine()
        await source.index("a", [_fragment("a", 0, (1.0, 0.0, 0.0)), _fragment("a", 1, (0.0, 1.0, 0.0))])
        await source.index("b", [_fragment("b", 0, (1.0, 0.0, 0.0))])
        snapshot = source.export()

        target = _table_engine()
        await target.index("stale", [_fragment("stale", 0, (0.0, 0.0, 1.0))])
        restored = await target.restore(snapshot)
        results = await target.search("north", limit=5, similarity_threshold=0.5)
        with pytest.raises(ValueError):
            await target.restore(IndexSnapshot(dimension=4))
        with pytest.raises(ValueError):
            await target.restore(IndexSnapshot(dimension=3, fragments=(Fragment(document_id="x", ordinal=0, content="x"),)))
        with pytest.raises(DuplicateFragmentError):
            await target.restore(IndexSnapshot(dimension=3, fragments=snapshot.fragments[:1] * 2))
        return snapshot, restored, results, target.stats()

    snapshot, restored, results, stats = asyncio.run(scenario())
    assert snapshot.dimension == 3
    assert [fragment.fragment_id for fragment in snapshot.fragments] == ["a#0", "a#1", "b#0"]
    assert snapshot.fragments[1].embedding == (0.0, 1.0, 0.0)
    assert restored == 3
    assert [result.document_id for result in results] == ["a", "b"]
    assert dict(stats.fragments_per_document) == {"a": 2, "b": 1}
