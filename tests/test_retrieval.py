"""Tests for the retrieval state machine."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from ammo_search.search.predicate import AllOf
from ammo_search.search.retrieval import (
    Candidate,
    FallbackReason,
    RelationalRetriever,
    RetrievalState,
    RetrievalStateMachine,
    VectorRetriever,
    keyword_relevance,
)

S = RetrievalState


def candidate(name: str, relevance=None) -> Candidate:
    return Candidate(product=SimpleNamespace(name=name), relevance=relevance)


class TestKeywordRelevance:
    """Test keyword share scoring."""

    def test_share_of_keywords(self):
        product = SimpleNamespace(name="Federal HST 9mm", brand="Federal", description="Law enforcement load")
        assert keyword_relevance(product, ["federal", "hst", "tula", "steel"]) == 0.5

    def test_no_keywords(self):
        product = SimpleNamespace(name="x", brand=None, description=None)
        assert keyword_relevance(product, []) is None


class TestRetrievalStateMachine:
    """Test strategy selection and fallback."""

    def setup_method(self):
        self.db = MagicMock()
        self.db.rollback = AsyncMock()

        self.relational = MagicMock(spec=RelationalRetriever)
        self.relational.count = AsyncMock(return_value=2)
        self.relational.fetch = AsyncMock(return_value=[candidate("a", 0.5), candidate("b")])

        self.vector = MagicMock(spec=VectorRetriever)
        self.vector.fetch = AsyncMock(return_value=[candidate("v", 0.9)])

        self.machine = RetrievalStateMachine(self.relational, self.vector)
        self.predicate = AllOf(())

    async def run(self, use_vector=True, query="9mm"):
        return await self.machine.run(
            self.db, query, self.predicate, skip=0, take=40, use_vector=use_vector, keywords=["9mm"]
        )

    @pytest.mark.asyncio
    async def test_vector_success(self):
        outcome = await self.run()

        assert outcome.vector_used
        assert outcome.path == [S.INIT, S.TRY_VECTOR, S.DONE]
        assert outcome.fallback_reason is None
        assert [c.product.name for c in outcome.candidates] == ["v"]
        assert outcome.total == 2
        self.relational.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_vector_error_falls_back(self):
        self.vector.fetch.side_effect = RuntimeError("model unavailable")

        outcome = await self.run()

        assert outcome.strategy == "relational"
        assert outcome.path == [S.INIT, S.TRY_VECTOR, S.TRY_RELATIONAL, S.DONE]
        assert outcome.fallback_reason == FallbackReason.VECTOR_ERROR
        self.db.rollback.assert_awaited_once()
        assert len(outcome.candidates) == 2

    @pytest.mark.asyncio
    async def test_vector_empty_with_candidates_falls_back(self):
        self.vector.fetch.return_value = []

        outcome = await self.run()

        assert outcome.strategy == "relational"
        assert outcome.fallback_reason == FallbackReason.VECTOR_EMPTY_WITH_CANDIDATES
        assert outcome.path == [S.INIT, S.TRY_VECTOR, S.TRY_RELATIONAL, S.DONE]

    @pytest.mark.asyncio
    async def test_vector_empty_without_candidates_is_final(self):
        self.vector.fetch.return_value = []
        self.relational.count.return_value = 0

        outcome = await self.run()

        assert outcome.vector_used
        assert outcome.candidates == []
        assert outcome.total == 0
        self.relational.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_relational_only(self):
        outcome = await self.run(use_vector=False)

        assert outcome.strategy == "relational"
        assert outcome.path == [S.INIT, S.TRY_RELATIONAL, S.DONE]
        self.vector.fetch.assert_not_awaited()
        self.relational.fetch.assert_awaited_once_with(self.db, self.predicate, 0, 40, ["9mm"])

    @pytest.mark.asyncio
    async def test_empty_query_skips_vector(self):
        outcome = await self.run(query="")
        assert outcome.strategy == "relational"
        self.vector.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_vector_retriever(self):
        machine = RetrievalStateMachine(self.relational)
        outcome = await machine.run(self.db, "9mm", self.predicate, 0, 40, use_vector=True)
        assert outcome.strategy == "relational"

    @pytest.mark.asyncio
    async def test_relational_failure_propagates(self):
        self.relational.count.side_effect = RuntimeError("db down")
        with pytest.raises(RuntimeError):
            await self.run(use_vector=False)


class TestVectorRetriever:
    """Test similarity retrieval."""

    @pytest.mark.asyncio
    async def test_similarity_clamped(self):
        embedder = MagicMock()
        embedder.generate_embedding.return_value = [0.1, 0.2]
        store = MagicMock()
        store.search_similar_products = AsyncMock(
            return_value=[(SimpleNamespace(name="a"), 1.2), (SimpleNamespace(name="b"), -0.3)]
        )

        candidates = await VectorRetriever(embedder, store).fetch(MagicMock(), "9mm", AllOf(()), 0, 10)

        assert [c.relevance for c in candidates] == [1.0, 0.0]
        embedder.generate_embedding.assert_called_once_with("9mm")
        assert store.search_similar_products.await_args.kwargs == {"skip": 0, "limit": 10}
