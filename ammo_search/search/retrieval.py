"""
Candidate retrieval with vector-to-relational fallback.

The two strategies are tried strictly in sequence by an explicit state
machine:

    INIT -> TRY_VECTOR -> DONE
                       -> TRY_RELATIONAL (vector error)
                       -> TRY_RELATIONAL (vector empty, relational count > 0)
    INIT -> TRY_RELATIONAL -> DONE

No state survives a request.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from ammo_search import metrics
from ammo_search.db.models import Product
from ammo_search.search.predicate import Predicate, to_sql
from ammo_search.search.query_builder import SearchQueryBuilder

logger = logging.getLogger(__name__)


class RetrievalState(str, Enum):
    INIT = "init"
    TRY_VECTOR = "try_vector"
    TRY_RELATIONAL = "try_relational"
    DONE = "done"


class FallbackReason(str, Enum):
    VECTOR_ERROR = "vector_error"
    VECTOR_EMPTY_WITH_CANDIDATES = "vector_empty_with_candidates"


@dataclass
class Candidate:
    """A retrieved product and its retrieval relevance (0-1), if known."""

    product: Product
    relevance: Optional[float] = None


@dataclass
class RetrievalOutcome:
    candidates: List[Candidate]
    total: int
    strategy: str
    path: List[RetrievalState] = field(default_factory=list)
    fallback_reason: Optional[FallbackReason] = None

    @property
    def vector_used(self) -> bool:
        return self.strategy == "vector"


class Embedder(Protocol):
    def generate_embedding(self, text: str) -> Any:
        ...


def keyword_relevance(product: Product, keywords: List[str]) -> Optional[float]:
    """Share of query keywords found in the product's name, brand or description."""
    if not keywords:
        return None
    haystack = " ".join(
        part for part in (product.name, product.brand, product.description) if part
    ).lower()
    hits = sum(1 for keyword in keywords if keyword.lower() in haystack)
    return hits / len(keywords)


class RelationalRetriever:
    """Predicate-filtered retrieval, newest products first."""

    def __init__(self, query_builder: Optional[SearchQueryBuilder] = None):
        self.query_builder = query_builder or SearchQueryBuilder()

    async def count(self, db: AsyncSession, predicate: Predicate) -> int:
        result = await db.execute(self.query_builder.build_count_query(predicate))
        return int(result.scalar() or 0)

    async def fetch(
        self,
        db: AsyncSession,
        predicate: Predicate,
        skip: int,
        take: int,
        keywords: List[str],
    ) -> List[Candidate]:
        result = await db.execute(self.query_builder.build_relational_query(predicate, skip, take))
        return [
            Candidate(product=product, relevance=keyword_relevance(product, keywords))
            for product in result.scalars().all()
        ]


class VectorRetriever:
    """Embedding similarity retrieval restricted by the same predicate."""

    def __init__(self, embedder: Embedder, store):
        self.embedder = embedder
        self.store = store

    async def fetch(
        self, db: AsyncSession, query_text: str, predicate: Predicate, skip: int, take: int
    ) -> List[Candidate]:
        # Model inference is CPU-bound; keep it off the event loop
        embedding = await asyncio.to_thread(self.embedder.generate_embedding, query_text)
        rows = await self.store.search_similar_products(
            db, embedding, to_sql(predicate), skip=skip, limit=take
        )
        return [
            Candidate(product=product, relevance=max(0.0, min(1.0, similarity)))
            for product, similarity in rows
        ]


class RetrievalStateMachine:
    """Runs the retrieval strategies for one request."""

    def __init__(self, relational: RelationalRetriever, vector: Optional[VectorRetriever] = None):
        self.relational = relational
        self.vector = vector

    async def run(
        self,
        db: AsyncSession,
        query_text: str,
        predicate: Predicate,
        skip: int,
        take: int,
        use_vector: bool,
        keywords: Optional[List[str]] = None,
    ) -> RetrievalOutcome:
        keywords = keywords or []
        state = RetrievalState.INIT
        path: List[RetrievalState] = [state]
        fallback: Optional[FallbackReason] = None
        outcome: Optional[RetrievalOutcome] = None

        while state != RetrievalState.DONE:
            if state == RetrievalState.INIT:
                can_vector = use_vector and self.vector is not None and bool(query_text)
                state = RetrievalState.TRY_VECTOR if can_vector else RetrievalState.TRY_RELATIONAL

            elif state == RetrievalState.TRY_VECTOR:
                state, fallback, outcome = await self._try_vector(db, query_text, predicate, skip, take)

            elif state == RetrievalState.TRY_RELATIONAL:
                total = await self.relational.count(db, predicate)
                candidates = await self.relational.fetch(db, predicate, skip, take, keywords)
                metrics.search_retrieval_total.labels(strategy="relational", outcome="success").inc()
                outcome = RetrievalOutcome(candidates=candidates, total=total, strategy="relational")
                state = RetrievalState.DONE

            path.append(state)

        outcome.path = path
        outcome.fallback_reason = fallback
        return outcome

    async def _try_vector(self, db, query_text, predicate, skip, take):
        try:
            candidates = await self.vector.fetch(db, query_text, predicate, skip, take)
        except Exception as e:
            logger.warning(f"Vector retrieval failed, falling back to relational: {e}")
            metrics.search_retrieval_total.labels(strategy="vector", outcome="error").inc()
            # A failed statement aborts the transaction; reset before retrying
            await db.rollback()
            return RetrievalState.TRY_RELATIONAL, FallbackReason.VECTOR_ERROR, None

        total = await self.relational.count(db, predicate)
        if not candidates and total > 0:
            logger.info(
                f"Vector retrieval empty but {total} products match; falling back to relational"
            )
            metrics.search_retrieval_total.labels(strategy="vector", outcome="empty").inc()
            return RetrievalState.TRY_RELATIONAL, FallbackReason.VECTOR_EMPTY_WITH_CANDIDATES, None

        metrics.search_retrieval_total.labels(strategy="vector", outcome="success").inc()
        return (
            RetrievalState.DONE,
            None,
            RetrievalOutcome(candidates=candidates, total=total, strategy="vector"),
        )
