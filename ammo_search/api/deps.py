"""FastAPI dependencies."""

import logging
from typing import Optional

import redis.asyncio as redis
from fastapi import Header
from sqlalchemy.ext.asyncio import AsyncSession

from ammo_search.config import settings
from ammo_search.db.session import AsyncSessionLocal, get_db
from ammo_search.db.vector_store import vector_store
from ammo_search.pricing.resolver import price_resolver
from ammo_search.pricing.signal import PriceSignalCalculator
from ammo_search.pricing.statistics import PriceStatisticsCache
from ammo_search.search.intent import UserTier
from ammo_search.search.personalization import PersonalizationPipeline
from ammo_search.search.query_builder import SearchQueryBuilder
from ammo_search.search.retrieval import RelationalRetriever, RetrievalStateMachine, VectorRetriever
from ammo_search.search.service import SearchService

logger = logging.getLogger(__name__)

# Shared across requests; the only in-process mutable state
price_statistics_cache = PriceStatisticsCache(
    session_factory=AsyncSessionLocal, resolver=price_resolver
)

_search_service: Optional[SearchService] = None
_personalization: Optional[PersonalizationPipeline] = None


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


def get_user_tier(x_user_tier: Optional[str] = Header(None, alias="X-User-Tier")) -> UserTier:
    """Caller tier from the X-User-Tier header. Anything unrecognised is standard."""
    if x_user_tier and x_user_tier.strip().lower() == UserTier.PREMIUM.value:
        return UserTier.PREMIUM
    return UserTier.STANDARD


def register_personalization_pipeline(pipeline: Optional[PersonalizationPipeline]) -> None:
    """Install the external lens implementation. Takes effect on the next service build."""
    global _personalization, _search_service
    _personalization = pipeline
    _search_service = None


def build_search_service() -> SearchService:
    query_builder = SearchQueryBuilder()

    vector = None
    if settings.vector_search_enabled:
        from ammo_search.ai.embedding_service import embedding_service

        vector = VectorRetriever(embedding_service, vector_store)

    redis_client = None
    if settings.search_cache_enabled:
        try:
            redis_client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        except Exception as e:
            logger.warning(f"Failed to connect to Redis for search cache: {e}")

    personalization = _personalization if settings.personalization_enabled else None

    return SearchService(
        signal_calculator=PriceSignalCalculator(price_statistics_cache),
        retrieval=RetrievalStateMachine(RelationalRetriever(query_builder), vector),
        query_builder=query_builder,
        resolver=price_resolver,
        personalization=personalization,
        redis_client=redis_client,
    )


def get_search_service() -> SearchService:
    """Dependency for the shared search service."""
    global _search_service
    if _search_service is None:
        _search_service = build_search_service()
    return _search_service
