"""
Search orchestration for ammunition products.

Provides high-level search functionality including:
- Intent parsing and explicit filter merging
- Vector retrieval with relational fallback
- Price attachment, price/stock post-filtering and price context
- Ranking, sorting and optional personalization (lens) ordering
- Tier-shaped responses, facets and search metadata
- Cached search results with Redis
"""

import json
import math
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from ammo_search import metrics
from ammo_search.config import settings
from ammo_search.errors import (
    ConsumerSafetyViolation,
    InvalidLensError,
    SearchInfrastructureError,
    is_infrastructure_error,
)
from ammo_search.logging_config import get_logger
from ammo_search.pricing.resolver import PriceResolver, VisiblePrice
from ammo_search.pricing.signal import ContextBand, PriceSignalCalculator
from ammo_search.ranking.knowledge import COMMON_CALIBERS, COMMON_PLATFORMS, PURPOSE_SYNONYMS
from ammo_search.ranking.scorer import RankingScorer
from ammo_search.search.formatting import (
    OutboundLinkSigner,
    SearchHit,
    assert_consumer_safe,
    project_hit,
)
from ammo_search.search.intent import (
    ExplicitFilters,
    IntentParser,
    KeywordIntentParser,
    PriceConditions,
    SearchIntent,
    UserTier,
    merge_filters_with_intent,
    price_conditions_for,
)
from ammo_search.search.personalization import LensResult, PersonalizationPipeline
from ammo_search.search.predicate import Predicate, conditions_count
from ammo_search.search.query_builder import SearchQueryBuilder
from ammo_search.search.retrieval import RetrievalStateMachine

logger = get_logger(__name__)


class SortBy(str, Enum):
    RELEVANCE = "relevance"
    PRICE_ASC = "price_asc"
    PRICE_DESC = "price_desc"
    DATE_ASC = "date_asc"
    DATE_DESC = "date_desc"
    PRICE_CONTEXT = "price_context"


@dataclass
class SearchOptions:
    page: int = 1
    limit: int = 20
    sort_by: SortBy = SortBy.RELEVANCE
    use_vector_search: bool = True
    filters: ExplicitFilters = field(default_factory=ExplicitFilters)
    lens_id: Optional[str] = None
    tier: UserTier = UserTier.STANDARD
    request_id: Optional[str] = None


def apply_price_conditions(
    prices: Sequence[VisiblePrice], conditions: PriceConditions
) -> List[VisiblePrice]:
    """Keep only prices that satisfy the price range and stock conditions."""
    if not conditions.active:
        return list(prices)
    kept = []
    for price in prices:
        value = float(price.price)
        if conditions.min_price is not None and value < conditions.min_price:
            continue
        if conditions.max_price is not None and value > conditions.max_price:
            continue
        if conditions.in_stock_only and not price.in_stock:
            continue
        kept.append(price)
    return kept


def sort_hits(hits: List[SearchHit], sort_by: SortBy) -> List[SearchHit]:
    """Comparator sorts. Products without prices always go last for price sorts."""
    if sort_by in (SortBy.PRICE_ASC, SortBy.PRICE_DESC):
        priced = [h for h in hits if h.sort_price_per_round is not None]
        unpriced = [h for h in hits if h.sort_price_per_round is None]
        priced.sort(key=lambda h: h.sort_price_per_round, reverse=sort_by == SortBy.PRICE_DESC)
        return priced + unpriced

    if sort_by in (SortBy.DATE_ASC, SortBy.DATE_DESC):
        dated = [h for h in hits if h.product.created_at is not None]
        undated = [h for h in hits if h.product.created_at is None]
        dated.sort(key=lambda h: h.product.created_at, reverse=sort_by == SortBy.DATE_DESC)
        return dated + undated

    if sort_by == SortBy.PRICE_CONTEXT:
        return sorted(
            hits,
            key=lambda h: (
                h.price_signal.position_in_range if h.price_signal else 0.0,
                h.price_signal is None or h.price_signal.context_band == ContextBand.INSUFFICIENT_DATA,
            ),
        )

    return sorted(
        hits, key=lambda h: h.ranking.final_score if h.ranking else 0.0, reverse=True
    )


class SearchService:
    """Query planner and search orchestrator."""

    SUGGESTION_LIMIT = 8

    def __init__(
        self,
        signal_calculator: PriceSignalCalculator,
        retrieval: RetrievalStateMachine,
        query_builder: Optional[SearchQueryBuilder] = None,
        resolver: Optional[PriceResolver] = None,
        scorer: Optional[RankingScorer] = None,
        intent_parser: Optional[IntentParser] = None,
        personalization: Optional[PersonalizationPipeline] = None,
        redis_client=None,
        link_signer: Optional[OutboundLinkSigner] = None,
        vector_enabled: Optional[bool] = None,
        facet_row_limit: Optional[int] = None,
    ):
        self.signal_calculator = signal_calculator
        self.retrieval = retrieval
        self.query_builder = query_builder or SearchQueryBuilder()
        self.resolver = resolver or PriceResolver()
        self.scorer = scorer or RankingScorer()
        self.intent_parser = intent_parser or KeywordIntentParser()
        self.personalization = personalization
        self.redis = redis_client
        self.link_signer = link_signer or OutboundLinkSigner()
        self.vector_enabled = (
            settings.vector_search_enabled if vector_enabled is None else vector_enabled
        )
        self.facet_row_limit = facet_row_limit or settings.facet_row_limit

        self.CACHE_TTL = settings.search_cache_ttl_seconds

    async def search(
        self, db: AsyncSession, query: str, options: Optional[SearchOptions] = None
    ) -> Dict[str, Any]:
        """
        Run one search.

        Returns:
            Dict with products, facets, pagination, search_metadata and,
            when a lens ran, pipeline

        Raises:
            InvalidLensError: Unknown lens id
            SearchInfrastructureError: Hard infrastructure failure
            ConsumerSafetyViolation: Response contained an internal field
        """
        start_time = time.time()
        options = options or SearchOptions()
        options = replace(
            options,
            page=max(1, options.page),
            limit=max(1, min(options.limit, settings.search_max_limit)),
        )
        request_id = options.request_id or uuid.uuid4().hex[:12]
        log = logger.bind(request_id=request_id)
        labels = {"sort_by": options.sort_by.value, "tier": options.tier.value}

        cache_key = None
        if self.personalization is None:
            cache_key = self._cache_key(query, options)
            cached = await self._get_cached_result(cache_key)
            if cached:
                log.debug(f"Cache hit for search: {cache_key}")
                metrics.search_requests_total.labels(status="cached", **labels).inc()
                return cached

        try:
            result = await self._search(db, query, options, request_id, log, start_time)
        except InvalidLensError:
            metrics.search_requests_total.labels(status="invalid_lens", **labels).inc()
            raise
        except ConsumerSafetyViolation:
            metrics.search_requests_total.labels(status="safety_violation", **labels).inc()
            raise
        except Exception as e:
            if is_infrastructure_error(e):
                metrics.search_requests_total.labels(status="infrastructure_error", **labels).inc()
                log.error(f"Search infrastructure failure: {e}", exc_info=True)
                if isinstance(e, SearchInfrastructureError):
                    raise
                raise SearchInfrastructureError(f"Search backend unavailable: {e}") from e
            log.error(f"Search failed, returning degraded result: {e}", exc_info=True)
            metrics.search_requests_total.labels(status="degraded", **labels).inc()
            return self._degraded_result(query, options, start_time)

        metrics.search_requests_total.labels(status="success", **labels).inc()
        metrics.search_duration_seconds.observe(time.time() - start_time)

        if cache_key:
            await self._cache_result(cache_key, result)

        return result

    async def _search(
        self,
        db: AsyncSession,
        query: str,
        options: SearchOptions,
        request_id: str,
        log,
        start_time: float,
    ) -> Dict[str, Any]:
        timing: Dict[str, int] = {}
        mark = time.time()

        normalized = self.query_builder.normalize_query(query)
        filters, dropped = options.filters.for_tier(options.tier)
        if dropped:
            log.info(f"Removed filters not available to {options.tier.value} tier: {dropped}")

        intent = await self.intent_parser.parse(normalized)
        merged = merge_filters_with_intent(intent, filters)
        predicate = self.query_builder.compose_predicate(intent, merged, filters)
        conditions = price_conditions_for(merged)
        timing["parse_ms"] = _elapsed_ms(mark)

        # Retrieval
        mark = time.time()
        use_vector = options.use_vector_search and self.vector_enabled and not filters.has_any()
        skip = (options.page - 1) * options.limit
        outcome = await self.retrieval.run(
            db,
            normalized,
            predicate,
            skip=skip,
            take=options.limit * 2,
            use_vector=use_vector,
            keywords=intent.keywords,
        )
        timing["retrieval_ms"] = _elapsed_ms(mark)

        # Prices
        mark = time.time()
        batch = await self.resolver.batch_get_prices_with_confidence(
            db, [c.product.id for c in outcome.candidates]
        )
        hits = [
            SearchHit(
                product=c.product,
                prices=apply_price_conditions(batch.prices.get(c.product.id, []), conditions),
                relevance=c.relevance,
                link_confidence=batch.confidence.get(c.product.id, 0.0),
            )
            for c in outcome.candidates
        ]

        lens_active = self.personalization is not None
        keep_unpriced = lens_active and not conditions.active
        total = outcome.total
        if not keep_unpriced:
            fetched = len(hits)
            hits = [h for h in hits if h.prices]
            if fetched and len(hits) < fetched:
                total = max(len(hits), round(total * len(hits) / fetched))
        timing["pricing_ms"] = _elapsed_ms(mark)

        # Ordering
        mark = time.time()
        lens_result: Optional[LensResult] = None
        if lens_active:
            lens_result = await self._apply_lens(merged, hits, options.lens_id, request_id, log)

        if lens_result is not None:
            hits = list(lens_result.hits)
            total = 0 if lens_result.zero_results else len(hits)
            if options.sort_by != SortBy.RELEVANCE:
                if options.sort_by == SortBy.PRICE_CONTEXT:
                    await self._attach_signals(hits)
                hits = sort_hits(hits, options.sort_by)
        else:
            if options.sort_by in (SortBy.RELEVANCE, SortBy.PRICE_CONTEXT):
                await self._rank(hits, merged)
            hits = sort_hits(hits, options.sort_by)

        if keep_unpriced:
            hits = [h for h in hits if h.prices] + [h for h in hits if not h.prices]
        timing["ranking_ms"] = _elapsed_ms(mark)

        page_hits = hits[: options.limit]
        await self._attach_signals(page_hits)

        products = [project_hit(h, options.tier, self.link_signer) for h in page_hits]

        mark = time.time()
        facets = await self._build_facets(db, predicate, options.tier, log)
        timing["facets_ms"] = _elapsed_ms(mark)

        result: Dict[str, Any] = {
            "products": products,
            "facets": facets,
            "pagination": {
                "page": options.page,
                "limit": options.limit,
                "total": total,
                "total_pages": math.ceil(total / options.limit) if total else 0,
            },
            "search_metadata": {
                "query": query or "",
                "normalized_query": normalized,
                "parsed_filters": merged.parsed_filters(),
                "explicit_filters": filters.to_dict(),
                "removed_filters": dropped,
                "intent_confidence": intent.confidence,
                "ai_enhanced": intent.confidence > 0.5,
                "vector_search_used": outcome.vector_used,
                "retrieval_path": [state.value for state in outcome.path],
                "fallback_reason": outcome.fallback_reason.value if outcome.fallback_reason else None,
                "predicate_conditions": conditions_count(predicate),
                "sort_by": options.sort_by.value,
                "user_tier": options.tier.value,
                "processing_time_ms": _elapsed_ms(start_time),
                "timing": timing,
            },
        }

        if lens_result is not None and lens_result.metadata is not None:
            pipeline = lens_result.metadata.to_dict()
            pipeline["zero_results"] = lens_result.zero_results
            result["pipeline"] = pipeline

        assert_consumer_safe(result)

        log.info(
            f"Search '{normalized}' returned {len(products)} of {total} "
            f"via {outcome.strategy} in {result['search_metadata']['processing_time_ms']}ms"
        )
        return result

    async def _apply_lens(
        self,
        intent: SearchIntent,
        hits: List[SearchHit],
        lens_id: Optional[str],
        request_id: str,
        log,
    ) -> Optional[LensResult]:
        try:
            return await self.personalization.apply(intent, hits, lens_id, request_id)
        except InvalidLensError:
            raise
        except Exception as e:
            if is_infrastructure_error(e):
                raise
            log.warning(f"Personalization failed, continuing without lens: {e}")
            return None

    async def _rank(self, hits: List[SearchHit], intent: SearchIntent) -> None:
        await self._attach_signals(hits)
        for hit in hits:
            hit.ranking = self.scorer.score(
                hit.product, intent, hit.price_signal, relevance=hit.relevance, prices=hit.prices
            )
            logger.debug(
                f"Ranked product {hit.product.id}: {hit.ranking.final_score:.1f}",
                extra={"ranking_hints": hit.ranking.internal},
            )

    async def _attach_signals(self, hits: List[SearchHit]) -> None:
        """Compute price signals for hits that do not carry one yet."""
        missing = [h for h in hits if h.price_signal is None]
        if not missing:
            return
        signals = await self.signal_calculator.batch_calculate(
            [(h.product, h.prices) for h in missing]
        )
        for hit, signal in zip(missing, signals):
            hit.price_signal = signal

    async def _build_facets(
        self, db: AsyncSession, predicate: Predicate, tier: UserTier, log
    ) -> Dict[str, List[Dict[str, Any]]]:
        """Count attribute values over matching products in a single bounded query."""
        try:
            query, names = self.query_builder.build_facet_query(predicate, tier, self.facet_row_limit)
            rows = (await db.execute(query)).all()
        except Exception as e:
            if is_infrastructure_error(e):
                raise
            log.warning(f"Facet computation failed: {e}")
            await db.rollback()
            return {}

        counters: Dict[str, Counter] = {name: Counter() for name in names}
        for row in rows:
            for name, value in zip(names, row):
                if value is not None and value != "":
                    counters[name][value] += 1

        return {
            name: [
                {"value": value, "count": count}
                for value, count in sorted(counter.items(), key=lambda item: (-item[1], str(item[0])))
            ]
            for name, counter in counters.items()
        }

    def _degraded_result(
        self, query: str, options: SearchOptions, start_time: float
    ) -> Dict[str, Any]:
        return {
            "products": [],
            "facets": {},
            "pagination": {
                "page": options.page,
                "limit": options.limit,
                "total": 0,
                "total_pages": 0,
            },
            "search_metadata": {
                "query": query or "",
                "sort_by": options.sort_by.value,
                "user_tier": options.tier.value,
                "vector_search_used": False,
                "processing_time_ms": _elapsed_ms(start_time),
                "degraded": True,
            },
        }

    def get_search_suggestions(self, partial: str) -> List[str]:
        """Typeahead suggestions from common platforms, calibers and purposes."""
        text = (partial or "").strip().lower()
        if not text:
            return []

        suggestions: List[str] = []
        purposes = list(dict.fromkeys(PURPOSE_SYNONYMS.values()))

        for platform in COMMON_PLATFORMS:
            if text in platform.lower():
                suggestions.append(f"{platform} ammo")

        for caliber in COMMON_CALIBERS:
            if text in caliber.lower():
                suggestions.append(f"{caliber} ammo")
                suggestions.extend(f"{caliber} {purpose.lower()}" for purpose in purposes)

        for purpose in purposes:
            if text in purpose.lower():
                suggestions.extend(f"{caliber} {purpose.lower()}" for caliber in COMMON_CALIBERS)

        return list(dict.fromkeys(suggestions))[: self.SUGGESTION_LIMIT]

    def _cache_key(self, query: str, options: SearchOptions) -> str:
        query_hash = self.query_builder.calculate_query_hash(
            q=self.query_builder.normalize_query(query).lower(),
            page=options.page,
            limit=options.limit,
            sort_by=options.sort_by.value,
            use_vector=options.use_vector_search,
            filters=options.filters.for_tier(options.tier)[0].to_dict(),
            tier=options.tier.value,
        )
        return f"search:ammo:{query_hash}"

    async def _get_cached_result(self, key: str) -> Optional[Dict[str, Any]]:
        """Get cached search result."""
        if not self.redis:
            return None

        try:
            cached = await self.redis.get(key)
            if cached:
                return json.loads(cached)
        except Exception as e:
            logger.warning(f"Cache read failed: {e}")

        return None

    async def _cache_result(self, key: str, data: Dict[str, Any], ttl: int = None) -> None:
        """Cache search result."""
        if not self.redis:
            return

        try:
            await self.redis.setex(key, ttl or self.CACHE_TTL, json.dumps(data, default=str))
        except Exception as e:
            logger.warning(f"Cache write failed: {e}")


def _elapsed_ms(since: float) -> int:
    return int((time.time() - since) * 1000)
