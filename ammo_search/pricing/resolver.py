"""
Price aggregation over resolution links.

Turns raw source observations into the canonical per-product price list:
- joins resolution links to observations inside the lookback window
- drops observations that fail the visibility rules
- overlays active corrections (ignore / multiplier)
- keeps one price per retailer (latest observation, lowest price on ties)
- orders by corrected price, premium retailers first on equal price
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ammo_search import metrics
from ammo_search.config import settings
from ammo_search.db.models import (
    AffiliateFeedRun,
    MerchantRetailer,
    Price,
    ProductLink,
    Retailer,
    ScrapeAdapterStatus,
    Source,
)
from ammo_search.pricing.corrections import CorrectionIndex, observation_scopes
from ammo_search.pricing.visibility import SourceGuardrails, visibility_failure

logger = logging.getLogger(__name__)

RESOLVED_LINK_STATUSES = ("MATCHED", "CREATED")
PREMIUM_RETAILER_TIER = "PREMIUM"


@dataclass
class VisiblePrice:
    """A consumer-visible price with corrections applied."""

    price_id: int
    product_id: int
    retailer_id: int
    retailer_name: str
    retailer_tier: str
    price: Decimal
    raw_price: Decimal
    currency: str
    in_stock: bool
    observed_at: datetime
    link_confidence: Decimal
    url: Optional[str] = None
    shipping_cost: Optional[Decimal] = None
    retailer_logo_url: Optional[str] = None


@dataclass
class BatchPriceResult:
    """Prices and link confidence for a batch of products."""

    prices: Dict[int, List[VisiblePrice]] = field(default_factory=dict)
    confidence: Dict[int, float] = field(default_factory=dict)


def dedupe_by_retailer(prices: Iterable[VisiblePrice]) -> List[VisiblePrice]:
    """Keep the most recent observation per retailer, lowest price on ties."""
    best: Dict[int, VisiblePrice] = {}
    for candidate in prices:
        current = best.get(candidate.retailer_id)
        if current is None:
            best[candidate.retailer_id] = candidate
        elif candidate.observed_at > current.observed_at:
            best[candidate.retailer_id] = candidate
        elif candidate.observed_at == current.observed_at and candidate.price < current.price:
            best[candidate.retailer_id] = candidate
    return list(best.values())


def sort_prices(prices: Iterable[VisiblePrice]) -> List[VisiblePrice]:
    """Order by corrected price, premium retailer tier first on equal price."""
    return sorted(
        prices,
        key=lambda p: (p.price, 0 if p.retailer_tier == PREMIUM_RETAILER_TIER else 1, p.retailer_id),
    )


class PriceResolver:
    """Resolves visible, corrected prices for canonical products."""

    def __init__(
        self,
        lookback_days: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.lookback_days = lookback_days or settings.price_lookback_days
        self._now = clock or datetime.utcnow
        self.logger = logger

    def window_start(self, days: Optional[int] = None) -> datetime:
        return self._now() - timedelta(days=days or self.lookback_days)

    async def load_visible_prices(
        self,
        db: AsyncSession,
        product_ids: Iterable[int],
        window_start: Optional[datetime] = None,
        in_stock_only: bool = False,
    ) -> List[VisiblePrice]:
        """
        Load every visible, corrected observation for the given products.

        Observations are not deduplicated here; statistics need the full
        per-day history while listings need one price per retailer.
        """
        ids = list(dict.fromkeys(product_ids))
        if not ids:
            return []
        return await self._load_visible(db, ProductLink.product_id.in_(ids), window_start, in_stock_only)

    async def load_visible_prices_matching(
        self,
        db: AsyncSession,
        product_query: Select,
        window_start: Optional[datetime] = None,
        in_stock_only: bool = False,
    ) -> List[VisiblePrice]:
        """Like `load_visible_prices`, for the products a subquery selects."""
        return await self._load_visible(
            db, ProductLink.product_id.in_(product_query), window_start, in_stock_only
        )

    async def _load_visible(
        self,
        db: AsyncSession,
        product_clause,
        window_start: Optional[datetime],
        in_stock_only: bool,
    ) -> List[VisiblePrice]:
        window_start = window_start or self.window_start()

        query = (
            select(
                Price,
                ProductLink.product_id,
                ProductLink.confidence,
                Retailer,
                MerchantRetailer,
                Source,
                ScrapeAdapterStatus,
                AffiliateFeedRun,
            )
            .join(ProductLink, ProductLink.source_product_id == Price.source_product_id)
            .join(Retailer, Retailer.id == Price.retailer_id)
            .outerjoin(MerchantRetailer, MerchantRetailer.retailer_id == Price.retailer_id)
            .outerjoin(Source, Source.id == Price.source_id)
            .outerjoin(ScrapeAdapterStatus, ScrapeAdapterStatus.adapter_id == Source.adapter_id)
            .outerjoin(AffiliateFeedRun, AffiliateFeedRun.id == Price.affiliate_feed_run_id)
            .where(
                product_clause,
                ProductLink.status.in_(RESOLVED_LINK_STATUSES),
                Price.observed_at >= window_start,
            )
        )
        if in_stock_only:
            query = query.where(Price.in_stock.is_(True))

        result = await db.execute(query)
        rows = result.all()

        candidates = []
        for price, product_id, confidence, retailer, merchant_link, source, adapter, feed_run in rows:
            failure = visibility_failure(
                price,
                retailer,
                merchant_link,
                SourceGuardrails.from_rows(source, adapter),
                feed_run,
            )
            if failure:
                metrics.price_observations_excluded_total.labels(reason=failure).inc()
                continue
            candidates.append((price, product_id, confidence, retailer, observation_scopes(price, product_id)))

        corrections = await CorrectionIndex.load(
            db, window_start, (scope for *_, scopes in candidates for scope in scopes)
        )

        visible: List[VisiblePrice] = []
        for price, product_id, confidence, retailer, scopes in candidates:
            outcome = corrections.resolve(scopes, price.observed_at)
            if outcome.excluded:
                self.logger.debug(
                    f"Price {price.id} excluded by corrections {outcome.applied}: {outcome.reason}"
                )
                metrics.price_observations_excluded_total.labels(reason=outcome.reason).inc()
                continue

            visible.append(
                VisiblePrice(
                    price_id=price.id,
                    product_id=product_id,
                    retailer_id=retailer.id,
                    retailer_name=retailer.name,
                    retailer_tier=retailer.tier,
                    retailer_logo_url=retailer.logo_url,
                    price=outcome.apply(price.price),
                    raw_price=price.price,
                    currency=price.currency,
                    in_stock=price.in_stock,
                    observed_at=price.observed_at,
                    url=price.url,
                    shipping_cost=price.shipping_cost,
                    link_confidence=confidence if confidence is not None else Decimal("0"),
                )
            )

        return visible

    async def get_prices(self, db: AsyncSession, product_id: int) -> List[VisiblePrice]:
        """Get the canonical price list for one product."""
        batch = await self.batch_get_prices_with_confidence(db, [product_id])
        return batch.prices.get(product_id, [])

    async def batch_get_prices_with_confidence(
        self, db: AsyncSession, product_ids: Iterable[int]
    ) -> BatchPriceResult:
        """
        Resolve prices and link confidence for many products at once.

        Every requested id is present in both maps; unknown or unlinked
        products get an empty price list and zero confidence.
        """
        ids = list(dict.fromkeys(product_ids))
        batch = BatchPriceResult(
            prices={pid: [] for pid in ids},
            confidence={pid: 0.0 for pid in ids},
        )
        if not ids:
            return batch

        confidence_result = await db.execute(
            select(ProductLink.product_id, func.max(ProductLink.confidence))
            .where(
                ProductLink.product_id.in_(ids),
                ProductLink.status.in_(RESOLVED_LINK_STATUSES),
            )
            .group_by(ProductLink.product_id)
        )
        for product_id, max_confidence in confidence_result.all():
            batch.confidence[product_id] = float(max_confidence or 0)

        grouped: Dict[int, List[VisiblePrice]] = {pid: [] for pid in ids}
        for visible_price in await self.load_visible_prices(db, ids):
            grouped[visible_price.product_id].append(visible_price)

        for product_id, prices in grouped.items():
            batch.prices[product_id] = sort_prices(dedupe_by_retailer(prices))

        return batch


price_resolver = PriceResolver()
