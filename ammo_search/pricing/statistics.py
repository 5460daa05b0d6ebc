"""
Per-caliber price statistics with a process-local TTL cache.

Statistics are computed over daily-best price-per-round:
- only consumer-visible, in-stock observations with corrections applied
- one value per product per UTC day (the lowest)
- trailing window of `price_stats_window_days`

On PostgreSQL the daily-best rows and their percentiles are computed in one
query with PERCENTILE_CONT. Other dialects load the visible observations and
interpolate linearly with numpy, which gives the same values.
"""

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Generic, Hashable, Iterable, List, Optional, Tuple, TypeVar

import numpy as np
from sqlalchemy import Date, Select, and_, cast, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ammo_search import metrics
from ammo_search.config import settings
from ammo_search.db.models import (
    AffiliateFeedRun,
    MerchantRetailer,
    Price,
    Product,
    ProductLink,
    Retailer,
    ScrapeAdapterStatus,
    Source,
)
from ammo_search.pricing.corrections import correction_exclusion_clause, correction_factor_expression
from ammo_search.pricing.resolver import RESOLVED_LINK_STATUSES, PriceResolver
from ammo_search.pricing.visibility import visible_observation_clause

logger = logging.getLogger(__name__)

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Key -> (value, stored_at) cache with lazy expiry.

    Population is last-write-wins; concurrent misses for one key may each
    compute and store, which is harmless because values never depend on
    previous cache state.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[V, float]] = {}

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, stored_at = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return value

    def set(self, key: Hashable, value: V) -> None:
        self._entries[key] = (value, self._clock())

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(frozen=True)
class CaliberPriceStats:
    """Percentile snapshot of daily-best price-per-round for one caliber."""

    category: str
    median: float
    min: float
    max: float
    p25: float
    p75: float
    sample_count: int
    window_days: int
    computed_at: datetime
    sufficient: bool

    @classmethod
    def insufficient(
        cls, category: str, sample_count: int, window_days: int, computed_at: datetime
    ) -> "CaliberPriceStats":
        """Zeroed record; sample_count still reports the real count."""
        return cls(
            category=category,
            median=0.0,
            min=0.0,
            max=0.0,
            p25=0.0,
            p75=0.0,
            sample_count=sample_count,
            window_days=window_days,
            computed_at=computed_at,
            sufficient=False,
        )


def normalize_category(category: Optional[str]) -> str:
    return (category or "").strip().lower()


def continuous_percentile(values: List[float], fraction: float) -> float:
    """Linearly interpolated percentile, fraction in [0, 1]."""
    return float(np.percentile(np.asarray(values, dtype=float), fraction * 100, method="linear"))


class PriceStatisticsCache:
    """Lazily computed, TTL-cached caliber price statistics."""

    def __init__(
        self,
        session_factory=None,
        resolver: Optional[PriceResolver] = None,
        cache: Optional[TTLCache] = None,
        window_days: Optional[int] = None,
        min_samples: Optional[int] = None,
        max_price_per_round: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.resolver = resolver or PriceResolver()
        # An empty TTLCache is falsy, so test against None
        self.cache: TTLCache[CaliberPriceStats] = (
            cache if cache is not None else TTLCache(settings.price_stats_ttl_seconds)
        )
        self.window_days = window_days if window_days is not None else settings.price_stats_window_days
        self.min_samples = min_samples if min_samples is not None else settings.price_stats_min_samples
        self.max_price_per_round = (
            max_price_per_round
            if max_price_per_round is not None
            else settings.price_stats_max_price_per_round
        )
        self._now = clock or datetime.utcnow
        self.logger = logger

    async def get_stats(self, category: str) -> CaliberPriceStats:
        """Return cached statistics for a caliber, recomputing after expiry."""
        key = normalize_category(category)

        cached = self.cache.get(key)
        if cached is not None:
            metrics.price_stats_cache_total.labels(result="hit").inc()
            self.logger.debug(f"Price stats cache hit: {key}")
            return cached

        metrics.price_stats_cache_total.labels(result="miss").inc()
        stats = await self._compute_in_session(key)
        self.cache.set(key, stats)
        return stats

    async def _compute_in_session(self, category: str) -> CaliberPriceStats:
        if self.session_factory is None:
            raise RuntimeError("PriceStatisticsCache has no session factory configured")
        async with self.session_factory() as db:
            return await self.compute_stats(db, category)

    async def compute_stats(self, db: AsyncSession, category: str) -> CaliberPriceStats:
        """Compute statistics for a caliber directly, bypassing the cache."""
        key = normalize_category(category)
        now = self._now()
        if not key:
            return CaliberPriceStats.insufficient(key, 0, self.window_days, now)

        window_start = now - timedelta(days=self.window_days)
        if db.get_bind().dialect.name == "postgresql":
            stats = await self._compute_in_database(db, key, window_start, now)
        else:
            stats = await self._compute_in_process(db, key, window_start, now)

        if stats.sufficient:
            self.logger.info(
                f"Computed price stats for {key}: median={stats.median:.4f} "
                f"range={stats.min:.4f}-{stats.max:.4f} n={stats.sample_count}"
            )
        else:
            self.logger.debug(
                f"Insufficient price samples for {key}: {stats.sample_count} < {self.min_samples}"
            )
        return stats

    @staticmethod
    def _caliber_filter(key: str):
        pattern = f"%{key}%"
        return and_(
            or_(Product.caliber_norm.ilike(pattern), Product.caliber.ilike(pattern)),
            Product.round_count > 0,
        )

    def daily_best_statistics_query(self, category: str, window_start: datetime) -> Select:
        """Percentiles over the daily-best CTE, for databases with PERCENTILE_CONT."""
        key = normalize_category(category)
        price_per_round = (
            Price.price * correction_factor_expression(ProductLink.product_id) / Product.round_count
        )
        day = cast(Price.observed_at, Date)

        daily_best = (
            select(
                ProductLink.product_id.label("product_id"),
                day.label("day"),
                func.min(price_per_round).label("price_per_round"),
            )
            .select_from(Price)
            .join(ProductLink, ProductLink.source_product_id == Price.source_product_id)
            .join(Product, Product.id == ProductLink.product_id)
            .join(Retailer, Retailer.id == Price.retailer_id)
            .outerjoin(MerchantRetailer, MerchantRetailer.retailer_id == Price.retailer_id)
            .outerjoin(Source, Source.id == Price.source_id)
            .outerjoin(ScrapeAdapterStatus, ScrapeAdapterStatus.adapter_id == Source.adapter_id)
            .outerjoin(AffiliateFeedRun, AffiliateFeedRun.id == Price.affiliate_feed_run_id)
            .where(
                self._caliber_filter(key),
                ProductLink.status.in_(RESOLVED_LINK_STATUSES),
                Price.in_stock.is_(True),
                Price.observed_at >= window_start,
                visible_observation_clause(),
                ~correction_exclusion_clause(ProductLink.product_id),
            )
            .group_by(ProductLink.product_id, day)
            .cte("daily_best")
        )

        value = daily_best.c.price_per_round
        return select(
            func.count().label("sample_count"),
            func.min(value).label("min"),
            func.max(value).label("max"),
            func.percentile_cont(0.25).within_group(value).label("p25"),
            func.percentile_cont(0.5).within_group(value).label("median"),
            func.percentile_cont(0.75).within_group(value).label("p75"),
        ).where(value > 0, value < self.max_price_per_round)

    async def _compute_in_database(
        self, db: AsyncSession, key: str, window_start: datetime, now: datetime
    ) -> CaliberPriceStats:
        result = await db.execute(self.daily_best_statistics_query(key, window_start))
        row = result.one()

        sample_count = int(row.sample_count or 0)
        if sample_count < self.min_samples:
            return CaliberPriceStats.insufficient(key, sample_count, self.window_days, now)

        return CaliberPriceStats(
            category=key,
            median=float(row.median),
            min=float(row.min),
            max=float(row.max),
            p25=float(row.p25),
            p75=float(row.p75),
            sample_count=sample_count,
            window_days=self.window_days,
            computed_at=now,
            sufficient=True,
        )

    async def _compute_in_process(
        self, db: AsyncSession, key: str, window_start: datetime, now: datetime
    ) -> CaliberPriceStats:
        result = await db.execute(
            select(Product.id, Product.round_count).where(self._caliber_filter(key))
        )
        round_counts = {product_id: round_count for product_id, round_count in result.all()}
        if not round_counts:
            return CaliberPriceStats.insufficient(key, 0, self.window_days, now)

        prices = await self.resolver.load_visible_prices_matching(
            db,
            select(Product.id).where(self._caliber_filter(key)),
            window_start=window_start,
            in_stock_only=True,
        )

        daily_best = self._daily_best(
            ((p.product_id, p.observed_at.date(), float(p.price) / round_counts[p.product_id]) for p in prices)
        )
        samples = [v for v in daily_best.values() if 0 < v < self.max_price_per_round]

        if len(samples) < self.min_samples:
            return CaliberPriceStats.insufficient(key, len(samples), self.window_days, now)

        return CaliberPriceStats(
            category=key,
            median=continuous_percentile(samples, 0.5),
            min=min(samples),
            max=max(samples),
            p25=continuous_percentile(samples, 0.25),
            p75=continuous_percentile(samples, 0.75),
            sample_count=len(samples),
            window_days=self.window_days,
            computed_at=now,
            sufficient=True,
        )

    @staticmethod
    def _daily_best(values: Iterable[Tuple[int, date, float]]) -> Dict[Tuple[int, date], float]:
        best: Dict[Tuple[int, date], float] = {}
        for product_id, day, price_per_round in values:
            key = (product_id, day)
            if key not in best or price_per_round < best[key]:
                best[key] = price_per_round
        return best

    async def warm_up(self, categories: Optional[Iterable[str]] = None) -> int:
        """Pre-populate the cache for common calibers. Returns how many loaded."""
        warmed = 0
        for category in categories or settings.price_stats_warm_categories:
            try:
                await self.get_stats(category)
                warmed += 1
            except Exception as e:
                self.logger.warning(f"Price stats warm-up failed for {category}: {e}")
        self.logger.info(f"Warmed price stats cache for {warmed} calibers")
        return warmed

    def invalidate(self, category: str) -> None:
        self.cache.invalidate(normalize_category(category))

    def clear(self) -> None:
        self.cache.clear()
