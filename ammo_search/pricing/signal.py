"""
Descriptive price context for a product.

Compares a product's cheapest visible price-per-round against the cached
caliber statistics and reports where it sits. The output is descriptive
only: a relative percentage, a normalized position and a coarse band.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ammo_search import metrics
from ammo_search.config import settings
from ammo_search.errors import SearchInfrastructureError, is_infrastructure_error
from ammo_search.pricing.resolver import VisiblePrice
from ammo_search.pricing.statistics import PriceStatisticsCache

logger = logging.getLogger(__name__)

LOW_POSITION_THRESHOLD = 0.30
HIGH_POSITION_THRESHOLD = 0.70


class ContextBand(str, Enum):
    """Where a price sits relative to recent prices for its caliber."""

    LOW = "LOW"
    TYPICAL = "TYPICAL"
    HIGH = "HIGH"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


@dataclass(frozen=True)
class PriceSignal:
    """Per-request price context. Never persisted."""

    relative_price_pct: float
    position_in_range: float
    context_band: ContextBand
    window_days: int
    sample_count: int
    as_of: str

    @property
    def has_data(self) -> bool:
        return self.context_band != ContextBand.INSUFFICIENT_DATA

    @property
    def meta(self) -> Dict[str, Any]:
        return {
            "window_days": self.window_days,
            "sample_count": self.sample_count,
            "as_of": self.as_of,
        }


def classify_position(position: float) -> ContextBand:
    if position <= LOW_POSITION_THRESHOLD:
        return ContextBand.LOW
    if position >= HIGH_POSITION_THRESHOLD:
        return ContextBand.HIGH
    return ContextBand.TYPICAL


def select_reference_price(prices: Sequence[VisiblePrice]) -> Optional[VisiblePrice]:
    """Cheapest in-stock price, or the cheapest of any stock status."""
    if not prices:
        return None
    in_stock = [p for p in prices if p.in_stock]
    return min(in_stock or prices, key=lambda p: p.price)


class PriceSignalCalculator:
    """Builds price signals from the statistics cache."""

    def __init__(
        self,
        stats_cache: PriceStatisticsCache,
        concurrency: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.stats_cache = stats_cache
        self.concurrency = concurrency or settings.price_signal_concurrency
        self._now = clock or datetime.utcnow
        self.logger = logger

    def _insufficient(self, sample_count: int = 0, as_of: Optional[datetime] = None) -> PriceSignal:
        return PriceSignal(
            relative_price_pct=0.0,
            position_in_range=0.0,
            context_band=ContextBand.INSUFFICIENT_DATA,
            window_days=self.stats_cache.window_days,
            sample_count=sample_count,
            as_of=(as_of or self._now()).isoformat() + "Z",
        )

    async def calculate_signal(self, product: Any, prices: Sequence[VisiblePrice]) -> PriceSignal:
        """
        Compute the price signal for one product.

        Args:
            product: Object exposing `caliber` and `round_count`
            prices: The product's visible prices

        Returns:
            PriceSignal, INSUFFICIENT_DATA when no meaningful comparison exists
        """
        signal = await self._calculate(product, prices)
        metrics.price_signal_bands_total.labels(band=signal.context_band.value).inc()
        return signal

    async def _calculate(self, product: Any, prices: Sequence[VisiblePrice]) -> PriceSignal:
        reference = select_reference_price(prices)
        caliber = getattr(product, "caliber", None)
        round_count = getattr(product, "round_count", None)

        if reference is None or not caliber or not round_count or round_count <= 0:
            return self._insufficient()

        price_per_round = float(reference.price) / round_count

        try:
            stats = await self.stats_cache.get_stats(caliber)
        except Exception as e:
            if is_infrastructure_error(e):
                raise SearchInfrastructureError(f"Price statistics unavailable: {e}") from e
            self.logger.warning(f"Price stats failed for {caliber}, reporting insufficient data: {e}")
            return self._insufficient()

        if not stats.sufficient or stats.sample_count < self.stats_cache.min_samples:
            return self._insufficient(stats.sample_count, stats.computed_at)

        relative_pct = 0.0
        if stats.median > 0:
            relative_pct = (price_per_round - stats.median) / stats.median * 100

        spread = stats.max - stats.min
        if spread > 0:
            position = min(1.0, max(0.0, (price_per_round - stats.min) / spread))
        else:
            position = 0.5

        return PriceSignal(
            relative_price_pct=round(relative_pct, 1),
            position_in_range=round(position, 2),
            context_band=classify_position(position),
            window_days=stats.window_days,
            sample_count=stats.sample_count,
            as_of=stats.computed_at.isoformat() + "Z",
        )

    async def batch_calculate(
        self, items: Sequence[Tuple[Any, Sequence[VisiblePrice]]]
    ) -> List[PriceSignal]:
        """Compute signals for many products with bounded concurrency."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(product: Any, prices: Sequence[VisiblePrice]) -> PriceSignal:
            async with semaphore:
                return await self.calculate_signal(product, prices)

        return list(await asyncio.gather(*(run(product, prices) for product, prices in items)))
