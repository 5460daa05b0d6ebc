"""
Composite ranking for ammunition search results.

Four contributions, summed and capped at 100:
- base relevance from retrieval (0-40)
- performance / intent match (0-30)
- price context position, lower is better (0-20)
- safety constraint bonus (0-10)

Pure and deterministic: no I/O, same inputs give the same result.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ammo_search.pricing.resolver import VisiblePrice
from ammo_search.pricing.signal import ContextBand, PriceSignal, select_reference_price
from ammo_search.ranking.knowledge import (
    BULLET_TYPE_CATEGORIES,
    EXPANDING_BULLET_TYPES,
    SHORT_BARREL_NAME_INDICATORS,
    WELL_DOCUMENTED_BRANDS,
    bullet_category,
    is_light_for_caliber,
)
from ammo_search.search.intent import SearchIntent

logger = logging.getLogger(__name__)


@dataclass
class ScoreBreakdown:
    base_relevance: float = 0.0
    performance_match: float = 0.0
    price_context: float = 0.0
    safety_bonus: float = 0.0

    @property
    def total(self) -> float:
        return self.base_relevance + self.performance_match + self.price_context + self.safety_bonus


@dataclass
class RankingResult:
    final_score: float
    breakdown: ScoreBreakdown
    badges: List[str] = field(default_factory=list)
    explanation: str = ""
    # Internal-only hints, never part of consumer output
    internal: Dict[str, Any] = field(default_factory=dict)


def extract_badges(product: Any) -> List[str]:
    """Performance badges derived from product attributes, deduplicated."""
    badges: List[str] = []
    pressure = (product.pressure_rating or "").upper()
    bullet_type = (product.bullet_type or "").upper()

    if pressure == "+P+":
        badges.append("+P+")
    elif pressure == "+P":
        badges.append("+P")
    elif pressure == "NATO":
        badges.append("nato-spec")

    flags = [
        (product.is_subsonic, "subsonic"),
        (product.short_barrel_optimized, "short-barrel-optimized"),
        (product.suppressor_safe, "suppressor-safe"),
        (product.low_flash, "low-flash"),
        (product.low_recoil, "low-recoil"),
        (product.match_grade, "match-grade"),
        (product.controlled_expansion, "controlled-expansion"),
    ]
    badges.extend(badge for flag, badge in flags if flag)

    if bullet_type == "BJHP":
        badges.extend(["bonded", "barrier-blind"])
    if bullet_type == "FRANGIBLE":
        badges.append("frangible")

    return list(dict.fromkeys(badges))


class RankingScorer:
    """Scores products against parsed intent and price context."""

    BASE_RELEVANCE_MAX = 40.0
    PERFORMANCE_MAX = 30.0
    PRICE_CONTEXT_MAX = 20.0
    SAFETY_MAX = 10.0
    DEFAULT_BASE_RELEVANCE = 20.0
    MAX_SCORE = 100.0

    def score(
        self,
        product: Any,
        intent: SearchIntent,
        price_signal: Optional[PriceSignal],
        relevance: Optional[float] = None,
        prices: Sequence[VisiblePrice] = (),
    ) -> RankingResult:
        """
        Score one product.

        Args:
            product: Product with ballistic/performance attributes
            intent: Merged search intent
            price_signal: Product price signal, if computed
            relevance: Retrieval relevance normalized to 0-1, if known
            prices: Visible prices, used only for internal hints
        """
        breakdown = ScoreBreakdown(
            base_relevance=self._base_relevance(relevance),
            performance_match=self._performance_match(product, intent),
            price_context=self._price_context(price_signal),
            safety_bonus=self._safety_bonus(product, intent),
        )

        return RankingResult(
            final_score=round(min(self.MAX_SCORE, breakdown.total), 2),
            breakdown=breakdown,
            badges=extract_badges(product),
            explanation=self._explain(product, breakdown, price_signal),
            internal=self._internal_hints(product, prices),
        )

    def _base_relevance(self, relevance: Optional[float]) -> float:
        if relevance is None:
            return self.DEFAULT_BASE_RELEVANCE
        return max(0.0, min(self.BASE_RELEVANCE_MAX, relevance * self.BASE_RELEVANCE_MAX))

    def _performance_match(self, product: Any, intent: SearchIntent) -> float:
        boosts = intent.performance.ranking_boosts if intent.performance else {}
        if boosts:
            return min(self.PERFORMANCE_MAX, self._boost_score(product, boosts))
        return max(0.0, min(self.PERFORMANCE_MAX, self._purpose_score(product, intent)))

    def _boost_score(self, product: Any, boosts: Dict[str, float]) -> float:
        name = (product.name or "").lower()
        bullet_type = (product.bullet_type or "").upper()
        score = 0.0

        weight = boosts.get("short_barrel_optimized")
        if weight:
            if product.short_barrel_optimized:
                score += weight * 10
            elif any(indicator in name for indicator in SHORT_BARREL_NAME_INDICATORS):
                score += weight * 6

        weight = boosts.get("low_flash")
        if weight and product.low_flash:
            score += weight * 10

        weight = boosts.get("controlled_expansion")
        if weight:
            if product.controlled_expansion:
                score += weight * 10
            elif bullet_type in EXPANDING_BULLET_TYPES:
                score += weight * 5

        weight = boosts.get("suppressor_safe")
        if weight and (product.suppressor_safe or product.is_subsonic):
            score += weight * 10

        weight = boosts.get("match_grade")
        if weight and product.match_grade:
            score += weight * 10

        return score

    def _purpose_score(self, product: Any, intent: SearchIntent) -> float:
        purpose = (intent.purpose or "").lower()
        bullet_type = (product.bullet_type or "").upper()
        category = bullet_category(bullet_type)
        score = 0.0

        if "defense" in purpose or "self" in purpose:
            if category == "defensive":
                score += 12
            if product.controlled_expansion:
                score += 6
            if product.low_flash:
                score += 5
            if product.short_barrel_optimized:
                score += 5
            if category == "training":
                score -= 8

        if "target" in purpose or "practice" in purpose or "training" in purpose:
            if category == "training":
                score += 10
            if product.factory_new is False:
                score += 5

        if "hunt" in purpose:
            if category == "hunting":
                score += 12
            if product.match_grade:
                score += 5

        if "competition" in purpose or "match" in purpose or intent.quality_level == "match-grade":
            if product.match_grade:
                score += 15
            if product.low_recoil:
                score += 5

        if "suppressor" in purpose or "subsonic" in purpose:
            if product.suppressor_safe:
                score += 15
            if product.is_subsonic:
                score += 10

        return score

    def _price_context(self, price_signal: Optional[PriceSignal]) -> float:
        if price_signal is None or not price_signal.has_data:
            return 0.0
        return (1 - price_signal.position_in_range) * self.PRICE_CONTEXT_MAX

    def _safety_bonus(self, product: Any, intent: SearchIntent) -> float:
        constraints = intent.performance.safety_constraints if intent.performance else []
        if not constraints:
            return 0.0

        bullet_type = (product.bullet_type or "").upper()
        bonus = 0.0
        for constraint in constraints:
            if constraint == "low-overpenetration":
                if product.controlled_expansion:
                    bonus += 4
                if bullet_type in ("JHP", "HP", "BJHP", "HST", "GDHP"):
                    bonus += 3
                if bullet_type == "FRANGIBLE":
                    bonus += 5
            elif constraint == "low-flash":
                if product.low_flash:
                    bonus += 5
            elif constraint == "low-recoil":
                if product.low_recoil:
                    bonus += 5
                if is_light_for_caliber(product.caliber, product.grain_weight):
                    bonus += 2
            elif constraint == "barrier-blind":
                if bullet_type == "BJHP":
                    bonus += 5
            elif constraint == "frangible":
                if bullet_type == "FRANGIBLE":
                    bonus += 5

        return min(self.SAFETY_MAX, bonus)

    def _explain(
        self, product: Any, breakdown: ScoreBreakdown, price_signal: Optional[PriceSignal]
    ) -> str:
        parts: List[str] = []

        if breakdown.performance_match >= 15:
            parts.append("Strong match for the performance attributes in your search.")
        elif breakdown.performance_match >= 5:
            parts.append("Matches some of the performance attributes in your search.")

        if breakdown.safety_bonus > 0:
            parts.append("Fits the safety preferences you described.")

        if price_signal is not None and price_signal.has_data:
            if price_signal.context_band == ContextBand.LOW:
                parts.append("Priced in the lower part of the recent range for this caliber.")
            elif price_signal.context_band == ContextBand.HIGH:
                parts.append("Priced in the upper part of the recent range for this caliber.")
            else:
                parts.append("Priced within the typical recent range for this caliber.")

        if not parts:
            if (product.bullet_type or "").upper() in BULLET_TYPE_CATEGORIES["training"]:
                return "Reliable FMJ for training and practice."
            return "Good match for your search criteria."

        return " ".join(parts[:2])

    def _internal_hints(self, product: Any, prices: Sequence[VisiblePrice]) -> Dict[str, Any]:
        reference = select_reference_price(prices)
        brand = (product.brand or "").lower()
        return {
            "retailer_confidence_hint": (
                "high" if reference is not None and reference.retailer_tier == "PREMIUM" else "standard"
            ),
            "brand_data_completeness_hint": (
                "high" if any(b in brand for b in WELL_DOCUMENTED_BRANDS) else "unknown"
            ),
            "shipping_cost": (
                float(reference.shipping_cost)
                if reference is not None and reference.shipping_cost is not None
                else None
            ),
        }
