"""
Search intent, explicit filters and their merge rules.

The intent parser is an external collaborator; `IntentParser` is the
contract it fulfils. `KeywordIntentParser` is the built-in rule-based
implementation used when no model-backed parser is injected.
"""

import dataclasses
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

from ammo_search.ranking.knowledge import (
    AMMO_BRANDS,
    BULLET_TYPE_KEYWORDS,
    CALIBER_ALIASES,
    CALIBER_GRAIN_RANGES,
    PLATFORM_CALIBER_MAP,
    PURPOSE_SYNONYMS,
    QUALITY_INDICATORS,
)

logger = logging.getLogger(__name__)


class UserTier(str, Enum):
    """Caller tier; controls gated filters and response depth."""

    STANDARD = "standard"
    PREMIUM = "premium"


@dataclass
class PerformanceIntent:
    """Performance preferences extracted from the query."""

    ranking_boosts: Dict[str, float] = field(default_factory=dict)
    safety_constraints: List[str] = field(default_factory=list)
    environment: Optional[str] = None
    barrel_length: Optional[str] = None


@dataclass
class SearchIntent:
    """Structured interpretation of a free-text query."""

    original_query: str = ""
    calibers: List[str] = field(default_factory=list)
    purpose: Optional[str] = None
    grain_weights: List[int] = field(default_factory=list)
    brands: List[str] = field(default_factory=list)
    case_materials: List[str] = field(default_factory=list)
    bullet_types: List[str] = field(default_factory=list)
    quality_level: Optional[str] = None
    confidence: float = 0.0
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    in_stock_only: Optional[bool] = None
    performance: Optional[PerformanceIntent] = None
    keywords: List[str] = field(default_factory=list)

    def parsed_filters(self) -> Dict[str, Any]:
        """Summary of what was understood, for response metadata."""
        summary: Dict[str, Any] = {
            "calibers": self.calibers,
            "purpose": self.purpose,
            "grain_weights": self.grain_weights,
            "case_materials": self.case_materials,
            "quality_level": self.quality_level,
        }
        if self.min_price is not None:
            summary["min_price"] = self.min_price
        if self.max_price is not None:
            summary["max_price"] = self.max_price
        if self.in_stock_only:
            summary["in_stock_only"] = True
        if self.performance:
            summary["environment"] = self.performance.environment
            summary["barrel_length"] = self.performance.barrel_length
            summary["safety_constraints"] = self.performance.safety_constraints
            summary["preferred_bullet_types"] = self.bullet_types
        return summary


@dataclass
class ExplicitFilters:
    """Filters supplied directly by the caller. These are always hard filters."""

    category: Optional[str] = None
    purpose: Optional[str] = None
    brand: Optional[str] = None
    case_material: Optional[str] = None
    min_grain: Optional[int] = None
    max_grain: Optional[int] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    in_stock: Optional[bool] = None

    # Premium-tier filters
    bullet_type: Optional[str] = None
    pressure_rating: Optional[str] = None
    is_subsonic: Optional[bool] = None
    short_barrel_optimized: Optional[bool] = None
    low_flash: Optional[bool] = None
    match_grade: Optional[bool] = None
    min_velocity: Optional[int] = None
    max_velocity: Optional[int] = None

    TIER_GATED = (
        "bullet_type",
        "pressure_rating",
        "is_subsonic",
        "short_barrel_optimized",
        "low_flash",
        "match_grade",
        "min_velocity",
        "max_velocity",
    )

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in dataclasses.asdict(self).items() if v is not None}

    def has_any(self) -> bool:
        return bool(self.to_dict())

    def has_price_conditions(self) -> bool:
        return any(v is not None for v in (self.min_price, self.max_price, self.in_stock))

    def for_tier(self, tier: UserTier) -> Tuple["ExplicitFilters", List[str]]:
        """Drop filters the tier may not use. Returns (filters, dropped names)."""
        if tier == UserTier.PREMIUM:
            return self, []
        dropped = [name for name in self.TIER_GATED if getattr(self, name) is not None]
        if not dropped:
            return self, []
        return dataclasses.replace(self, **{name: None for name in dropped}), dropped


@dataclass(frozen=True)
class PriceConditions:
    """Price/stock conditions applied after prices are attached."""

    min_price: Optional[float] = None
    max_price: Optional[float] = None
    in_stock_only: bool = False

    @property
    def active(self) -> bool:
        return self.min_price is not None or self.max_price is not None or self.in_stock_only


class IntentParser(Protocol):
    async def parse(self, query: str) -> SearchIntent:
        ...


def merge_filters_with_intent(intent: SearchIntent, explicit: ExplicitFilters) -> SearchIntent:
    """
    Overlay explicit filters on the parsed intent. Explicit values always win.

    Changing the caliber discards grain-weight hints derived for the old
    caliber, and an explicit grain range replaces any grain hints.
    """
    merged = dataclasses.replace(
        intent,
        calibers=list(intent.calibers),
        grain_weights=list(intent.grain_weights),
        brands=list(intent.brands),
        case_materials=list(intent.case_materials),
        bullet_types=list(intent.bullet_types),
    )

    if explicit.category:
        if [explicit.category] != intent.calibers:
            merged.grain_weights = []
        merged.calibers = [explicit.category]

    if explicit.min_grain is not None or explicit.max_grain is not None:
        merged.grain_weights = []

    if explicit.purpose:
        merged.purpose = explicit.purpose
    if explicit.case_material:
        merged.case_materials = [explicit.case_material]
    if explicit.brand:
        merged.brands = [explicit.brand]
    if explicit.bullet_type:
        merged.bullet_types = [explicit.bullet_type]

    if explicit.min_price is not None:
        merged.min_price = explicit.min_price
    if explicit.max_price is not None:
        merged.max_price = explicit.max_price
    if explicit.in_stock is not None:
        merged.in_stock_only = explicit.in_stock

    return merged


def price_conditions_for(merged: SearchIntent) -> PriceConditions:
    return PriceConditions(
        min_price=merged.min_price,
        max_price=merged.max_price,
        in_stock_only=bool(merged.in_stock_only),
    )


class KeywordIntentParser:
    """Rule-based intent extraction from the fixed ammunition tables."""

    STOPWORDS = {
        "ammo", "ammunition", "for", "the", "and", "with", "rounds", "round",
        "box", "best", "good", "cheap", "under", "over", "in", "stock", "my",
    }

    PRICE_UNDER = re.compile(r"(?:under|below|less than)\s*\$?(\d+(?:\.\d+)?)")
    PRICE_OVER = re.compile(r"(?:over|above|more than)\s*\$?(\d+(?:\.\d+)?)")
    GRAIN = re.compile(r"\b(\d{2,3})\s*(?:gr|grain)\b")

    # Phrase -> ranking boost
    BOOST_PHRASES = {
        "short barrel": ("short_barrel_optimized", 1.0),
        "compact": ("short_barrel_optimized", 0.8),
        "pocket": ("short_barrel_optimized", 0.8),
        "low flash": ("low_flash", 1.0),
        "night": ("low_flash", 0.6),
        "suppressor": ("suppressor_safe", 1.0),
        "suppressed": ("suppressor_safe", 1.0),
        "subsonic": ("suppressor_safe", 0.8),
        "expansion": ("controlled_expansion", 1.0),
        "match grade": ("match_grade", 1.0),
        "precision": ("match_grade", 0.8),
    }

    SAFETY_PHRASES = {
        "apartment": "low-overpenetration",
        "overpenetration": "low-overpenetration",
        "over-penetration": "low-overpenetration",
        "low recoil": "low-recoil",
        "reduced recoil": "low-recoil",
        "barrier": "barrier-blind",
        "frangible": "frangible",
        "low flash": "low-flash",
    }

    @staticmethod
    def _contains(text: str, phrase: str) -> bool:
        return re.search(rf"(?<![\w.]){re.escape(phrase)}(?!\w)", text) is not None

    def _match_longest(self, text: str, table: Dict[str, Any]) -> List[Any]:
        found: List[Any] = []
        remaining = text
        for phrase in sorted(table, key=len, reverse=True):
            if self._contains(remaining, phrase):
                value = table[phrase]
                if value not in found:
                    found.append(value)
                remaining = remaining.replace(phrase, " ")
        return found

    async def parse(self, query: str) -> SearchIntent:
        text = re.sub(r"\s+", " ", (query or "").strip().lower())
        intent = SearchIntent(original_query=query or "")
        if not text:
            return intent

        recognised = 0

        calibers: List[str] = []
        for platform in sorted(PLATFORM_CALIBER_MAP, key=len, reverse=True):
            if self._contains(text, platform):
                calibers.extend(c for c in PLATFORM_CALIBER_MAP[platform] if c not in calibers)
        calibers.extend(c for c in self._match_longest(text, CALIBER_ALIASES) if c not in calibers)
        intent.calibers = calibers
        recognised += bool(calibers)

        purposes = self._match_longest(text, PURPOSE_SYNONYMS)
        intent.purpose = purposes[0] if purposes else None
        recognised += bool(purposes)

        intent.brands = [b for b in AMMO_BRANDS if self._contains(text, b)]
        intent.bullet_types = self._match_longest(text, BULLET_TYPE_KEYWORDS)
        recognised += bool(intent.brands) + bool(intent.bullet_types)

        if "steel case" in text or "steel-case" in text:
            intent.case_materials = ["Steel"]
        elif "brass" in text:
            intent.case_materials = ["Brass"]

        for level, indicators in QUALITY_INDICATORS.items():
            if any(self._contains(text, indicator) for indicator in indicators):
                intent.quality_level = level
                break

        intent.grain_weights = [int(g) for g in self.GRAIN.findall(text)]
        if not intent.grain_weights and ("long range" in text or "long-range" in text) and calibers:
            intent.grain_weights = CALIBER_GRAIN_RANGES.get(calibers[0], {}).get("heavy", [])

        under = self.PRICE_UNDER.search(text)
        if under:
            intent.max_price = float(under.group(1))
        over = self.PRICE_OVER.search(text)
        if over:
            intent.min_price = float(over.group(1))
        if "in stock" in text or "available now" in text:
            intent.in_stock_only = True

        boosts: Dict[str, float] = {}
        for phrase, (boost, weight) in self.BOOST_PHRASES.items():
            if phrase in text:
                boosts[boost] = max(boosts.get(boost, 0.0), weight)
        constraints = [c for phrase, c in self.SAFETY_PHRASES.items() if phrase in text]
        if boosts or constraints:
            intent.performance = PerformanceIntent(
                ranking_boosts=boosts,
                safety_constraints=list(dict.fromkeys(constraints)),
                environment="indoor" if "apartment" in text or "home" in text else None,
                barrel_length="short" if "short_barrel_optimized" in boosts else None,
            )
            recognised += 1

        intent.keywords = [
            token
            for token in re.findall(r"[\w.+&-]+", text)
            if len(token) >= 3 and token not in self.STOPWORDS
        ]
        intent.confidence = min(0.9, 0.2 * recognised)

        logger.debug(f"Parsed intent for '{query}': calibers={intent.calibers} purpose={intent.purpose}")
        return intent
