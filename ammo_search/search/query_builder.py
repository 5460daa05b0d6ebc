"""
Search query planning.

Provides functionality to:
- Normalize free-text queries and hash search parameters for caching
- Expand compound caliber filters (".223/5.56")
- Compose the typed retrieval predicate from merged intent and explicit filters
- Build the relational retrieval, count and facet queries
"""

import hashlib
import json
import logging
import re
from typing import Any, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.sql import Select

from ammo_search.db.models import Product
from ammo_search.search.intent import ExplicitFilters, SearchIntent, UserTier
from ammo_search.search.predicate import AllOf, AnyOf, Condition, Op, Predicate, to_sql

logger = logging.getLogger(__name__)

# Facet name -> product column, in output order
FACET_COLUMNS = [
    ("calibers", Product.caliber),
    ("grain_weights", Product.grain_weight),
    ("case_materials", Product.case_material),
    ("purposes", Product.purpose),
    ("brands", Product.brand),
    ("categories", Product.category),
]
PREMIUM_FACET_COLUMNS = [
    ("bullet_types", Product.bullet_type),
    ("pressure_ratings", Product.pressure_rating),
    ("is_subsonic", Product.is_subsonic),
]


def expand_caliber_filter(caliber: str) -> List[str]:
    """Split compound calibers such as '.223/5.56' into their parts."""
    return [part.strip() for part in caliber.split("/") if part.strip()]


class SearchQueryBuilder:
    """Builds predicates and queries for product search."""

    MAX_QUERY_LENGTH = 500
    MAX_KEYWORDS = 10

    def __init__(self):
        self.logger = logger

    def normalize_query(self, query: str) -> str:
        """Normalize search query by trimming and collapsing whitespace."""
        if not query:
            return ""

        normalized = re.sub(r"\s+", " ", query.strip())

        if len(normalized) > self.MAX_QUERY_LENGTH:
            self.logger.warning(f"Query too long, truncating: {len(normalized)} chars")
            normalized = normalized[: self.MAX_QUERY_LENGTH]

        return normalized

    def caliber_condition(self, calibers: List[str]) -> Optional[AnyOf]:
        parts: List[str] = []
        for caliber in calibers:
            parts.extend(p for p in expand_caliber_filter(caliber) if p not in parts)
        if not parts:
            return None
        return AnyOf(tuple(Condition("caliber_norm", Op.CONTAINS, p) for p in parts))

    def keyword_condition(self, keywords: List[str]) -> Optional[AnyOf]:
        words = list(dict.fromkeys(k for k in keywords if k))[: self.MAX_KEYWORDS]
        if not words:
            return None
        return AnyOf(
            tuple(
                Condition(field, Op.CONTAINS, word)
                for word in words
                for field in ("name", "description", "brand")
            )
        )

    def compose_predicate(
        self, intent: SearchIntent, merged: SearchIntent, explicit: ExplicitFilters
    ) -> AllOf:
        """
        Compose the retrieval predicate.

        Caliber is always a hard filter when known. Every other attribute is a
        hard filter only when the caller supplied it explicitly; intent-derived
        values for those fields stay soft ranking signals.

        The keyword condition depends only on the parsed intent, so adding
        explicit filters can only narrow the matching set.
        """
        conditions: List[Predicate] = []

        caliber = self.caliber_condition(merged.calibers)
        if caliber is not None:
            conditions.append(caliber)

        if not intent.calibers:
            keywords = self.keyword_condition(intent.keywords)
            if keywords is not None:
                conditions.append(keywords)

        if explicit.purpose:
            conditions.append(Condition("purpose", Op.EQUALS, explicit.purpose))
        if explicit.case_material:
            conditions.append(Condition("case_material", Op.EQUALS, explicit.case_material))
        if explicit.brand:
            conditions.append(Condition("brand", Op.CONTAINS, explicit.brand))
        if explicit.min_grain is not None:
            conditions.append(Condition("grain_weight", Op.GTE, explicit.min_grain))
        if explicit.max_grain is not None:
            conditions.append(Condition("grain_weight", Op.LTE, explicit.max_grain))

        if explicit.bullet_type:
            conditions.append(Condition("bullet_type", Op.EQUALS, explicit.bullet_type))
        if explicit.pressure_rating:
            conditions.append(Condition("pressure_rating", Op.EQUALS, explicit.pressure_rating))
        for flag in ("is_subsonic", "short_barrel_optimized", "low_flash", "match_grade"):
            value = getattr(explicit, flag)
            if value is not None:
                conditions.append(Condition(flag, Op.IS, value))
        if explicit.min_velocity is not None:
            conditions.append(Condition("muzzle_velocity_fps", Op.GTE, explicit.min_velocity))
        if explicit.max_velocity is not None:
            conditions.append(Condition("muzzle_velocity_fps", Op.LTE, explicit.max_velocity))

        return AllOf(tuple(conditions))

    def build_relational_query(self, predicate: Predicate, skip: int, take: int) -> Select:
        """Newest products first, id as a stable tie-break."""
        return (
            select(Product)
            .where(to_sql(predicate))
            .order_by(Product.created_at.desc(), Product.id)
            .offset(skip)
            .limit(take)
        )

    def build_count_query(self, predicate: Predicate) -> Select:
        return select(func.count()).select_from(Product).where(to_sql(predicate))

    def build_facet_query(
        self, predicate: Predicate, tier: UserTier, row_limit: int
    ) -> Tuple[Select, List[str]]:
        """One bounded query returning every facet column for matching rows."""
        columns = list(FACET_COLUMNS)
        if tier == UserTier.PREMIUM:
            columns.extend(PREMIUM_FACET_COLUMNS)
        query = (
            select(*(column for _, column in columns))
            .where(to_sql(predicate))
            .limit(row_limit)
        )
        return query, [name for name, _ in columns]

    def calculate_query_hash(self, **params: Any) -> str:
        """Generate cache key from search parameters."""
        clean_params = {k: v for k, v in params.items() if v is not None}
        param_str = json.dumps(clean_params, sort_keys=True, default=str)
        return hashlib.md5(param_str.encode()).hexdigest()[:16]
