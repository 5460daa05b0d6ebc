"""
Consumer-facing projection of search results.

`project_hit` is the only place a result becomes output. Both tiers go
through it; the premium tier only adds fields. Internal hints on the
ranking result are never read here, and `assert_consumer_safe` checks the
final payload for internal field names at any depth.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence
from urllib.parse import urlencode

from ammo_search.config import settings
from ammo_search.errors import ConsumerSafetyViolation
from ammo_search.pricing.resolver import VisiblePrice
from ammo_search.pricing.signal import PriceSignal, select_reference_price
from ammo_search.ranking.scorer import RankingResult
from ammo_search.search.intent import UserTier

logger = logging.getLogger(__name__)

FORBIDDEN_FIELDS = frozenset(
    {
        "retailerConfidenceHint",
        "retailer_confidence_hint",
        "brandDataCompletenessHint",
        "brand_data_completeness_hint",
        "retailerTrust",
        "retailer_trust",
        "brandQuality",
        "brand_quality",
        "_internal",
        "bestValueScore",
        "best_value_score",
        "dealScore",
        "deal_score",
        "valueVerdict",
        "value_verdict",
    }
)

PREMIUM_PRODUCT_FIELDS = [
    "bullet_type",
    "pressure_rating",
    "muzzle_velocity_fps",
    "is_subsonic",
    "short_barrel_optimized",
    "suppressor_safe",
    "low_flash",
    "low_recoil",
    "controlled_expansion",
    "match_grade",
    "factory_new",
    "data_source",
]


@dataclass
class SearchHit:
    """Canonical internal representation of one search result."""

    product: Any
    prices: List[VisiblePrice] = field(default_factory=list)
    relevance: Optional[float] = None
    link_confidence: float = 0.0
    price_signal: Optional[PriceSignal] = None
    ranking: Optional[RankingResult] = None

    @property
    def reference_price(self) -> Optional[VisiblePrice]:
        return select_reference_price(self.prices)

    @property
    def sort_price_per_round(self) -> Optional[float]:
        """Lowest in-stock (else lowest) price per round; total price if round count unknown."""
        reference = self.reference_price
        if reference is None:
            return None
        round_count = self.product.round_count
        if round_count and round_count > 0:
            return float(reference.price) / round_count
        return float(reference.price)


def find_forbidden_field(payload: Any, path: str = "$") -> Optional[str]:
    """Return the path of the first forbidden key found, scanning every dict and list."""
    if isinstance(payload, Mapping):
        for key, value in payload.items():
            child = f"{path}.{key}"
            if key in FORBIDDEN_FIELDS:
                return child
            found = find_forbidden_field(value, child)
            if found:
                return found
    elif isinstance(payload, (list, tuple)):
        for index, item in enumerate(payload):
            found = find_forbidden_field(item, f"{path}[{index}]")
            if found:
                return found
    return None


def assert_consumer_safe(payload: Any) -> None:
    path = find_forbidden_field(payload)
    if path:
        logger.error(f"Consumer safety violation at {path}")
        raise ConsumerSafetyViolation(path)


class OutboundLinkSigner:
    """Signs outbound retailer links so the redirect endpoint can trust them."""

    def __init__(self, secret: Optional[str] = None, base_url: Optional[str] = None):
        self.secret = settings.outbound_link_secret if secret is None else secret
        self.base_url = (base_url or settings.public_app_url).rstrip("/")

    @staticmethod
    def _canonical(params: Sequence[tuple]) -> str:
        return "&".join(f"{k}={v}" for k, v in params)

    def _signature(self, params: Sequence[tuple]) -> str:
        return hmac.new(
            self.secret.encode(), self._canonical(params).encode(), hashlib.sha256
        ).hexdigest()

    @staticmethod
    def _params(url: str, retailer_id: Any = None, product_id: Any = None) -> List[tuple]:
        params = [("u", url)]
        if retailer_id is not None:
            params.append(("rid", str(retailer_id)))
        if product_id is not None:
            params.append(("pid", str(product_id)))
        return params

    def sign(self, url: Optional[str], retailer_id: Any = None, product_id: Any = None) -> Optional[str]:
        """Build the signed redirect URL, or None when signing is not configured."""
        if not self.secret or not url:
            return None
        params = self._params(url, retailer_id, product_id)
        return f"{self.base_url}/out?{urlencode(params + [('sig', self._signature(params))])}"

    def verify(self, url: str, signature: str, retailer_id: Any = None, product_id: Any = None) -> bool:
        if not self.secret:
            return False
        expected = self._signature(self._params(url, retailer_id, product_id))
        return hmac.compare_digest(expected, signature)


def _number(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def project_price(price: VisiblePrice, product_id: Any, signer: OutboundLinkSigner) -> Dict[str, Any]:
    return {
        "id": price.price_id,
        "price": float(price.price),
        "currency": price.currency,
        "url": price.url,
        "out_url": signer.sign(price.url, price.retailer_id, product_id),
        "in_stock": price.in_stock,
        "retailer": {
            "id": price.retailer_id,
            "name": price.retailer_name,
            "tier": price.retailer_tier,
            "logo_url": price.retailer_logo_url,
        },
    }


def price_context(signal: Optional[PriceSignal], tier: UserTier) -> Optional[Dict[str, Any]]:
    if signal is None:
        return None
    if tier != UserTier.PREMIUM:
        return {"context_band": signal.context_band.value}
    return {
        "context_band": signal.context_band.value,
        "relative_price_pct": signal.relative_price_pct,
        "position_in_range": signal.position_in_range,
        "meta": signal.meta,
    }


def project_hit(hit: SearchHit, tier: UserTier, signer: OutboundLinkSigner) -> Dict[str, Any]:
    """Project one result for a caller tier."""
    product = hit.product
    reference = hit.reference_price

    output: Dict[str, Any] = {
        "id": product.id,
        "name": product.name,
        "description": product.description,
        "category": product.category,
        "brand": product.brand,
        "image_url": product.image_url,
        "upc": product.upc,
        "caliber": product.caliber,
        "grain_weight": product.grain_weight,
        "case_material": product.case_material,
        "purpose": product.purpose,
        "round_count": product.round_count,
        "relevance_score": round(hit.relevance * 100, 1) if hit.relevance is not None else None,
        "price": float(reference.price) if reference is not None else None,
        "price_per_round": (
            round(hit.sort_price_per_round, 4)
            if reference is not None and product.round_count
            else None
        ),
        "prices": [project_price(p, product.id, signer) for p in hit.prices],
    }

    context = price_context(hit.price_signal, tier)
    if context is not None:
        output["price_context"] = context

    if tier == UserTier.PREMIUM:
        for name in PREMIUM_PRODUCT_FIELDS:
            value = getattr(product, name, None)
            if value is not None:
                output[name] = value
        if product.data_confidence is not None:
            output["data_confidence"] = _number(product.data_confidence)
        if hit.ranking is not None:
            output["ranking"] = {
                "final_score": hit.ranking.final_score,
                "breakdown": {
                    "base_relevance": round(hit.ranking.breakdown.base_relevance, 2),
                    "performance_match": round(hit.ranking.breakdown.performance_match, 2),
                    "price_context": round(hit.ranking.breakdown.price_context, 2),
                    "safety_bonus": round(hit.ranking.breakdown.safety_bonus, 2),
                },
                "badges": list(hit.ranking.badges),
                "explanation": hit.ranking.explanation,
            }

    return output
