"""Tests for tier projection, outbound links and consumer safety."""

from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import pytest

from ammo_search.errors import ConsumerSafetyViolation
from ammo_search.pricing.resolver import VisiblePrice
from ammo_search.pricing.signal import ContextBand, PriceSignal
from ammo_search.ranking.scorer import RankingResult, ScoreBreakdown
from ammo_search.search.formatting import (
    OutboundLinkSigner,
    SearchHit,
    assert_consumer_safe,
    find_forbidden_field,
    project_hit,
)
from ammo_search.search.intent import UserTier


def make_product(**kwargs):
    attrs = dict(
        id=7,
        name="Speer Gold Dot 9mm 124gr +P",
        description="Bonded hollow point",
        category="9mm",
        brand="Speer",
        image_url=None,
        upc="076683539720",
        caliber="9mm",
        grain_weight=124,
        case_material="Brass",
        purpose="Defense",
        round_count=50,
        bullet_type="BJHP",
        pressure_rating="+P",
        muzzle_velocity_fps=1220,
        is_subsonic=False,
        short_barrel_optimized=None,
        suppressor_safe=None,
        low_flash=True,
        low_recoil=None,
        controlled_expansion=True,
        match_grade=None,
        factory_new=True,
        data_source="manufacturer",
        data_confidence=Decimal("0.85"),
    )
    attrs.update(kwargs)
    return SimpleNamespace(**attrs)


def make_price(value="31.50", in_stock=True, url="https://shop.example.com/p/7") -> VisiblePrice:
    return VisiblePrice(
        price_id=3,
        product_id=7,
        retailer_id=2,
        retailer_name="Example Ammo",
        retailer_tier="PREMIUM",
        price=Decimal(value),
        raw_price=Decimal(value),
        currency="USD",
        in_stock=in_stock,
        observed_at=datetime(2024, 6, 1),
        link_confidence=Decimal("0.95"),
        url=url,
        shipping_cost=Decimal("9.99"),
    )


def make_hit() -> SearchHit:
    return SearchHit(
        product=make_product(),
        prices=[make_price()],
        relevance=0.8234,
        price_signal=PriceSignal(
            relative_price_pct=-12.5,
            position_in_range=0.25,
            context_band=ContextBand.LOW,
            window_days=30,
            sample_count=40,
            as_of="2024-06-01T00:00:00Z",
        ),
        ranking=RankingResult(
            final_score=71.2,
            breakdown=ScoreBreakdown(base_relevance=32.936, performance_match=12.0, price_context=15.0, safety_bonus=0.0),
            badges=["+P", "bonded"],
            explanation="Priced in the lower part of the recent range.",
            internal={"retailer_confidence_hint": "standard", "shipping_cost": 9.99},
        ),
    )


class TestProjection:
    """Test per-tier output shapes."""

    def setup_method(self):
        self.signer = OutboundLinkSigner(secret="s3cret", base_url="https://ammo.example.com/")

    def test_standard_tier(self):
        output = project_hit(make_hit(), UserTier.STANDARD, self.signer)

        assert output["price"] == 31.5
        assert output["price_per_round"] == 0.63
        assert output["relevance_score"] == 82.3
        assert output["price_context"] == {"context_band": "LOW"}
        for premium_only in ("ranking", "bullet_type", "data_confidence", "low_flash"):
            assert premium_only not in output

    def test_premium_tier_adds_fields(self):
        standard = project_hit(make_hit(), UserTier.STANDARD, self.signer)
        premium = project_hit(make_hit(), UserTier.PREMIUM, self.signer)

        for key, value in standard.items():
            if key != "price_context":
                assert premium[key] == value
        assert premium["price_context"]["position_in_range"] == 0.25
        assert premium["price_context"]["meta"]["sample_count"] == 40
        assert premium["bullet_type"] == "BJHP"
        assert premium["data_confidence"] == 0.85
        assert "suppressor_safe" not in premium
        assert premium["ranking"]["breakdown"]["base_relevance"] == 32.94
        assert premium["ranking"]["badges"] == ["+P", "bonded"]

    def test_internal_hints_never_projected(self):
        output = project_hit(make_hit(), UserTier.PREMIUM, self.signer)

        assert find_forbidden_field(output) is None
        assert "internal" not in output["ranking"]
        assert "shipping_cost" not in str(output)

    def test_unpriced_hit(self):
        hit = SearchHit(product=make_product(round_count=None))
        output = project_hit(hit, UserTier.STANDARD, self.signer)

        assert output["price"] is None
        assert output["price_per_round"] is None
        assert output["prices"] == []
        assert "price_context" not in output

    def test_price_per_round_falls_back_to_total(self):
        hit = SearchHit(product=make_product(round_count=None), prices=[make_price("20.00")])
        assert hit.sort_price_per_round == 20.0


class TestOutboundLinkSigner:
    """Test outbound link signing."""

    def test_sign_and_verify(self):
        signer = OutboundLinkSigner(secret="s3cret", base_url="https://ammo.example.com/")

        signed = signer.sign("https://shop.example.com/p/7", 2, 7)
        parsed = urlparse(signed)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        assert parsed.path == "/out"
        assert signed.startswith("https://ammo.example.com/out?")
        assert params["u"] == "https://shop.example.com/p/7"
        assert len(params["sig"]) == 64
        assert signer.verify(params["u"], params["sig"], params["rid"], params["pid"])
        assert not signer.verify("https://evil.example.com", params["sig"], params["rid"], params["pid"])
        assert not signer.verify(params["u"], params["sig"], "3", params["pid"])

    def test_unsigned_without_secret(self):
        signer = OutboundLinkSigner(secret="", base_url="https://ammo.example.com")

        assert signer.sign("https://shop.example.com/p/7", 2, 7) is None
        assert not signer.verify("https://shop.example.com/p/7", "0" * 64)

    def test_no_url(self):
        assert OutboundLinkSigner(secret="s3cret").sign(None) is None


class TestConsumerSafety:
    """Test the recursive forbidden-field scan."""

    def test_nested_paths(self):
        payload = {"products": [{"id": 1}, {"id": 2, "ranking": {"retailerTrust": 0.9}}]}
        assert find_forbidden_field(payload) == "$.products[1].ranking.retailerTrust"

    def test_clean_payload(self):
        assert find_forbidden_field({"products": [{"price_context": {"context_band": "LOW"}}]}) is None

    def test_assert_raises(self):
        with pytest.raises(ConsumerSafetyViolation) as exc_info:
            assert_consumer_safe({"meta": [{"_internal": {}}]})
        assert exc_info.value.path == "$.meta[0]._internal"
