"""Tests for intent parsing, filter merging and tier gating."""

import pytest

from ammo_search.search.intent import (
    ExplicitFilters,
    KeywordIntentParser,
    SearchIntent,
    UserTier,
    merge_filters_with_intent,
    price_conditions_for,
)


class TestKeywordIntentParser:
    """Test rule-based intent extraction."""

    def setup_method(self):
        self.parser = KeywordIntentParser()

    @pytest.mark.asyncio
    async def test_caliber_purpose_and_price(self):
        intent = await self.parser.parse("9mm for home defense under $20")

        assert intent.calibers == ["9mm"]
        assert intent.purpose == "Defense"
        assert intent.max_price == 20.0
        assert intent.min_price is None
        assert intent.confidence == pytest.approx(0.4)
        assert "defense" in intent.keywords
        assert "for" not in intent.keywords

    @pytest.mark.asyncio
    async def test_platform_maps_to_caliber(self):
        intent = await self.parser.parse("AR-15 range ammo")

        assert intent.calibers == [".223/5.56"]
        assert intent.purpose == "Target"

    @pytest.mark.asyncio
    async def test_caliber_aliases(self):
        assert (await self.parser.parse("5.56 nato green tip")).calibers == [".223/5.56"]
        assert (await self.parser.parse(".308 win")).calibers == [".308/7.62x51"]
        assert (await self.parser.parse("45 acp")).calibers == [".45 ACP"]

    @pytest.mark.asyncio
    async def test_grain_brand_bullet_type_and_case(self):
        intent = await self.parser.parse("Federal 147gr hollow point brass 9mm")

        assert intent.grain_weights == [147]
        assert intent.brands == ["federal"]
        assert intent.bullet_types == ["JHP"]
        assert intent.case_materials == ["Brass"]

    @pytest.mark.asyncio
    async def test_stock_and_minimum_price(self):
        intent = await self.parser.parse("12 gauge buckshot over $15 in stock")

        assert intent.calibers == ["12 Gauge"]
        assert intent.min_price == 15.0
        assert intent.in_stock_only is True

    @pytest.mark.asyncio
    async def test_performance_intent(self):
        intent = await self.parser.parse("low flash ammo for short barrel apartment carry")

        assert intent.performance is not None
        assert intent.performance.ranking_boosts["low_flash"] == 1.0
        assert intent.performance.ranking_boosts["short_barrel_optimized"] == 1.0
        assert "low-overpenetration" in intent.performance.safety_constraints
        assert "low-flash" in intent.performance.safety_constraints
        assert intent.performance.environment == "indoor"
        assert intent.performance.barrel_length == "short"

    @pytest.mark.asyncio
    async def test_long_range_uses_heavy_grain_hints(self):
        intent = await self.parser.parse("long range .308")
        assert intent.grain_weights == [175, 180]

    @pytest.mark.asyncio
    async def test_empty_query(self):
        intent = await self.parser.parse("   ")
        assert intent.calibers == []
        assert intent.confidence == 0.0
        assert intent.keywords == []


class TestMergeFiltersWithIntent:
    """Test explicit filters overriding parsed intent."""

    def setup_method(self):
        self.intent = SearchIntent(
            original_query="9mm 147gr for defense under $25",
            calibers=["9mm"],
            purpose="Defense",
            grain_weights=[147],
            max_price=25.0,
        )

    def test_no_explicit_filters_keeps_intent(self):
        merged = merge_filters_with_intent(self.intent, ExplicitFilters())
        assert merged.calibers == ["9mm"]
        assert merged.grain_weights == [147]
        assert merged.max_price == 25.0

    def test_category_change_drops_grain_hints(self):
        merged = merge_filters_with_intent(self.intent, ExplicitFilters(category=".45 ACP"))

        assert merged.calibers == [".45 ACP"]
        assert merged.grain_weights == []
        assert self.intent.grain_weights == [147]

    def test_same_category_keeps_grain_hints(self):
        merged = merge_filters_with_intent(self.intent, ExplicitFilters(category="9mm"))
        assert merged.grain_weights == [147]

    def test_explicit_grain_range_replaces_hints(self):
        merged = merge_filters_with_intent(self.intent, ExplicitFilters(min_grain=115, max_grain=124))
        assert merged.grain_weights == []

    def test_explicit_values_win(self):
        merged = merge_filters_with_intent(
            self.intent,
            ExplicitFilters(purpose="Target", brand="Blazer", max_price=15.0, in_stock=True),
        )

        assert merged.purpose == "Target"
        assert merged.brands == ["Blazer"]
        assert merged.max_price == 15.0
        assert merged.in_stock_only is True

    def test_price_conditions(self):
        merged = merge_filters_with_intent(self.intent, ExplicitFilters(min_price=5.0))
        conditions = price_conditions_for(merged)

        assert conditions.min_price == 5.0
        assert conditions.max_price == 25.0
        assert conditions.in_stock_only is False
        assert conditions.active
        assert not price_conditions_for(SearchIntent()).active


class TestExplicitFilters:
    """Test filter helpers and tier gating."""

    def test_to_dict_skips_unset(self):
        assert ExplicitFilters(category="9mm", in_stock=False).to_dict() == {"category": "9mm", "in_stock": False}
        assert not ExplicitFilters().has_any()

    def test_standard_tier_drops_gated_filters(self):
        filters = ExplicitFilters(category="9mm", bullet_type="JHP", is_subsonic=True, min_velocity=900)

        allowed, dropped = filters.for_tier(UserTier.STANDARD)

        assert dropped == ["bullet_type", "is_subsonic", "min_velocity"]
        assert allowed.category == "9mm"
        assert allowed.bullet_type is None
        assert filters.bullet_type == "JHP"

    def test_premium_tier_keeps_everything(self):
        filters = ExplicitFilters(bullet_type="JHP", low_flash=True)
        allowed, dropped = filters.for_tier(UserTier.PREMIUM)

        assert allowed is filters
        assert dropped == []
