"""Tests for predicate composition and search queries."""

import pytest

from ammo_search.search.intent import ExplicitFilters, SearchIntent, UserTier, merge_filters_with_intent
from ammo_search.search.predicate import (
    AllOf,
    AnyOf,
    Condition,
    Op,
    conditions_count,
    describe,
)
from ammo_search.search.query_builder import SearchQueryBuilder, expand_caliber_filter


class TestPredicate:
    """Test the typed predicate tree."""

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError):
            Condition("retailer_trust", Op.EQUALS, "high")

    def test_conditions_count_and_describe(self):
        predicate = AllOf(
            (
                AnyOf((Condition("caliber_norm", Op.CONTAINS, ".223"), Condition("caliber_norm", Op.CONTAINS, "5.56"))),
                Condition("grain_weight", Op.GTE, 55),
            )
        )

        assert conditions_count(predicate) == 3
        assert describe(predicate) == {
            "all_of": [
                {
                    "any_of": [
                        {"field": "caliber_norm", "op": "contains", "value": ".223"},
                        {"field": "caliber_norm", "op": "contains", "value": "5.56"},
                    ]
                },
                {"field": "grain_weight", "op": "gte", "value": 55},
            ]
        }


class TestSearchQueryBuilder:
    """Test the search query builder."""

    def setup_method(self):
        self.builder = SearchQueryBuilder()

    def test_normalize_query(self):
        assert self.builder.normalize_query("  9mm   hollow  point ") == "9mm hollow point"
        assert self.builder.normalize_query("") == ""
        assert len(self.builder.normalize_query("a" * 600)) == 500

    def test_expand_caliber_filter(self):
        assert expand_caliber_filter(".223/5.56") == [".223", "5.56"]
        assert expand_caliber_filter("9mm") == ["9mm"]
        assert expand_caliber_filter(" / ") == []

    def test_caliber_is_hard_filter_but_intent_attributes_are_not(self):
        intent = SearchIntent(calibers=["9mm"], purpose="Defense", brands=["federal"], grain_weights=[147])
        merged = merge_filters_with_intent(intent, ExplicitFilters())

        predicate = self.builder.compose_predicate(intent, merged, ExplicitFilters())

        assert predicate == AllOf((AnyOf((Condition("caliber_norm", Op.CONTAINS, "9mm"),)),))

    def test_explicit_filters_become_hard_filters(self):
        intent = SearchIntent(calibers=["9mm"])
        explicit = ExplicitFilters(purpose="Defense", brand="Speer", min_grain=115, max_grain=147, is_subsonic=True)
        merged = merge_filters_with_intent(intent, explicit)

        predicate = self.builder.compose_predicate(intent, merged, explicit)
        leaves = predicate.conditions[1:]

        assert Condition("purpose", Op.EQUALS, "Defense") in leaves
        assert Condition("brand", Op.CONTAINS, "Speer") in leaves
        assert Condition("grain_weight", Op.GTE, 115) in leaves
        assert Condition("grain_weight", Op.LTE, 147) in leaves
        assert Condition("is_subsonic", Op.IS, True) in leaves

    def test_keyword_condition_without_caliber(self):
        intent = SearchIntent(keywords=["tula", "steel"])
        predicate = self.builder.compose_predicate(intent, intent, ExplicitFilters())

        keyword_group = predicate.conditions[0]
        assert isinstance(keyword_group, AnyOf)
        assert len(keyword_group.conditions) == 6

    def test_empty_query_matches_everything(self):
        predicate = self.builder.compose_predicate(SearchIntent(), SearchIntent(), ExplicitFilters())
        assert predicate == AllOf(())

    def test_facet_columns_depend_on_tier(self):
        _, standard = self.builder.build_facet_query(AllOf(()), UserTier.STANDARD, 100)
        _, premium = self.builder.build_facet_query(AllOf(()), UserTier.PREMIUM, 100)

        assert "bullet_types" not in standard
        assert premium[: len(standard)] == standard
        assert {"bullet_types", "pressure_ratings", "is_subsonic"} <= set(premium)

    def test_query_hash_is_stable(self):
        first = self.builder.calculate_query_hash(q="9mm", page=1, filters={"a": 1, "b": 2})
        second = self.builder.calculate_query_hash(page=1, filters={"b": 2, "a": 1}, q="9mm")
        other = self.builder.calculate_query_hash(q="9mm", page=2)

        assert first == second
        assert first != other
        assert len(first) == 16


class TestPredicateExecution:
    """Test compiled predicates against the database."""

    def setup_method(self):
        self.builder = SearchQueryBuilder()

    async def seed(self, catalog):
        await catalog.product("PMC X-TAC 5.56 55gr", caliber="5.56 NATO", brand="PMC", grain_weight=55, purpose="Target")
        await catalog.product("Hornady .223 Rem 75gr", caliber=".223 Remington", brand="Hornady", grain_weight=75, purpose="Target")
        await catalog.product("Federal 9mm 124gr HST", caliber="9mm", brand="Federal", grain_weight=124, purpose="Defense")
        await catalog.product("Speer 100% off 9mm", caliber="9mm", brand="Speer", grain_weight=115, purpose="Target")

    async def names(self, db, predicate):
        result = await db.execute(self.builder.build_relational_query(predicate, 0, 50))
        return {p.name for p in result.scalars().all()}

    @pytest.mark.asyncio
    async def test_compound_caliber_matches_either_part(self, db, catalog):
        await self.seed(catalog)
        intent = SearchIntent()
        explicit = ExplicitFilters(category=".223/5.56")
        merged = merge_filters_with_intent(intent, explicit)

        names = await self.names(db, self.builder.compose_predicate(intent, merged, explicit))

        assert names == {"PMC X-TAC 5.56 55gr", "Hornady .223 Rem 75gr"}

    @pytest.mark.asyncio
    async def test_monotonic_narrowing(self, db, catalog):
        await self.seed(catalog)
        intent = SearchIntent(calibers=[".223/5.56"], keywords=["rifle"])

        broad = ExplicitFilters(purpose="target")
        narrow = ExplicitFilters(purpose="target", brand="hornady", min_grain=60)

        broad_names = await self.names(
            db, self.builder.compose_predicate(intent, merge_filters_with_intent(intent, broad), broad)
        )
        narrow_names = await self.names(
            db, self.builder.compose_predicate(intent, merge_filters_with_intent(intent, narrow), narrow)
        )

        assert narrow_names <= broad_names
        assert narrow_names == {"Hornady .223 Rem 75gr"}

    @pytest.mark.asyncio
    async def test_contains_escapes_wildcards(self, db, catalog):
        await self.seed(catalog)
        predicate = AllOf((Condition("name", Op.CONTAINS, "100%"),))
        assert await self.names(db, predicate) == {"Speer 100% off 9mm"}

        predicate = AllOf((Condition("name", Op.CONTAINS, "_"),))
        assert await self.names(db, predicate) == set()

    @pytest.mark.asyncio
    async def test_count_and_facets(self, db, catalog):
        await self.seed(catalog)
        predicate = AllOf((Condition("caliber_norm", Op.CONTAINS, "9mm"),))

        count = (await db.execute(self.builder.build_count_query(predicate))).scalar()
        query, names = self.builder.build_facet_query(predicate, UserTier.STANDARD, 100)
        rows = (await db.execute(query)).all()

        assert count == 2
        assert len(rows) == 2
        assert names[0] == "calibers"
