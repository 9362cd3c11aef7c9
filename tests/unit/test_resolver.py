"""
Unit tests for the reference resolver and the attribute registry
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from core.exceptions import ResolverConfigError
from models.reference import AttrDefinition, CleansePolicy, CleanseRuleSet, RefTableMap
from ingestion.cleansing.registry import (
    AttributeDefinitionRegistry,
    CleansePolicyBook,
    PHASE_LAST,
    select_policy,
)
from ingestion.cleansing.resolver import ReferenceResolver, SingleHop, TwoHop, build_shape


def _brand_map(**overrides):
    values = dict(
        ref_map_id=1,
        attr_cd="BRAND",
        hop1_table="brand_source_map",
        hop1_match_by="ID",
        hop1_id_col="source_brand_id",
        hop1_label_col="source_brand_nm",
        hop2_table="m_brand_g",
        hop2_join_on={"g_brand_id": "g_brand_id"},
        hop2_return_cd_col="g_brand_cd",
        hop2_return_label_col="g_brand_nm",
    )
    values.update(overrides)
    return RefTableMap(**values)


def _session_returning(row):
    session = AsyncMock()
    result = MagicMock()
    result.first.return_value = row
    session.execute.return_value = result
    return session


class TestBuildShape:

    def test_two_hop(self):
        shape = build_shape(_brand_map())

        assert isinstance(shape, TwoHop)
        assert shape.join_on == (("g_brand_id", "g_brand_id"),)
        assert shape.return_cd_col == "g_brand_cd"
        assert shape.match_by == "ID"

    def test_template_braces_are_stripped(self):
        shape = build_shape(_brand_map(hop1_table="{brand_source_map}", hop2_return_cd_col=" {g_brand_cd} "))
        assert shape.hop1_table == "brand_source_map"
        assert shape.return_cd_col == "g_brand_cd"

    def test_single_hop(self):
        ref_map = RefTableMap(
            ref_map_id=2,
            attr_cd="CATEGORY_1",
            hop1_table="m_category_g",
            hop1_id_col="g_category_cd",
            hop1_return_cols=["g_category_cd"],
        )

        shape = build_shape(ref_map)

        assert shape == SingleHop(ref_map_id=2, table="m_category_g", id_col="g_category_cd", return_col="g_category_cd")

    def test_unknown_table_rejected(self):
        with pytest.raises(ResolverConfigError):
            build_shape(_brand_map(hop1_table="pg_user"))

    def test_injected_column_rejected(self):
        with pytest.raises(ResolverConfigError):
            build_shape(_brand_map(hop2_return_cd_col="g_brand_cd; DROP TABLE m_product"))

    def test_unknown_join_column_rejected(self):
        with pytest.raises(ResolverConfigError):
            build_shape(_brand_map(hop2_join_on={"g_brand_id": "nope"}))


class TestReferenceResolver:

    @pytest.mark.asyncio
    async def test_resolves_and_caches(self):
        session = _session_returning(("ROLEX", "Rolex"))
        resolver = ReferenceResolver(session, company_cd="KM")
        shape = build_shape(_brand_map())

        assert await resolver.resolve(shape, " 0123 ", None) == ("ROLEX", "Rolex")
        assert await resolver.resolve(shape, "0123", "") == ("ROLEX", "Rolex")
        assert session.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_miss_returns_none_pair(self):
        resolver = ReferenceResolver(_session_returning(None))
        shape = build_shape(_brand_map())

        assert await resolver.resolve(shape, "9999", None) == (None, None)

    @pytest.mark.asyncio
    async def test_missing_id_never_queries(self):
        session = _session_returning(("ROLEX", "Rolex"))
        resolver = ReferenceResolver(session)

        assert await resolver.resolve(build_shape(_brand_map()), None, "Rolex") == (None, None)
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_auto_mode_requires_id_and_label(self):
        session = _session_returning(("ROLEX", "Rolex"))
        resolver = ReferenceResolver(session)
        shape = build_shape(_brand_map(hop1_match_by="auto"))

        assert await resolver.resolve(shape, "0123", None) == (None, None)
        assert await resolver.resolve(shape, "0123", "Rolex") == ("ROLEX", "Rolex")

    @pytest.mark.asyncio
    async def test_unknown_match_mode_fails_closed(self):
        session = _session_returning(("ROLEX", "Rolex"))
        resolver = ReferenceResolver(session)
        shape = build_shape(_brand_map(hop1_match_by="FUZZY"))

        assert await resolver.resolve(shape, "0123", "Rolex") == (None, None)
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_join_fails_closed(self):
        session = _session_returning(("ROLEX", "Rolex"))
        resolver = ReferenceResolver(session)
        shape = build_shape(_brand_map(hop2_join_on={}))

        assert await resolver.resolve(shape, "0123", None) == (None, None)
        session.execute.assert_not_awaited()


def _policy(policy_id, step_no=1, brand=None, category=None):
    return CleansePolicy(
        policy_id=policy_id,
        rule_set_id=1,
        attr_cd="COLOR",
        data_type="LIST",
        step_no=step_no,
        matcher_kind="ID_EXACT",
        brand_scope=brand,
        category_scope=category,
    )


class TestSelectPolicy:

    def test_scoped_match_wins(self):
        common = _policy(1, step_no=1)
        rolex = _policy(2, step_no=2, brand="ROLEX")

        assert select_policy([common, rolex], brand_cd="rolex") is rolex

    def test_falls_back_to_first_common(self):
        first = _policy(1, step_no=1)
        second = _policy(2, step_no=2)
        omega = _policy(3, step_no=1, brand="OMEGA")

        assert select_policy([second, omega, first], brand_cd="ROLEX") is first

    def test_step_zero_sorts_last(self):
        unordered = _policy(1, step_no=0)
        ordered = _policy(2, step_no=5)

        assert select_policy([unordered, ordered]) is ordered

    def test_both_scopes_must_match(self):
        scoped = _policy(1, brand="ROLEX", category="WATCH")

        assert select_policy([scoped], brand_cd="ROLEX", category_cd="BAG") is None
        assert select_policy([scoped], brand_cd="ROLEX", category_cd="WATCH") is scoped

    def test_empty_chain(self):
        assert select_policy([]) is None


class TestRegistry:

    def _registry(self):
        return AttributeDefinitionRegistry([
            AttrDefinition(attr_cd="BRAND", attr_nm="Brand", data_type="REF", cleanse_phase=1,
                           is_golden_product=True, target_column="g_brand_id", is_golden_attr_eav=False),
            AttrDefinition(attr_cd="COLOR", attr_nm="Color", data_type="LIST", select_type="single",
                           cleanse_phase=2, is_golden_product=False, is_golden_attr_eav=True),
            AttrDefinition(attr_cd="NOTE", attr_nm="Note", data_type="TEXT", cleanse_phase=None,
                           is_golden_product=True, target_column="", is_golden_attr_eav=True),
        ])

    def test_lookups(self):
        registry = self._registry()

        assert len(registry) == 3
        assert "COLOR" in registry
        assert registry.data_type("COLOR") == "LIST"
        assert registry.data_type("MISSING") is None
        assert registry.is_single_select("COLOR")
        assert not registry.is_single_select("BRAND")

    def test_master_and_eav_routing(self):
        registry = self._registry()

        assert registry.master_column("BRAND") == "g_brand_id"
        assert registry.master_column("COLOR") is None
        assert registry.master_column("NOTE") is None
        assert registry.feeds_eav("COLOR")
        assert not registry.feeds_eav("BRAND")

    def test_cleanse_phase(self):
        registry = self._registry()

        assert registry.cleanse_phase("BRAND") == 1
        assert registry.cleanse_phase("NOTE") == PHASE_LAST
        assert registry.cleanse_phase("MISSING") == PHASE_LAST


def test_policy_book_rule_version():
    rule_set = CleanseRuleSet(rule_set_id=1, rule_version=" v2025.10 ")
    policy = _policy(1)
    orphan = CleansePolicy(policy_id=9, rule_set_id=7, attr_cd="COLOR", data_type="LIST", matcher_kind="ID_EXACT")

    book = CleansePolicyBook([policy, orphan], rule_sets={1: rule_set}, list_groups={"COLOR": 11})

    assert book.rule_version(policy) == "v2025.10"
    assert book.rule_version(orphan) == "7"
    assert book.rule_version(None) == "UNKNOWN"
    assert book.list_group_id("COLOR") == 11
    assert [p.policy_id for p in book.chain("COLOR")] == [1, 9]
