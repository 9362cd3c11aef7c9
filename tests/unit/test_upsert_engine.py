"""
Unit tests for the per-product upsert flow (database access mocked)
"""

from decimal import Decimal

import pytest
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy.exc import IntegrityError, OperationalError

from core.error_codes import ErrorCode
from core.exceptions import DatabaseConnectionError, UpsertError
from models.base import PipelineStep
from models.product import Product
from models.reference import AttrDefinition
from ingestion.cleansing.registry import AttributeDefinitionRegistry
from ingestion.upsert.counters import UpsertCounters
from ingestion.upsert.eav import EavSyncStats
from ingestion.upsert.engine import UpsertAttribute, UpsertEngine, UpsertRecord
from ingestion.upsert.events import EventUpsertEngine


def _scalar(value):
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    return result


def _definition(attr_cd, data_type, target_column=None, eav=False):
    return AttrDefinition(
        attr_cd=attr_cd,
        attr_nm=attr_cd.title(),
        data_type=data_type,
        target_column=target_column,
        is_golden_product=target_column is not None,
        is_golden_attr_eav=eav,
    )


def _attr(attr_cd, attr_seq=1, status="OK", reasons=None, **values):
    return UpsertAttribute(
        attr_cd=attr_cd,
        attr_seq=attr_seq,
        data_type=None,
        source_raw=values.get("value_text") or values.get("value_cd"),
        value_text=values.get("value_text"),
        value_num=values.get("value_num"),
        value_date=values.get("value_date"),
        value_cd=values.get("value_cd"),
        quality_status=status,
        quality_detail={"result": status, "reason_cds": reasons or []},
        rule_version="2025.10",
    )


def _record(*attributes):
    return UpsertRecord(temp_row_id="row-1", line_no=1, attributes=[_attr("PRODUCT_CD", value_text="P001"), *attributes])


def _existing_product():
    return Product(
        g_product_id=2001,
        g_product_cd="1000000002001",
        group_company_id=1,
        source_product_cd="P001",
        g_category_id=1,
        display_price_incl_tax=Decimal("1000.00"),
        is_active=True,
    )


@pytest.fixture
def engine():
    session = MagicMock()
    session.execute = AsyncMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()

    upsert = UpsertEngine(session, "KM-PRODUCT-test", "KM", management_company_cd="KM")
    upsert.registry = AttributeDefinitionRegistry([
        _definition("PRODUCT_CD", "TEXT"),
        _definition("CATEGORY_1", "REF", target_column="g_category_id"),
        _definition("PRICE", "NUM", target_column="display_price_incl_tax"),
        _definition("CURRENCY", "TEXT", target_column="currency_cd"),
        _definition("MODEL_NAME", "TEXT", eav=True),
    ])
    upsert.company_id = 1
    upsert._category_ids = {"WATCH": 1}
    upsert.identity.ensure_identity = AsyncMock(return_value=(2001, False))
    upsert.product_eav.sync = AsyncMock(return_value=EavSyncStats())
    upsert.errors = MagicMock()
    return upsert


def _recorded_codes(engine):
    return [call.args[1] for call in engine.errors.add.call_args_list]


class TestMasterColumns:

    @pytest.mark.asyncio
    async def test_warn_number_without_typed_value_is_left_out(self, engine):
        record = _record(
            _attr("PRICE", status="WARN", reasons=["MISSING_CLEANSE_POLICY"], value_text="¥1,200"),
            _attr("CURRENCY", value_text="JPY"),
        )

        columns = await engine.build_master_columns(record)

        assert "display_price_incl_tax" not in columns
        assert columns["currency_cd"] == ("TEXT", "JPY")

    @pytest.mark.asyncio
    async def test_reconciled_value_feeds_the_master(self, engine):
        record = _record(
            _attr("CURRENCY", attr_seq=1, status="WARN", reasons=["SINGLE_VALUE_CONFLICT"], value_text="USD"),
            _attr("CURRENCY", attr_seq=2, value_text="JPY"),
        )

        columns = await engine.build_master_columns(record)

        assert columns["currency_cd"] == ("TEXT", "JPY")

    @pytest.mark.asyncio
    async def test_lowest_seq_wins_without_conflict(self, engine):
        record = _record(
            _attr("PRICE", attr_seq=1, value_num=Decimal("1200")),
            _attr("PRICE", attr_seq=2, value_num=Decimal("1300")),
        )

        columns = await engine.build_master_columns(record)

        assert columns["display_price_incl_tax"] == ("NUM", Decimal("1200"))


class TestUpsertRecord:

    @pytest.mark.asyncio
    async def test_warn_price_does_not_fail_the_product(self, engine):
        product = _existing_product()
        engine.session.execute.side_effect = [_scalar(product)]
        counters = UpsertCounters()

        await engine.upsert_record(
            _record(_attr("PRICE", status="WARN", reasons=["MISSING_CLEANSE_POLICY"], value_text="¥1,200")),
            counters,
        )

        assert counters.error == 0
        assert counters.skip == 1
        assert product.display_price_incl_tax == Decimal("1000.00")
        engine.errors.add.assert_not_called()
        engine.session.commit.assert_awaited()

    @pytest.mark.asyncio
    async def test_master_insert_failure_is_recorded_as_fixed_column_error(self, engine):
        engine.identity.ensure_identity = AsyncMock(return_value=(2002, True))
        engine.session.execute.side_effect = [_scalar(None)]
        engine.session.flush = AsyncMock(
            side_effect=IntegrityError("INSERT INTO m_product", {}, Exception("not-null violation"))
        )
        counters = UpsertCounters()

        await engine.upsert_record(_record(_attr("CATEGORY_1", value_cd="WATCH")), counters)

        assert counters.error == 1
        assert _recorded_codes(engine) == [ErrorCode.FIXED_COL_UPDATE_FAILED]
        assert engine.errors.add.call_args.args[0] == PipelineStep.UPSERT
        engine.session.rollback.assert_awaited_once()
        engine.product_eav.sync.assert_not_called()

    @pytest.mark.asyncio
    async def test_eav_failure_is_recorded_as_eav_error(self, engine):
        engine.session.execute.side_effect = [_scalar(_existing_product())]
        engine.product_eav.sync = AsyncMock(
            side_effect=IntegrityError("INSERT INTO m_product_eav", {}, Exception("check violation"))
        )
        counters = UpsertCounters()

        await engine.upsert_record(_record(_attr("MODEL_NAME", value_text="Submariner")), counters)

        assert counters.error == 1
        assert _recorded_codes(engine) == [ErrorCode.EAV_SYNC_FAILED]

    @pytest.mark.asyncio
    async def test_identity_failure_is_recorded_as_ident_error(self, engine):
        engine.identity.ensure_identity = AsyncMock(side_effect=RuntimeError("sequence missing"))
        counters = UpsertCounters()

        await engine.upsert_record(_record(), counters)

        assert _recorded_codes(engine) == [ErrorCode.IDENT_FAILED]

    @pytest.mark.asyncio
    async def test_lost_connection_is_raised(self, engine):
        engine.identity.ensure_identity = AsyncMock(
            side_effect=OperationalError("SELECT", {}, Exception("server closed the connection"))
        )

        with pytest.raises(DatabaseConnectionError):
            await engine.upsert_record(_record(), UpsertCounters())

        engine.errors.add.assert_not_called()


class TestManagementSavepoint:

    @staticmethod
    def _savepoint(engine):
        savepoint = MagicMock()
        savepoint.__aenter__ = AsyncMock(return_value=None)
        savepoint.__aexit__ = AsyncMock(return_value=False)
        engine.session.begin_nested = MagicMock(return_value=savepoint)
        return savepoint

    @pytest.mark.asyncio
    async def test_unexpected_error_stays_inside_savepoint(self, engine):
        savepoint = self._savepoint(engine)
        engine.management.upsert = AsyncMock(side_effect=ValueError("not a number: 'abc'"))

        await engine._upsert_management(_record(), _existing_product(), "M100")

        assert _recorded_codes(engine) == [ErrorCode.PRODUCT_MANAGEMENT_FAILED]
        savepoint.__aexit__.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lost_connection_escapes_savepoint(self, engine):
        self._savepoint(engine)
        engine.management.upsert = AsyncMock(
            side_effect=OperationalError("UPDATE", {}, Exception("server closed the connection"))
        )

        with pytest.raises(OperationalError):
            await engine._upsert_management(_record(), _existing_product(), "M100")

        engine.errors.add.assert_not_called()


@pytest.mark.asyncio
async def test_events_for_unknown_company_fail_the_stage():
    session = MagicMock()
    session.execute = AsyncMock(return_value=_scalar(None))
    session.commit = AsyncMock()

    with pytest.raises(UpsertError) as exc_info:
        await EventUpsertEngine(session, "ZZ-EVENT-test", "ZZ").run()

    assert exc_info.value.context["group_company_cd"] == "ZZ"
    session.commit.assert_not_called()
