"""
Unit tests for value normalizers and single-value reconciliation
"""

from datetime import datetime
from decimal import Decimal

import pytest
from models.base import QualityStatus
from ingestion.cleansing.normalize import first_non_empty, parse_datetime, parse_decimal
from ingestion.cleansing.quality import CleansedAttribute
from ingestion.cleansing.reconcile import reconcile_single_values
from ingestion.upsert.events import EventValidationError, parse_quantity


class TestParseDecimal:

    @pytest.mark.parametrize("raw,expected", [
        ("1234", Decimal("1234")),
        ("¥1,234", Decimal("1234")),
        ("12.5%", Decimal("12.5")),
        ("３．５", Decimal("3.5")),
        (" 1 000 ", Decimal("1000")),
    ])
    def test_vendor_numbers(self, raw, expected):
        assert parse_decimal(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "abc", "NaN", "Infinity"])
    def test_invalid(self, raw):
        with pytest.raises(ValueError):
            parse_decimal(raw)


class TestParseDatetime:

    @pytest.mark.parametrize("raw", ["2025/10/20", "2025-10-20", "20251020"])
    def test_dates(self, raw):
        assert parse_datetime(raw) == datetime(2025, 10, 20)

    def test_timestamp(self):
        assert parse_datetime("2025-10-20 09:15:00") == datetime(2025, 10, 20, 9, 15)

    def test_iso_with_offset_is_converted_to_utc(self):
        assert parse_datetime("2025-10-20T09:00:00+09:00") == datetime(2025, 10, 20, 0, 0)

    @pytest.mark.parametrize("raw", [None, "", "yesterday", "2025/13/45"])
    def test_invalid(self, raw):
        with pytest.raises(ValueError):
            parse_datetime(raw)


def test_first_non_empty():
    assert first_non_empty(None, "  ", " ROLEX ", "OMEGA") == "ROLEX"
    assert first_non_empty(None, "") is None


class TestParseQuantity:

    def test_values(self):
        assert parse_quantity(None) is None
        assert parse_quantity("  ") is None
        assert parse_quantity("1,200") == 1200
        assert parse_quantity("0") == 0

    @pytest.mark.parametrize("raw", ["-1", "1.5", "many"])
    def test_invalid(self, raw):
        with pytest.raises(EventValidationError):
            parse_quantity(raw)


def _attr(seq, status=QualityStatus.OK, step_no=1):
    attr = CleansedAttribute(attr_cd="COLOR", attr_seq=seq, data_type="LIST", source_raw=f"raw{seq}")
    attr.quality_status = status
    attr.step_no = step_no
    return attr


class TestReconcileSingleValues:

    def test_keeps_best_and_demotes_others(self):
        first = _attr(1, QualityStatus.WARN)
        second = _attr(2, QualityStatus.OK)
        third = _attr(3, QualityStatus.OK)

        demoted = reconcile_single_values([first, second, third], lambda attr_cd: True)

        assert second.quality_status == QualityStatus.OK
        assert demoted == [first, third]
        assert third.quality_status == QualityStatus.WARN
        assert "SINGLE_VALUE_CONFLICT" in third.reason_cds

    def test_lower_step_wins_among_equals(self):
        late = _attr(1, step_no=3)
        early = _attr(2, step_no=1)

        reconcile_single_values([late, early], lambda attr_cd: True)

        assert early.quality_status == QualityStatus.OK
        assert late.quality_status == QualityStatus.WARN

    def test_ng_values_are_left_alone(self):
        ok = _attr(1)
        bad = _attr(2, QualityStatus.NG)

        demoted = reconcile_single_values([ok, bad], lambda attr_cd: True)

        assert demoted == []
        assert bad.quality_status == QualityStatus.NG

    def test_multi_select_untouched(self):
        values = [_attr(1), _attr(2)]
        assert reconcile_single_values(values, lambda attr_cd: False) == []
