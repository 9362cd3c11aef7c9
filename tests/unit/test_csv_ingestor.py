"""
Unit tests for row mapping and staged attribute extraction
"""

import json
import uuid

import pandas as pd
import pytest
from unittest.mock import MagicMock
from models.base import DataKind
from models.reference import AttrDefinition, DataImportColumn, DataImportSetting, FixedToAttrMap
from ingestion.attribute_extractor import AttributeExtractor, strip_source_prefix
from ingestion.cleansing.registry import AttributeDefinitionRegistry
from ingestion.csv_ingestor import CSVIngestor, ImportProfile, INJECTED_HEADER

HEADERS = ["商品コード", "ブランドID", "ブランド名", "価格", "色", "備考"]


def _rule(rule_id, seq, projection, attr_cd=None, target=None, transform=None, required=False):
    return DataImportColumn(
        id=rule_id,
        profile_id=1,
        column_seq=seq,
        projection_kind=projection,
        attr_cd=attr_cd,
        target_column=target,
        transform_expr=transform,
        is_required=required,
    )


PRODUCT_RULES = [
    _rule(1, 0, "PRODUCT", target="group_company_cd"),
    _rule(2, 1, "PRODUCT", "PRODUCT_CD", "product_cd", "trim(@)", required=True),
    _rule(3, 2, "PRODUCT", "BRAND", "brand_id", "trim(@)"),
    _rule(4, 3, "PRODUCT", "BRAND", "brand_nm", "trim(@)"),
    _rule(5, 4, "PRODUCT_EAV", "PRICE", None, "trim(@)"),
    _rule(6, 5, "PRODUCT_EAV", "COLOR", None, "trim(@),nullif(@,'')"),
    _rule(7, 6, "PRODUCT_EAV", None, None, None),
]


def _registry():
    return AttributeDefinitionRegistry([
        AttrDefinition(attr_cd="PRODUCT_CD", attr_nm="Product", data_type="TEXT"),
        AttrDefinition(attr_cd="BRAND", attr_nm="Brand", data_type="REF"),
        AttrDefinition(attr_cd="PRICE", attr_nm="Price", data_type="NUM"),
        AttrDefinition(attr_cd="COLOR", attr_nm="Color", data_type="LIST"),
    ])


def _brand_map(**overrides):
    values = dict(
        map_id=1,
        group_company_cd="KM",
        projection_kind="PRODUCT",
        attr_cd="BRAND",
        source_id_column="source_brand_id",
        source_label_column="source_brand_nm",
        value_role="ID_AND_LABEL",
        priority=10,
    )
    values.update(overrides)
    return FixedToAttrMap(**values)


class TestMapRow:

    def test_payload_and_hoisting(self):
        ingestor = CSVIngestor(MagicMock(), "KM", DataKind.PRODUCT)
        cells = [" P-001 ", "0123", "ロレックス", "1,280,000", "", "memo"]

        payload, hoisted, missing = ingestor.map_row(cells, HEADERS, PRODUCT_RULES, 1)

        assert missing == []
        assert hoisted == {
            "source_product_cd": "P-001",
            "source_brand_id": "0123",
            "source_brand_nm": "ロレックス",
        }
        assert payload["data_row_number"] == 1
        assert payload["csv_headers"] == HEADERS
        assert payload["source_raw"]["価格"] == "1,280,000"

        processed = payload["processed_columns"]
        assert set(processed) == {
            "col_0_sub0", "col_1_PRODUCT_CD", "col_2_BRAND", "col_3_BRAND",
            "col_4_PRICE", "col_5_COLOR", "col_6_sub1",
        }
        assert processed["col_0_sub0"]["header"] == INJECTED_HEADER
        assert processed["col_0_sub0"]["is_injected"] is True
        assert processed["col_0_sub0"]["raw_value"] == "KM"
        assert processed["col_1_PRODUCT_CD"]["transformed_value"] == "P-001"
        assert processed["col_1_PRODUCT_CD"]["mapping_success"] is True
        assert processed["col_5_COLOR"]["transformed_value"] is None
        assert processed["col_4_PRICE"]["projection_kind"] == "PRODUCT_EAV"

    def test_required_empty(self):
        ingestor = CSVIngestor(MagicMock(), "KM", DataKind.PRODUCT)
        cells = ["  ", "0123", "ロレックス", "1", "黒", ""]

        _, hoisted, missing = ingestor.map_row(cells, HEADERS, PRODUCT_RULES, 2)

        assert len(missing) == 1
        assert "PRODUCT_CD" in missing[0]
        assert "source_product_cd" not in hoisted

    def test_required_column_outside_file(self):
        ingestor = CSVIngestor(MagicMock(), "KM", DataKind.PRODUCT)
        rules = [_rule(1, 9, "PRODUCT", "PRODUCT_CD", "product_cd", required=True)]

        _, _, missing = ingestor.map_row(["P-001"], ["商品コード"], rules, 1)

        assert "not in the file" in missing[0]

    def test_unknown_projection_is_skipped(self):
        ingestor = CSVIngestor(MagicMock(), "KM", DataKind.PRODUCT)
        rules = [_rule(1, 1, "STOCK", "PRODUCT_CD", "product_cd")]

        payload, hoisted, _ = ingestor.map_row(["P-001"], ["商品コード"], rules, 1)

        assert payload["processed_columns"] == {}
        assert hoisted == {}

    def test_event_columns_keep_raw_values(self):
        ingestor = CSVIngestor(MagicMock(), "KM", DataKind.EVENT)
        rules = [
            _rule(1, 1, "EVENT", "PRODUCT_CD", "product_cd", "trim(@)"),
            _rule(2, 2, "EVENT", "EVENT_TS", "event_ts", "to_timestamp(@,'YYYY/MM/DD')"),
            _rule(3, 3, "EVENT", "EVENT_QUANTITY", "qty"),
            _rule(4, 4, "EVENT", "STORE", "store_nm"),
        ]

        _, hoisted, _ = ingestor.map_row(
            [" P-001", "2025/10/20", "1,200", "Ginza"], ["品番", "日時", "数量", "店舗"], rules, 1
        )

        assert hoisted == {"source_product_id": " P-001", "event_ts_raw": "2025/10/20", "qty_raw": "1,200"}


class TestAttributeExtractor:

    def _processed(self, cells):
        ingestor = CSVIngestor(MagicMock(), "KM", DataKind.PRODUCT)
        payload, _, _ = ingestor.map_row(cells, HEADERS, PRODUCT_RULES, 1)
        return payload["processed_columns"]

    def test_fixed_map_pairs_id_and_label(self):
        extractor = AttributeExtractor(_registry(), [_brand_map()])
        row_id = uuid.uuid4()

        attributes, issues = extractor.extract("b1", row_id, self._processed(["P-001", "0123", "ロレックス", "1000", "黒", "x"]))

        assert issues == []
        by_attr = {(a.attr_cd, a.attr_seq): a for a in attributes}
        assert set(by_attr) == {("PRODUCT_CD", 1), ("BRAND", 1), ("PRICE", 1), ("COLOR", 1)}
        brand = by_attr[("BRAND", 1)]
        assert (brand.source_id, brand.source_label, brand.data_type) == ("0123", "ロレックス", "REF")
        assert json.loads(brand.source_raw) == {"source_brand_id": "0123", "source_brand_nm": "ロレックス"}
        assert brand.temp_row_id == row_id
        assert by_attr[("PRODUCT_CD", 1)].is_required is True

    def test_without_fixed_map_each_column_is_a_value(self):
        extractor = AttributeExtractor(_registry())

        attributes, _ = extractor.extract("b1", uuid.uuid4(), self._processed(["P-001", "0123", "ロレックス", "1000", "黒", "x"]))

        brands = [a for a in attributes if a.attr_cd == "BRAND"]
        assert [(a.attr_seq, a.source_id) for a in brands] == [(1, "0123"), (2, "ロレックス")]
        assert json.loads(brands[1].source_raw) == {"ブランド名": "ロレックス"}

    def test_blank_values_produce_no_attribute(self):
        extractor = AttributeExtractor(_registry(), [_brand_map()])

        attributes, _ = extractor.extract("b1", uuid.uuid4(), self._processed(["P-001", "", "", "1000", "", "x"]))

        assert {a.attr_cd for a in attributes} == {"PRODUCT_CD", "PRICE"}

    def test_label_only_role_and_override(self):
        extractor = AttributeExtractor(_registry(), [
            _brand_map(map_id=2, priority=50),
            _brand_map(map_id=3, priority=1, value_role="LABEL_ONLY", data_type_override="TEXT"),
        ])

        attributes, _ = extractor.extract("b1", uuid.uuid4(), self._processed(["P-001", "0123", "ロレックス", "1", "", ""]))

        brand = [a for a in attributes if a.attr_cd == "BRAND"]
        assert len(brand) == 1
        assert (brand[0].source_id, brand[0].source_label, brand[0].data_type) == (None, "ロレックス", "TEXT")

    def test_required_column_without_attr_cd_is_reported(self):
        extractor = AttributeExtractor(_registry())
        processed = {
            "col_1_sub0": {
                "csv_column_index": 1, "header": "商品コード", "projection_kind": "PRODUCT",
                "attr_cd": "", "is_required": True, "transformed_value": "P-001",
            }
        }

        attributes, issues = extractor.extract("b1", uuid.uuid4(), processed)

        assert attributes == []
        assert issues[0].error_code.value == "MAPPING_NOT_FOUND"
        assert issues[0].column_key == "col_1_sub0"


def test_strip_source_prefix():
    assert strip_source_prefix("source_brand_id") == "brand_id"
    assert strip_source_prefix("SOURCE_brand_id") == "brand_id"
    assert strip_source_prefix("brand_id") == "brand_id"
    assert strip_source_prefix(None) is None


def test_read_frame_collects_bad_lines(tmp_path):
    path = tmp_path / "KM_PRODUCT.csv"
    path.write_text("a,b,c\n1,2,3\n4,5,6,7\n8,9\n", encoding="utf-8")
    profile = ImportProfile(DataImportSetting(character_cd="utf-8", delimiter=",", header_row_index=1), [])
    ingestor = CSVIngestor(MagicMock(), "KM", DataKind.PRODUCT)

    frame = ingestor.read_frame(path, profile)

    assert list(frame.columns) == ["a", "b", "c"]
    assert len(frame) == 2
    assert ingestor._bad_lines == [["4", "5", "6", "7"]]
    assert pd.isna(frame.iloc[1]["c"])
