"""
Reference and configuration tables.

These rows drive the pipeline: import profiles, the attribute definition
registry, cleanse policies grouped in versioned rule sets, reference
mappings for the resolver, and the golden dictionaries (company, brand,
category, list items). All of them are read-only during a run.
"""

from sqlalchemy import (
    Column, String, Integer, BigInteger, DateTime, Text, Boolean, Numeric,
    SmallInteger, Index, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB, ARRAY
from datetime import datetime
from models.base import Base


# ============================================================================
# Golden dictionaries
# ============================================================================

class Company(Base):
    __tablename__ = "m_company"

    group_company_id = Column(BigInteger, primary_key=True)
    group_company_cd = Column(String(50), nullable=False, unique=True)
    group_company_nm = Column(String(255), nullable=True)
    default_currency_cd = Column(String(10), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column("cre_at", DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column("upd_at", DateTime, nullable=False, default=datetime.utcnow)


class BrandG(Base):
    __tablename__ = "m_brand_g"

    g_brand_id = Column(BigInteger, primary_key=True)
    g_brand_cd = Column(String(100), nullable=False, index=True)
    g_brand_nm = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column("cre_at", DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column("upd_at", DateTime, nullable=False, default=datetime.utcnow)


class CategoryG(Base):
    __tablename__ = "m_category_g"

    g_category_id = Column(BigInteger, primary_key=True)
    g_category_cd = Column(String(100), nullable=False, unique=True)
    g_category_id_parent = Column(BigInteger, nullable=True)
    g_category_nm = Column(String(255), nullable=True)
    hierarchy_level = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column("cre_at", DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column("upd_at", DateTime, nullable=False, default=datetime.utcnow)


class ListGroupG(Base):
    __tablename__ = "m_list_group_g"

    g_list_group_id = Column(BigInteger, primary_key=True)
    g_list_group_cd = Column(String(100), nullable=False, unique=True)
    g_list_group_nm = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class ListItemG(Base):
    __tablename__ = "m_list_item_g"

    g_list_item_id = Column(BigInteger, primary_key=True)
    g_list_group_id = Column(BigInteger, nullable=False)
    g_item_cd = Column(String(100), nullable=False)
    g_item_label = Column(String(255), nullable=True)
    sort_order = Column(Integer, default=100)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("g_list_group_id", "g_item_cd", name="uq_list_item_group_cd"),
    )


# ============================================================================
# Source → golden maps
# ============================================================================

class AttrSourceMap(Base):
    """Vendor list value (id/label) → golden list item"""
    __tablename__ = "attr_source_map"

    map_id = Column(BigInteger, primary_key=True)
    group_company_cd = Column(String(50), nullable=False)
    g_list_group_id = Column(BigInteger, nullable=True)
    source_attr_id = Column(String(255), nullable=True)
    source_attr_nm = Column(String(255), nullable=True)
    g_list_item_id = Column(BigInteger, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("idx_attr_source_map_lookup", "group_company_cd", "source_attr_id"),
    )


class BrandSourceMap(Base):
    """Vendor brand id/name → golden brand, first hop of the BRAND reference"""
    __tablename__ = "brand_source_map"

    map_id = Column(BigInteger, primary_key=True)
    group_company_cd = Column(String(50), nullable=False)
    source_brand_id = Column(String(255), nullable=True)
    source_brand_nm = Column(String(255), nullable=True)
    g_brand_id = Column(BigInteger, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class CategorySourceMap(Base):
    """Vendor category id/name → golden category, first hop of CATEGORY_1"""
    __tablename__ = "category_source_map"

    map_id = Column(BigInteger, primary_key=True)
    group_company_cd = Column(String(50), nullable=False)
    source_category_id = Column(String(255), nullable=True)
    source_category_nm = Column(String(255), nullable=True)
    g_category_id = Column(BigInteger, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


# ============================================================================
# Attribute registry and cleanse policies
# ============================================================================

class AttrDefinition(Base):
    """
    Attribute definition registry row.

    is_golden_product routes the attribute to m_product.<target_column>;
    is_golden_attr_eav routes it to m_product_eav. cleanse_phase orders
    attributes inside a record so BRAND / CATEGORY_1 resolve first.
    """
    __tablename__ = "m_attr_definition"

    attr_id = Column(BigInteger, primary_key=True)
    attr_cd = Column(String(100), nullable=False, unique=True)
    attr_nm = Column(String(255), nullable=False)
    data_type = Column(String(20), nullable=False)
    g_list_group_cd = Column(String(100), nullable=True)
    select_type = Column(String(20), nullable=True)
    cleanse_phase = Column(SmallInteger, nullable=True, default=1)
    target_table = Column(String(100), nullable=True)
    target_column = Column(String(100), nullable=True)
    product_unit_cd = Column(String(50), nullable=True)
    is_golden_product = Column(Boolean, nullable=False, default=False)
    is_golden_attr_eav = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column("cre_at", DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column("upd_at", DateTime, nullable=False, default=datetime.utcnow)


class CleanseRuleSet(Base):
    __tablename__ = "m_cleanse_rule_set"

    rule_set_id = Column(BigInteger, primary_key=True)
    rule_version = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    released_at = Column(DateTime, nullable=True, default=datetime.utcnow)
    is_active = Column(Boolean, nullable=False, default=True)


class CleansePolicy(Base):
    """
    One step of an attribute's cleanse policy chain.

    brand_scope / category_scope empty means the policy applies to every
    product (common policy); gp_scope empty means every company.
    """
    __tablename__ = "m_attr_cleanse_policy"

    policy_id = Column(BigInteger, primary_key=True)
    rule_set_id = Column(BigInteger, nullable=False)
    attr_cd = Column(String(100), nullable=False, index=True)
    data_type = Column(String(20), nullable=False)
    ref_map_id = Column(BigInteger, nullable=True)
    g_list_group_cd = Column(String(100), nullable=True)
    gp_scope = Column(String(50), nullable=True)
    category_scope = Column(String(100), nullable=True)
    brand_scope = Column(String(100), nullable=True)
    step_no = Column(SmallInteger, nullable=False, default=0)
    matcher_kind = Column(String(50), nullable=False)
    derive_from_attr_cds = Column(ARRAY(String), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class RefTableMap(Base):
    """
    Declarative reference lookup used by the resolver.

    hop2_table empty → single-hop lookup on hop1_table.
    hop2_join_on holds {hop1_column: hop2_column} equality pairs.
    """
    __tablename__ = "m_ref_table_map"

    ref_map_id = Column(BigInteger, primary_key=True)
    attr_cd = Column(String(100), nullable=False)
    hop1_table = Column(String(100), nullable=False)
    hop1_match_by = Column(String(20), nullable=False, default="ID")
    hop1_id_col = Column(String(100), nullable=True)
    hop1_label_col = Column(String(100), nullable=True)
    hop1_return_cols = Column(ARRAY(String), nullable=True)
    hop2_table = Column(String(100), nullable=True)
    hop2_join_on = Column("hop2_join_on_json", JSONB, nullable=True, default=dict)
    hop2_return_cd_col = Column(String(100), nullable=True)
    hop2_return_label_col = Column(String(100), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


# ============================================================================
# Import profiles
# ============================================================================

class DataImportSetting(Base):
    """CSV import profile per (company, target entity)"""
    __tablename__ = "m_data_import_setting"

    profile_id = Column(BigInteger, primary_key=True)
    usage_nm = Column(String(100), nullable=False, unique=True)
    group_company_cd = Column(String(50), nullable=False)
    target_entity = Column(String(20), nullable=False)
    character_cd = Column(String(20), nullable=True)
    delimiter = Column(String(5), nullable=True, default=",")
    header_row_index = Column(Integer, nullable=True, default=1)
    is_active = Column(Boolean, nullable=False, default=True)


class DataImportColumn(Base):
    """One column rule of an import profile (several rules may share a column)"""
    __tablename__ = "m_data_import_d"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    profile_id = Column(BigInteger, nullable=False, index=True)
    column_seq = Column(Integer, nullable=False)
    projection_kind = Column(String(20), nullable=False)
    attr_cd = Column(String(100), nullable=True)
    target_column = Column(String(100), nullable=True)
    transform_expr = Column(String(255), nullable=True)
    is_required = Column(Boolean, nullable=False, default=False)


class FixedToAttrMap(Base):
    """Fixed-column → attribute mapping with its value role"""
    __tablename__ = "m_fixed_to_attr_map"

    map_id = Column(BigInteger, primary_key=True)
    group_company_cd = Column(String(50), nullable=False)
    projection_kind = Column(String(20), nullable=False)
    attr_cd = Column(String(100), nullable=False)
    source_id_column = Column(String(100), nullable=True)
    source_label_column = Column(String(100), nullable=True)
    value_role = Column(String(20), nullable=True)
    data_type_override = Column(String(20), nullable=True)
    priority = Column(Integer, default=100)
    is_active = Column(Boolean, nullable=False, default=True)
