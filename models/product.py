from sqlalchemy import (
    Column, String, Integer, BigInteger, DateTime, Text, Boolean, Numeric,
    SmallInteger, Index, UniqueConstraint, Sequence, text
)
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
from models.base import Base

PRODUCT_ID_SEQ = Sequence("m_product_g_product_id_seq")
PRODUCT_IDENT_ID_SEQ = Sequence("m_product_ident_ident_id_seq")
PRODUCT_MANAGEMENT_ID_SEQ = Sequence("m_product_management_g_product_management_id_seq")

# Sentinels written on brand-new master rows
PRODUCT_STATUS_UNKNOWN = "PRODUCT_STATUS_UNKNOWN"
PRODUCT_CONDITION_UNKNOWN = "PRODUCT_CONDITION_UNKNOWN"
STOCK_UNKNOWN = "STOCK_UNKNOWN"
SALE_UNKNOWN = "SALE_UNKNOWN"


class ProductIdent(Base):
    """
    (company, source product code) → golden product id.

    At most one active row per pair, enforced by a partial unique index.
    Rows are never deleted, only deactivated.
    """
    __tablename__ = "m_product_ident"

    ident_id = Column(BigInteger, PRODUCT_IDENT_ID_SEQ, primary_key=True)
    g_product_id = Column(BigInteger, nullable=False, index=True)
    group_company_id = Column(BigInteger, nullable=False)
    source_product_cd = Column(String(255), nullable=False)
    source_product_management_cd = Column(String(255), nullable=True)
    ident_kind = Column(String(20), nullable=False, default="AUTO")
    confidence = Column(Numeric(5, 2), nullable=True)
    is_primary = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    valid_from = Column(DateTime, nullable=True, default=datetime.utcnow)
    valid_to = Column(DateTime, nullable=True)
    provenance = Column("provenance_json", JSONB, nullable=True)
    ident_remarks = Column(Text, nullable=True)
    batch_id = Column(String(64), nullable=True)
    created_at = Column("cre_at", DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column("upd_at", DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index(
            "idx_m_product_ident_active_unique",
            "group_company_id",
            "source_product_cd",
            unique=True,
            postgresql_where=text("is_active"),
        ),
    )

    def __repr__(self):
        return f"<ProductIdent(company={self.group_company_id}, source={self.source_product_cd}, product={self.g_product_id})>"


class Product(Base):
    """Golden product master row"""
    __tablename__ = "m_product"

    g_product_id = Column(BigInteger, PRODUCT_ID_SEQ, primary_key=True)
    g_product_cd = Column(String(50), nullable=False)
    unit_no = Column(Integer, nullable=False, default=1)
    group_company_id = Column(BigInteger, nullable=False)
    source_product_cd = Column(String(255), nullable=True)
    source_product_management_cd = Column(String(255), nullable=True)

    # Golden columns fed by attributes
    g_brand_id = Column(BigInteger, nullable=True)
    g_category_id = Column(BigInteger, nullable=False)
    currency_cd = Column(String(10), nullable=True)
    display_price_incl_tax = Column(Numeric(12, 2), nullable=True)
    product_status_cd = Column(String(100), nullable=False, default=PRODUCT_STATUS_UNKNOWN)
    new_used_kbn_cd = Column(String(100), nullable=False, default=PRODUCT_CONDITION_UNKNOWN)
    stock_existence_cd = Column(String(100), nullable=False, default=STOCK_UNKNOWN)
    sale_status_cd = Column(String(100), nullable=False, default=SALE_UNKNOWN)

    # Event tracking
    last_event_ts = Column(DateTime, nullable=True)
    last_event_kind_cd = Column(String(100), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column("cre_at", DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column("upd_at", DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("g_product_cd", "unit_no", name="uq_m_product_cd_unit"),
    )

    def __repr__(self):
        return f"<Product(id={self.g_product_id}, cd={self.g_product_cd})>"


class ProductEav(Base):
    """One attribute value of a golden product"""
    __tablename__ = "m_product_eav"

    g_product_id = Column(BigInteger, primary_key=True)
    attr_cd = Column(String(100), primary_key=True)
    attr_seq = Column(SmallInteger, primary_key=True, default=1)

    value_text = Column(Text, nullable=True)
    value_num = Column(Numeric(12, 2), nullable=True)
    value_date = Column(DateTime, nullable=True)
    value_cd = Column(String(255), nullable=True)
    unit_cd = Column(String(50), nullable=True)

    quality_status = Column(String(10), nullable=True)
    quality_detail = Column("quality_detail_json", JSONB, nullable=True)
    provenance = Column("provenance_json", JSONB, nullable=True)
    batch_id = Column(String(64), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column("cre_at", DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column("upd_at", DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class ProductManagement(Base):
    """Management aggregate: several source product codes roll up into one entity"""
    __tablename__ = "m_product_management"

    g_product_management_id = Column(BigInteger, PRODUCT_MANAGEMENT_ID_SEQ, primary_key=True)
    group_company_id = Column(BigInteger, nullable=False)
    source_product_management_cd = Column(String(255), nullable=False)
    g_brand_id = Column(BigInteger, nullable=True)
    g_category_id = Column(BigInteger, nullable=False)
    description_text = Column(Text, nullable=True)
    is_provisional = Column(Boolean, nullable=False, default=False)
    source_product_cd = Column(String(255), nullable=True)
    provenance = Column("provenance_json", JSONB, nullable=True)
    batch_id = Column(String(64), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column("cre_at", DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column("upd_at", DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            "group_company_id", "source_product_management_cd",
            name="uq_m_product_management_source",
        ),
    )


class ProductManagementEav(Base):
    __tablename__ = "m_product_management_eav"

    g_product_management_id = Column(BigInteger, primary_key=True)
    attr_cd = Column(String(100), primary_key=True)
    attr_seq = Column(SmallInteger, primary_key=True, default=1)

    value_text = Column(Text, nullable=True)
    value_num = Column(Numeric(12, 2), nullable=True)
    value_date = Column(DateTime, nullable=True)
    value_cd = Column(String(255), nullable=True)
    unit_cd = Column(String(50), nullable=True)

    quality_status = Column(String(10), nullable=True)
    quality_detail = Column("quality_detail_json", JSONB, nullable=True)
    provenance = Column("provenance_json", JSONB, nullable=True)
    batch_id = Column(String(64), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column("cre_at", DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column("upd_at", DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
