from sqlalchemy import (
    Column, String, Integer, BigInteger, DateTime, Text, Boolean, Numeric,
    SmallInteger, Index
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from datetime import datetime
import uuid
from models.base import Base, StepStatus


class TempProductParsed(Base):
    """
    Staged record: one row per PRODUCT CSV line.

    The extras payload keeps every source column (raw value, transformed
    value, mapping target, required flag) so nothing is lost at parse time.
    A handful of fixed columns are hoisted for filtering.
    """
    __tablename__ = "temp_product_parsed"

    temp_row_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    batch_id = Column(String(64), nullable=False, index=True)
    line_no = Column(BigInteger, nullable=False)
    source_group_company_cd = Column(String(50), nullable=False)

    # Hoisted fixed columns
    source_product_cd = Column(String(255), nullable=True)
    source_product_management_cd = Column(String(255), nullable=True)
    source_brand_id = Column(String(255), nullable=True)
    source_brand_nm = Column(String(255), nullable=True)
    source_category_1_id = Column(String(255), nullable=True)
    source_category_1_nm = Column(String(255), nullable=True)

    extras = Column("extras_json", JSONB, nullable=False, default=dict)
    step_status = Column(String(20), nullable=False, default=StepStatus.READY.value)

    created_at = Column("cre_at", DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column("upd_at", DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_temp_product_parsed_batch_line", "batch_id", "line_no"),
    )


class ClProductAttr(Base):
    """
    Staged attribute and, after the Cleanse stage, cleansed attribute.

    The composite primary key (batch_id, temp_row_id, attr_cd, attr_seq)
    makes re-running the Cleanse stage an upsert rather than a duplicate.
    """
    __tablename__ = "cl_product_attr"

    batch_id = Column(String(64), primary_key=True)
    temp_row_id = Column(UUID(as_uuid=True), primary_key=True)
    attr_cd = Column(String(100), primary_key=True)
    attr_seq = Column(SmallInteger, primary_key=True, default=1)

    # Staged values
    source_id = Column(Text, nullable=True)
    source_label = Column(Text, nullable=True)
    source_raw = Column(Text, nullable=True)
    data_type = Column(String(20), nullable=True)
    is_required = Column(Boolean, nullable=False, default=False)

    # Cleansed values
    value_text = Column(Text, nullable=True)
    value_num = Column(Numeric(18, 4), nullable=True)
    value_date = Column(DateTime, nullable=True)
    value_cd = Column(String(255), nullable=True)
    g_list_item_id = Column(BigInteger, nullable=True)

    quality_status = Column(String(10), nullable=True, index=True)
    quality_detail = Column("quality_detail_json", JSONB, nullable=True)
    provenance = Column("provenance_json", JSONB, nullable=True)
    rule_version = Column(String(50), nullable=True)

    created_at = Column("cre_at", DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column("upd_at", DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_cl_product_attr_batch_quality", "batch_id", "quality_status"),
    )


class TempProductEvent(Base):
    """Staged record for EVENT feeds (stock movements, sales, transfers)."""
    __tablename__ = "temp_product_event"

    temp_row_event_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    batch_id = Column(String(64), nullable=False, index=True)
    line_no = Column(BigInteger, nullable=False)
    idem_key = Column(String(255), nullable=False, unique=True)
    source_group_company_cd = Column(String(50), nullable=False)
    source_product_id = Column(String(255), nullable=True)
    source_store_id_raw = Column(String(255), nullable=True)
    source_new_used_kbn_raw = Column(String(255), nullable=True)
    event_ts_raw = Column(String(100), nullable=True)
    event_kind_raw = Column(String(100), nullable=True)
    qty_raw = Column(String(50), nullable=True)
    extras = Column("extras_json", JSONB, nullable=False, default=dict)
    step_status = Column(String(20), nullable=False, default=StepStatus.READY.value)

    created_at = Column("cre_at", DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column("upd_at", DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
