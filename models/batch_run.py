from sqlalchemy import Column, String, Enum, DateTime, Index
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
from models.base import Base, BatchStatus, DataKind


class BatchRun(Base):
    """
    One row per ingested vendor file.

    Purpose:
    - Lifecycle of the file through Ingest, Cleanse and Upsert
    - Per-stage counters document (INGEST / CLEANSE / UPSERT sections)
    - Claim bookkeeping so only one worker processes a batch at a time

    Design:
    - idem_key is unique: the same source object never creates two batches
    - counts is merged section by section at every checkpoint
    - claimed_by / heartbeat_at form a lease next to the row lock
    """
    __tablename__ = "batch_run"

    batch_id = Column(String(64), primary_key=True)
    idem_key = Column(String(512), unique=True, nullable=False)

    # Source identification
    group_company_cd = Column(String(50), nullable=False, index=True)
    data_kind = Column(Enum(DataKind), nullable=False, default=DataKind.PRODUCT)
    file_key = Column(String(1024), nullable=True)

    # Lifecycle
    status = Column("batch_status", Enum(BatchStatus), nullable=False, default=BatchStatus.RUNNING)
    counts = Column("counts_json", JSONB, nullable=False, default=dict)

    # Claim
    claimed_by = Column(String(100), nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    ended_at = Column(DateTime, nullable=True)
    created_at = Column("cre_at", DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column("upd_at", DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_batch_run_status_started", "batch_status", "started_at"),
    )

    def __repr__(self):
        return f"<BatchRun(batch_id={self.batch_id}, status={self.status}, company={self.group_company_cd})>"
