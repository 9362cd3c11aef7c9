from sqlalchemy import Column, String, DateTime, Text, Index
from sqlalchemy.dialects.postgresql import UUID
from datetime import datetime
import uuid
from models.base import Base


class RecordError(Base):
    """
    Per-record error trail.

    Surrogate-keyed so one record can carry several errors from the
    same stage. step is INGEST, CLEANSE or UPSERT.
    """
    __tablename__ = "record_error"

    error_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    batch_id = Column(String(64), nullable=False)
    step = Column(String(20), nullable=False)
    record_ref = Column(String(255), nullable=True)
    error_cd = Column(String(100), nullable=False)
    error_detail = Column(Text, nullable=True)
    raw_fragment = Column(Text, nullable=True)
    created_at = Column("cre_at", DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_record_error_batch_step", "batch_id", "step"),
    )

    def __repr__(self):
        return f"<RecordError(batch={self.batch_id}, step={self.step}, code={self.error_cd})>"
