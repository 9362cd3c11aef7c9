"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any, Generic, TypeVar
from datetime import datetime
from models.base import BatchStatus, DataKind, PipelineStep

T = TypeVar("T")


class APIResponse(BaseModel, Generic[T]):
    request_id: str
    api_latency_ms: int
    data: T

# ============================================================================
# Batch Schemas
# ============================================================================

class BatchSummary(BaseModel):
    """One batch_run row with its counts document"""
    batch_id: str
    group_company_cd: str
    data_kind: DataKind
    status: BatchStatus
    file_key: Optional[str] = None
    counts: Dict[str, Any] = Field(default_factory=dict)
    claimed_by: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @validator("counts", pre=True)
    def clean_counts(cls, v):
        """Counts document is always a dict"""
        if not isinstance(v, dict):
            return {}
        return v

    class Config:
        from_attributes = True
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "batch_id": "KM-PRODUCT-20251020093000-1a2b3c4d",
                "group_company_cd": "KM",
                "data_kind": "PRODUCT",
                "status": "PARTIAL",
                "file_key": "data/inbound/KM_PRODUCT_20251020.csv",
                "counts": {
                    "INGEST": {"read": 120, "ok": 118, "ng": 2},
                    "CLEANSE": {"read": 1416, "ok": 1380, "warn": 30, "ng": 6},
                    "UPSERT": {"read": 118, "insert": 40, "update": 60, "skip": 16, "error": 2}
                },
                "started_at": "2025-10-20T09:30:00Z",
                "ended_at": "2025-10-20T09:31:12Z"
            }
        }


class RecordErrorResponse(BaseModel):
    """One record_error row"""
    error_id: str
    batch_id: str
    step: PipelineStep
    record_ref: Optional[str]
    error_cd: str
    error_detail: Optional[str]
    raw_fragment: Optional[str]
    created_at: datetime

    @classmethod
    def from_orm(cls, error):
        """Custom from_orm to explicitly convert UUID to string"""
        return cls(
            error_id=str(error.error_id),
            batch_id=error.batch_id,
            step=error.step,
            record_ref=error.record_ref,
            error_cd=error.error_cd,
            error_detail=error.error_detail,
            raw_fragment=error.raw_fragment,
            created_at=error.created_at,
        )

    class Config:
        use_enum_values = True


class PaginationMetadata(BaseModel):
    """Pagination metadata"""
    total_items: int
    total_pages: int
    current_page: int
    page_size: int
    has_next: bool
    has_previous: bool


class BatchListResponse(BaseModel):
    """Paginated batch listing"""
    items: List[BatchSummary]
    pagination: PaginationMetadata
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


class RecordErrorListResponse(BaseModel):
    """Paginated record_error trail of one batch"""
    batch_id: str
    items: List[RecordErrorResponse]
    pagination: PaginationMetadata
    errors_by_code: Dict[str, int] = Field(default_factory=dict)
    filters_applied: Dict[str, Any] = Field(default_factory=dict)

# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    running_batches: int = 0
    completed_batches: int = 0
    partial_batches: int = 0
    failed_batches: int = 0
    last_batch_at: Optional[datetime] = None
    # Declared last: the validator reads the fields above
    status: str = Field(default="", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status from recent finished batches"""
        if not values.get("database_connected", False):
            return "unhealthy"

        failed = values.get("failed_batches", 0)
        finished = failed + values.get("completed_batches", 0) + values.get("partial_batches", 0)

        if finished == 0:
            return "healthy"  # Nothing processed yet

        if failed == 0 and values.get("partial_batches", 0) == 0:
            return "healthy"
        elif failed < finished:
            return "degraded"
        else:
            return "unhealthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "degraded",
                "timestamp": "2025-10-20T10:30:00Z",
                "database_connected": True,
                "running_batches": 1,
                "completed_batches": 12,
                "partial_batches": 2,
                "failed_batches": 0,
                "last_batch_at": "2025-10-20T10:00:00Z"
            }
        }

# ============================================================================
# Statistics Schemas
# ============================================================================

class StatsResponse(BaseModel):
    """Statistics response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    # Batches
    total_batches: int
    batches_by_status: Dict[str, int]

    # Catalog
    total_products: int
    active_products: int
    active_eav_rows: int
    inactive_eav_rows: int

    # Errors
    total_record_errors: int
    record_errors_by_step: Dict[str, int]

    # Recent batches
    recent_batches: List[BatchSummary] = Field(default_factory=list)

    # Time-based stats
    last_batch_success: Optional[datetime]
    last_batch_failure: Optional[datetime]
    avg_batch_duration_seconds: Optional[float]

    class Config:
        json_schema_extra = {
            "example": {
                "timestamp": "2025-10-20T10:30:00Z",
                "total_batches": 15,
                "batches_by_status": {"COMPLETED": 12, "PARTIAL": 2, "RUNNING": 1},
                "total_products": 5000,
                "active_products": 4980,
                "active_eav_rows": 61000,
                "inactive_eav_rows": 420,
                "total_record_errors": 37,
                "record_errors_by_step": {"INGEST": 4, "CLEANSE": 30, "UPSERT": 3},
                "last_batch_success": "2025-10-20T10:00:00Z",
                "avg_batch_duration_seconds": 72.4
            }
        }


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "Batch not found",
                "detail": "The requested batch does not exist",
                "timestamp": "2025-10-20T10:30:00Z"
            }
        }
