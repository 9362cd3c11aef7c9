"""
Pydantic schemas for data validation and serialization.

Schemas:
    staging: Processed CSV column descriptor stored in the staging side payload
    api: API endpoint response models (health, stats, batches, record errors)

Features:
    - Automatic data validation
    - Type coercion and conversion
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.staging import ProcessedColumn
    from schemas.api import BatchSummary, HealthCheckResponse
"""

__all__ = [
    "ProcessedColumn",
    "BatchSummary",
    "RecordErrorResponse",
    "HealthCheckResponse",
    "StatsResponse",
]
