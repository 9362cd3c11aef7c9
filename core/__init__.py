"""
Core utilities and configuration for the product catalog pipeline.

This package provides foundational components used throughout the
Ingest → Cleanse → Upsert pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Async engine and session management
    exceptions: Custom exception hierarchy for error handling
    error_codes: Stable codes written to the record_error trail
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import UpsertError, CategoryMissingError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with async_session_maker() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    "ErrorCode",
    # Exceptions
    "PipelineException",
    "IngestError",
    "CSVParseError",
    "DuplicateBatchError",
    "ImportProfileNotFoundError",
    "CleanseError",
    "ResolverConfigError",
    "UpsertError",
    "IdentityError",
    "CategoryMissingError",
    "ProductManagementError",
    "BatchError",
    "BatchNotFoundError",
    "BatchClaimLostError",
    "DatabaseError",
    "RetryableError",
    "DatabaseConnectionError",
]
