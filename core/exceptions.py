"""
Custom exceptions for the catalog pipeline with structured error context.

This module provides the exception hierarchy used across the Ingest,
Cleanse and Upsert stages. Each exception carries context information
for debugging and for the record_error trail.

Exception Hierarchy:
    PipelineException (base)
    ├── IngestError
    │   ├── CSVParseError
    │   ├── DuplicateBatchError
    │   └── ImportProfileNotFoundError
    ├── CleanseError
    │   └── ResolverConfigError
    ├── UpsertError
    │   ├── IdentityError
    │   ├── CategoryMissingError
    │   └── ProductManagementError
    ├── BatchError
    │   ├── BatchNotFoundError
    │   └── BatchClaimLostError
    ├── DatabaseError
    └── RetryableError (mixin)
        └── DatabaseConnectionError
"""

from typing import Optional, Dict, Any
from datetime import datetime

from core.error_codes import ErrorCode


class PipelineException(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (batch_id, record_ref, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Ingest Errors
# ============================================================================

class IngestError(PipelineException):
    """Base exception for the Ingest stage."""
    pass


class CSVParseError(IngestError):
    """
    Raised when a CSV file cannot be read at all.

    Context should include:
        - file_path: Path to the CSV file
        - encoding: Encoding used for the attempt
    """
    pass


class DuplicateBatchError(IngestError):
    """
    Raised when a file was already ingested (same idempotency key).

    Context should include:
        - idem_key: The idempotency key
        - batch_id: The batch that already owns the key
    """
    pass


class ImportProfileNotFoundError(IngestError):
    """Raised when no active import profile exists for company + entity."""
    pass


# ============================================================================
# Cleanse Errors
# ============================================================================

class CleanseError(PipelineException):
    """Base exception for the Cleanse stage (infrastructure only)."""
    pass


class ResolverConfigError(CleanseError):
    """
    Raised when a reference mapping row names a table or column that is
    not part of the known schema.

    Context should include:
        - ref_map_id: The offending m_ref_table_map row
        - identifier: The rejected table or column name
    """
    pass


# ============================================================================
# Upsert Errors
# ============================================================================

class UpsertError(PipelineException):
    """
    Base exception for per-product upsert failures.

    The error_code is written to record_error when the product's
    transaction is rolled back.
    """

    error_code: ErrorCode = ErrorCode.UPSERT_UNKNOWN_ERROR


class IdentityError(UpsertError):
    """Identity could not be created nor re-read after a conflict."""

    error_code = ErrorCode.IDENT_FAILED


class CategoryMissingError(UpsertError):
    """A brand-new product has no resolvable category."""

    error_code = ErrorCode.CATEGORY_NOT_FOUND


class ProductManagementError(UpsertError):
    """Management aggregate write failed (rolled back to its savepoint)."""

    error_code = ErrorCode.PRODUCT_MANAGEMENT_FAILED


# ============================================================================
# Batch Errors
# ============================================================================

class BatchError(PipelineException):
    """Base exception for batch lifecycle failures."""
    pass


class BatchNotFoundError(BatchError):
    """The requested batch_id does not exist."""
    pass


class BatchClaimLostError(BatchError):
    """The batch row could not be re-locked after a checkpoint."""
    pass


# ============================================================================
# Database Errors
# ============================================================================

class DatabaseError(PipelineException):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: Type of database operation (SELECT, INSERT, UPDATE)
        - table_name: Name of the table
    """
    pass


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(PipelineException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Temporary database connection issues
    - Deadlocks and serialization failures
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class DatabaseConnectionError(RetryableError, DatabaseError):
    """Database connection errors that should be retried."""
    pass
