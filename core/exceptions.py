"""
Custom exceptions for the import pipeline with structured error context.

Every exception carries a machine-readable ``code`` and an error
``category`` so the control API can report a concrete reason instead of a
raw exception string.

Exception Hierarchy:
    ETLException (base)
    ├── ExtractionError
    │   ├── SourceRequestError
    │   └── StructuralError
    ├── TransformationError
    │   ├── ValidationError
    │   └── DataFormatError
    ├── LoadError
    │   ├── DatabaseError
    │   └── UpsertError
    ├── CheckpointError
    │   └── CorruptCheckpointError
    ├── ConcurrencyError
    │   ├── ImportAlreadyRunningError
    │   └── NoImportRunningError
    ├── RunTimeoutError
    ├── ImportCancelledError
    ├── RetryExhaustedError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class ErrorCategory:
    """Error categories reported by the control API"""
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CONCURRENCY = "concurrency"
    RESOURCE = "resource"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class ETLException(Exception):
    """
    Base exception for all import-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (phase, url, batch, etc.)
        original_exception: The original exception that was caught (if any)
        code: Stable machine-readable error code
        category: One of ErrorCategory
    """

    code = "IMPORT_ERROR"
    category = ErrorCategory.INTERNAL

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

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
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
            "code": self.code,
            "category": self.category,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts and connection resets
    - Rate limiting (HTTP 429)
    - Service unavailable (HTTP 502/503/504)
    """

    category = ErrorCategory.TRANSIENT

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


class NonRetryableError(ETLException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Page structure changed (selectors no longer match)
    - Invalid data format
    - Schema validation errors
    - Resource not found (HTTP 404)
    """

    category = ErrorCategory.PERMANENT


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(ETLException):
    """Base exception for data extraction failures."""
    code = "EXTRACTION_ERROR"


class SourceRequestError(ExtractionError):
    """
    Exception raised when a request to the source site fails.

    Context should include:
        - url: The page that failed
        - status_code: HTTP status code (if applicable)
        - retry_count: Number of retries attempted
    """
    code = "SOURCE_REQUEST_FAILED"


class StructuralError(NonRetryableError, ExtractionError):
    """
    Raised when a fetched page no longer has the expected shape.

    Context should include:
        - url: The page that was parsed
        - selector: The selector that did not match
        - entity_kind: Extractor that failed
    """
    code = "PAGE_STRUCTURE_CHANGED"


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(ETLException):
    """Base exception for data transformation failures."""
    code = "TRANSFORMATION_ERROR"


class ValidationError(TransformationError):
    """
    Exception raised when record validation fails.

    Context should include:
        - entity_kind: Kind of record
        - external_id: External ID (if known)
        - issues: List of field/constraint pairs
    """
    code = "VALIDATION_FAILED"


class DataFormatError(NonRetryableError, TransformationError):
    """Data format errors (unparseable numbers, negative amounts) that should not be retried."""
    code = "INVALID_DATA_FORMAT"


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(ETLException):
    """Base exception for data loading failures."""
    code = "LOAD_ERROR"


class DatabaseError(LoadError):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: Type of database operation (INSERT, UPDATE, UPSERT)
        - table_name: Name of the table
    """
    code = "DATABASE_ERROR"


class UpsertError(LoadError):
    """
    Exception raised when an upsert batch fails.

    Context should include:
        - entity_kind: Kind of records in the batch
        - batch_index: Index of the batch
        - records: Number of records in the batch
    """
    code = "UPSERT_FAILED"


# ============================================================================
# Checkpoint Errors
# ============================================================================

class CheckpointError(ETLException):
    """
    Exception raised when checkpoint management fails.

    Context should include:
        - phase: Phase recorded in the checkpoint
        - operation: Operation that failed (read, write, clear)
    """
    code = "CHECKPOINT_ERROR"


class CorruptCheckpointError(CheckpointError):
    """Stored checkpoint exists but cannot be decoded into a valid state."""
    code = "CHECKPOINT_CORRUPT"


# ============================================================================
# Concurrency, Resource and Lifecycle Errors
# ============================================================================

class ConcurrencyError(ETLException):
    """Base exception for mutual-exclusion failures. Never retried."""
    category = ErrorCategory.CONCURRENCY


class ImportAlreadyRunningError(ConcurrencyError):
    """Raised when the advisory lock is held or a live run is RUNNING."""
    code = "IMPORT_RUNNING"


class NoImportRunningError(ConcurrencyError):
    """Raised when a control operation targets a run that is not active."""
    code = "NO_IMPORT_RUNNING"


class RunTimeoutError(ETLException):
    """Run exceeded the maximum duration; its checkpoint is preserved."""
    code = "IMPORT_TIMEOUT"
    category = ErrorCategory.RESOURCE


class ImportCancelledError(ETLException):
    """Raised at a batch boundary after an operator cancelled the run."""
    code = "IMPORT_CANCELLED"
    category = ErrorCategory.CANCELLED


class RetryExhaustedError(ETLException):
    """A transient failure persisted through every retry attempt."""
    code = "RETRIES_EXHAUSTED"
    category = ErrorCategory.TRANSIENT

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        attempts: int = 0
    ):
        super().__init__(message, context, original_exception)
        self.attempts = attempts
        self.context["attempts"] = attempts


# ============================================================================
# Specific Retryable Errors
# ============================================================================

class NetworkError(RetryableError, SourceRequestError):
    """Network-related errors (timeouts, resets, 5xx) that should be retried."""
    code = "NETWORK_ERROR"


class SourceUnavailableError(RetryableError, SourceRequestError):
    """
    The source service as a whole is down (connection refused, DNS failure).

    The retry manager waits a longer fixed interval before retrying these.
    """
    code = "SOURCE_UNAVAILABLE"


class RateLimitError(RetryableError, SourceRequestError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""
    code = "RATE_LIMITED"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class DatabaseConnectionError(RetryableError, DatabaseError):
    """Database connection errors that should be retried."""
    code = "DATABASE_UNAVAILABLE"


# ============================================================================
# Specific Non-Retryable Errors
# ============================================================================

class ResourceNotFoundError(NonRetryableError, SourceRequestError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    code = "RESOURCE_NOT_FOUND"
