"""
Custom exceptions for the sync pipeline with structured error context.

Every exception carries a context dict that ends up in log records
(``extra={"error_context": exc.to_dict()}``) and, for ingestion failures,
in the audit log.

Exception Hierarchy:
    ETLException (base)
    ├── ConfigError
    ├── TransportError
    ├── ExtractionError
    │   ├── APIExtractionError
    │   │   ├── AuthenticationError
    │   │   └── RateLimitError
    ├── TransformationError
    │   └── ValidationError
    ├── IngestionError
    ├── StoreError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class ETLException(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (source, url, status, ...)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        self.message = message
        self.context = dict(context or {})
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        visible = {k: v for k, v in self.context.items() if k != "error_timestamp"}
        if visible:
            context_str = ", ".join(f"{k}={v}" for k, v in visible.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {self.original_exception}"

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
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that may succeed when attempted again.

    Use this for transient errors like network timeouts, rate limiting
    or server-side failures (HTTP 5xx).
    """
    pass


class NonRetryableError(ETLException):
    """
    Mixin for errors that will fail the same way every time.

    Use this for missing configuration, rejected credentials and
    malformed data.
    """
    pass


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigError(NonRetryableError):
    """
    Raised when required configuration is missing or invalid.

    Context should include:
        - setting: Name of the missing setting
        - source_name: Source the setting belongs to (if any)
    """
    pass


# ============================================================================
# Transport Errors
# ============================================================================

class TransportError(RetryableError):
    """
    Raised when no transport strategy produced an HTTP response.

    Context should include:
        - url: Target URL (query string stripped)
        - strategies: Names of the strategies that were attempted
        - errors: Per-strategy error messages
    """
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(ETLException):
    """Base exception for data extraction failures."""
    pass


class APIExtractionError(ExtractionError):
    """
    Raised when a source API answers with an unusable response.

    Context should include:
        - url: The API endpoint that failed
        - status_code: HTTP status code
        - response_body: Response body (truncated)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None,
        status_code: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.status_code = status_code
        if status_code is not None:
            self.context["status_code"] = status_code


class AuthenticationError(NonRetryableError, APIExtractionError):
    """Credential rejected, missing, or not refreshable."""
    pass


class RateLimitError(RetryableError, APIExtractionError):
    """Rate limiting (HTTP 429 / rate-limit 403) that should be retried after a wait."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception, status_code=status_code)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after is not None:
            self.context["retry_after"] = retry_after


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(ETLException):
    """Base exception for data transformation failures."""
    pass


class ValidationError(NonRetryableError, TransformationError):
    """
    Raised when a payload or record has the wrong shape.

    Context should include:
        - field_name: Name of the offending field
        - raw_record_id: ID of the raw record (if stored)
    """
    pass


# ============================================================================
# Ingestion / Storage Errors
# ============================================================================

class IngestionError(ETLException):
    """
    Raised when the ingestion endpoint rejects a batch.

    Context should include:
        - dataset_id: Target dataset
        - status_code: Last HTTP status received
        - attempts: Number of attempts made
    """
    pass


class StoreError(ETLException):
    """
    Raised when the record store or audit log cannot be written.

    Context should include:
        - operation: insert, exists, query, mark_sent, audit
        - source_name: Source the rows belong to
    """
    pass
