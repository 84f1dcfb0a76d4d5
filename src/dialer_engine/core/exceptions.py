"""Dialer Engine Exception Hierarchy.

Provides structured error handling with context preservation
and HTTP status code mapping.

Taxonomy:
- ValidationError: malformed input, rejected before any I/O, never retried
- ReadFailure: ground truth unavailable, eligibility is skipped
- WriteConflict: concurrent mutation detected by the store, retry the call
- FatalStoreError: transaction could not commit, nothing persisted

Partial failures (conversion insert failed, queue mutation committed) are not
raised. They are reported on TransitionResult.
"""

from __future__ import annotations

from typing import Any, TypeVar


class DialerEngineError(Exception):
    """Base exception for all engine errors.

    All custom exceptions should inherit from this class.
    """

    status_code: int = 500
    error_code: str = "DIALER_ENGINE_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message
            details: Additional context for debugging
            cause: Original exception if wrapping
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert to API-friendly dictionary."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        if self.cause:
            result["cause"] = str(self.cause)
        return result

    def __str__(self) -> str:
        """String representation for logging."""
        parts = [f"{self.error_code}: {self.message}"]
        if self.details:
            parts.append(f"details={self.details}")
        if self.cause:
            parts.append(f"cause={self.cause}")
        return " | ".join(parts)


# =============================================================================
# Input Errors
# =============================================================================


class ValidationError(DialerEngineError):
    """Input validation failed."""

    status_code = 400
    error_code = "VALIDATION_ERROR"


class RecordNotFoundError(DialerEngineError):
    """Requested record not found."""

    status_code = 404
    error_code = "RECORD_NOT_FOUND"


# =============================================================================
# Ground Truth Errors
# =============================================================================


class ReadFailure(DialerEngineError):
    """Ground truth could not be read.

    Never means "no data". Callers route eligibility to skipped.
    """

    status_code = 503
    error_code = "GROUND_TRUTH_READ_FAILURE"
    retryable = True


class GroundTruthTimeout(ReadFailure):
    """Replica read exceeded its timeout."""

    status_code = 504
    error_code = "GROUND_TRUTH_TIMEOUT"


class GroundTruthUnavailable(ReadFailure):
    """Replica unreachable or circuit open."""

    error_code = "GROUND_TRUTH_UNAVAILABLE"


class GroundTruthRecordMissing(ReadFailure):
    """User does not exist in the replica (yet)."""

    status_code = 404
    error_code = "GROUND_TRUTH_RECORD_MISSING"


# =============================================================================
# Store Errors
# =============================================================================


class StoreError(DialerEngineError):
    """Base class for primary store errors."""

    status_code = 503
    error_code = "STORE_ERROR"
    retryable = True


class WriteConflict(StoreError):
    """Concurrent mutation detected; retry the whole call."""

    status_code = 409
    error_code = "WRITE_CONFLICT"


class FatalStoreError(StoreError):
    """Transaction could not commit; nothing was persisted."""

    error_code = "FATAL_STORE_ERROR"


class StoreTimeout(StoreError):
    """Store operation exceeded its timeout."""

    status_code = 504
    error_code = "TIMEOUT"


# =============================================================================
# Authentication Errors
# =============================================================================


class AuthError(DialerEngineError):
    """Base class for authentication errors."""

    status_code = 401
    error_code = "AUTH_ERROR"


class UnauthorizedError(AuthError):
    """Missing or invalid shared secret."""

    error_code = "UNAUTHORIZED"


# =============================================================================
# Utility Functions
# =============================================================================


E = TypeVar("E", bound=DialerEngineError)

_CONFLICT_MARKERS = (
    "could not serialize",
    "deadlock detected",
    "database is locked",
    "lock timeout",
    "serialization failure",
)


def classify_store_exception(exc: Exception) -> StoreError:
    """Map a raw SQLAlchemy/driver exception onto the store taxonomy.

    Args:
        exc: Exception raised by the store

    Returns:
        WriteConflict for serialization or lock failures, FatalStoreError otherwise
    """
    text = str(exc).lower()
    if any(marker in text for marker in _CONFLICT_MARKERS):
        return wrap_exception(exc, WriteConflict, "Concurrent write detected")
    return wrap_exception(exc, FatalStoreError, "Store transaction failed")


def wrap_exception(
    exc: Exception,
    wrapper_class: type[E] = DialerEngineError,  # type: ignore[assignment]
    message: str | None = None,
    **details: Any,
) -> E:
    """Wrap a generic exception in a DialerEngineError.

    Args:
        exc: Original exception to wrap
        wrapper_class: DialerEngineError subclass to use
        message: Override message (defaults to str(exc))
        **details: Additional context details

    Returns:
        Wrapped exception instance
    """
    return wrapper_class(
        message or str(exc),
        details=details or None,
        cause=exc,
    )
