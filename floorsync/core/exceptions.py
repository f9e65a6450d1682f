"""Custom exceptions for the selection and sync engines."""

from __future__ import annotations

from typing import Any


class AppException(Exception):
    """Base application exception with structured error payload."""

    error_code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.message
        self.error_code = error_code or self.error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a problem-style payload for logs and notifications."""
        return {
            "error": self.error_code,
            "message": self.message,
            **({"details": self.details} if self.details else {}),
        }


class FetchError(AppException):
    """Upstream API call failed."""

    error_code = "FETCH_ERROR"
    message = "Upstream request failed"

    def __init__(
        self,
        message: str | None = None,
        status_code: int | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
        retry_after: float | None = None,
    ):
        self.status_code = status_code
        # Seconds the upstream asked us to wait (Retry-After)
        self.retry_after = retry_after
        super().__init__(message=message, error_code=error_code, details=details)


class TransientFetchError(FetchError):
    """Timeout, 429, 5xx or network failure. Safe to retry."""

    error_code = "TRANSIENT_FETCH_ERROR"
    message = "Upstream temporarily unavailable"


class FatalFetchError(FetchError):
    """401/403/404. Retrying will not help for this entity."""

    error_code = "FATAL_FETCH_ERROR"
    message = "Upstream rejected the request"


class QueueFullError(TransientFetchError):
    """Request queue is at capacity."""

    error_code = "QUEUE_FULL"
    message = "Request queue is full. Please try again later."


class QueueClearedError(AppException):
    """Pending request dropped by RequestQueue.clear()."""

    error_code = "QUEUE_CLEARED"
    message = "Request queue cleared"


class ValidationError(AppException):
    """Malformed or zero-price data point."""

    error_code = "VALIDATION_ERROR"
    message = "Validation failed"


class NoValidDataError(ValidationError):
    """Upstream answered but no point survived validation."""

    error_code = "NO_VALID_DATA"
    message = "No valid price data found"


class StoreError(AppException):
    """Store read or write failed."""

    error_code = "STORE_ERROR"
    message = "Store operation failed"


class SelectionDataError(AppException):
    """No entity in the snapshot has usable market cap data."""

    error_code = "SELECTION_DATA_ERROR"
    message = "No collections with valid market cap data"


class JobError(AppException):
    """Job execution failed."""

    error_code = "JOB_ERROR"
    message = "Job execution failed"


def classify_status(
    status_code: int,
    message: str | None = None,
    retry_after: float | None = None,
) -> FetchError:
    """
    Map an upstream HTTP status to the fetch error taxonomy.

    401/403/404 are fatal for the entity; 408, 429 and 5xx are transient.
    Any other 4xx is treated as fatal since resending the same request
    cannot succeed. ``retry_after`` is kept on transient errors only.
    """
    text = message or f"Upstream returned HTTP {status_code}"
    if status_code in (408, 429) or status_code >= 500:
        return TransientFetchError(text, status_code=status_code, retry_after=retry_after)
    return FatalFetchError(text, status_code=status_code)
