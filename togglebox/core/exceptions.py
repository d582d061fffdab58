"""
Custom Exception Classes for ToggleBox.

This module defines all custom exceptions raised by the client.
Each exception carries a machine-readable error code and maps to an HTTP
status code when surfaced through the FastAPI integration.

Exception Hierarchy:
    ToggleBoxError (base)
    ├── ConfigurationError (500)
    ├── NetworkError (502)
    ├── InvalidSnapshotError (502)
    ├── InvalidContextError (422)
    ├── FlushFailureError (502)
    └── CacheError (500)

Only InvalidContextError and ConfigurationError are raised to application
code. The others are reported through logs and the client's error callbacks.
"""

from typing import Any


class ToggleBoxError(Exception):
    """
    Base exception for all ToggleBox errors.

    Attributes:
        message: Human-readable error description.
        error_code: Machine-readable error identifier.
        status_code: HTTP status code used by the FastAPI integration.
        details: Additional error context (optional).
    """

    def __init__(
        self,
        message: str,
        error_code: str = "TOGGLEBOX_ERROR",
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details,
            }
        }


# =============================================================================
# Caller Errors
# =============================================================================

class ConfigurationError(ToggleBoxError):
    """
    Raised when client options are invalid.

    Examples:
        - api_url is not an http(s) URL
        - stats_batch_size larger than stats_buffer_size
    """

    def __init__(
        self,
        message: str = "Invalid client configuration",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            status_code=500,
            details=details,
        )


class InvalidContextError(ToggleBoxError):
    """
    Raised when a targeting context cannot be used for the requested decision.

    HTTP Status: 422 Unprocessable Entity

    Experiment assignment needs a stable user identity. Defaulting a missing
    user_id would silently break bucketing determinism, so the error is
    raised to the caller instead.
    """

    def __init__(
        self,
        message: str = "A non-empty user_id is required",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            error_code="INVALID_CONTEXT",
            status_code=422,
            details=details,
        )


# =============================================================================
# Backend Errors
# =============================================================================

class NetworkError(ToggleBoxError):
    """
    Raised when a request to the backend fails.

    Attributes:
        http_status: Status code returned by the backend, or None when the
            request never got a response (DNS, connect, timeout).
    """

    def __init__(
        self,
        message: str = "Backend request failed",
        http_status: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.http_status = http_status
        super().__init__(
            message=message,
            error_code="NETWORK_ERROR",
            status_code=502,
            details=details or {"http_status": http_status},
        )

    @property
    def is_client_error(self) -> bool:
        """True for 4xx responses, which will not succeed on retry."""
        return self.http_status is not None and 400 <= self.http_status < 500


class InvalidSnapshotError(ToggleBoxError):
    """
    Raised when a snapshot payload is malformed.

    The payload is rejected as a whole; the previously cached snapshot is
    kept.
    """

    def __init__(
        self,
        message: str = "Snapshot payload is invalid",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            error_code="INVALID_SNAPSHOT",
            status_code=502,
            details=details,
        )


class FlushFailureError(ToggleBoxError):
    """Raised (and reported, never propagated) when a stats batch is not delivered."""

    def __init__(
        self,
        message: str = "Failed to deliver stats batch",
        event_count: int = 0,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.event_count = event_count
        super().__init__(
            message=message,
            error_code="FLUSH_FAILURE",
            status_code=502,
            details=details or {"event_count": event_count},
        )


class CacheError(ToggleBoxError):
    """
    Raised when a persisted cache operation fails (non-fatal, logged only).

    Note: Persisted cache errors are never propagated to callers; the client
    keeps working from the in-memory snapshot and the network.
    """

    def __init__(
        self,
        message: str = "Cache operation failed",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            error_code="CACHE_ERROR",
            status_code=500,
            details=details,
        )
