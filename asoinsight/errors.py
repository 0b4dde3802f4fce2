"""Custom exceptions and error handling for the analytics service."""
from typing import Dict, Any, Optional


class AnalyticsError(Exception):
    """Base exception for analytics errors.

    ``kind`` is the stable, machine-readable identifier returned to callers.
    ``status_code`` follows HTTP semantics (4xx caller error, 5xx upstream).
    """

    kind = "InternalError"
    status_code = 500
    retryable = False
    outcome = "error"

    def __init__(self, message: str, details: Dict[str, Any] = None, hint: Optional[str] = None):
        self.message = message
        self.details = details or {}
        self.hint = hint
        super().__init__(self.message)


class InvalidRequestError(AnalyticsError):
    """Raised when the request body fails validation."""
    kind = "InvalidRequest"
    status_code = 400


class MalformedCredentialError(AnalyticsError):
    """Raised when the bearer credential is empty or structurally invalid."""
    kind = "MalformedCredential"
    status_code = 401
    outcome = "denied"


class UnauthenticatedError(AnalyticsError):
    """Raised when the credential does not map to a known identity."""
    kind = "Unauthenticated"
    status_code = 401
    outcome = "denied"


class NoAccessibleOrganizationError(AnalyticsError):
    """Raised for an identity with no home organization that is not elevated."""
    kind = "NoAccessibleOrganization"
    status_code = 403
    outcome = "denied"


class AccessDeniedError(AnalyticsError):
    """Raised when an explicitly requested resource is outside the caller's scope."""
    kind = "AccessDenied"
    status_code = 403
    outcome = "denied"


class WarehouseUnavailableError(AnalyticsError):
    """Transport, timeout or transient warehouse failure. Retryable with backoff."""
    kind = "WarehouseUnavailable"
    status_code = 503
    retryable = True


class WarehouseQueryRejectedError(AnalyticsError):
    """The warehouse rejected the query. Not retryable, indicates a planner defect."""
    kind = "WarehouseQueryRejected"
    status_code = 502


class CacheCorruptionError(AnalyticsError):
    """A cached value could not be decoded. Recovered locally as a cache miss."""
    kind = "CacheCorruption"


def create_error_response(request_id: str, error: Exception) -> Dict[str, Any]:
    """
    Create a standardized error body that doesn't leak system information.

    Args:
        request_id: The request id assigned by the service
        error: The exception that occurred

    Returns:
        Dictionary containing sanitized error details
    """
    if isinstance(error, AnalyticsError) and not isinstance(error, CacheCorruptionError):
        error_output = {
            "kind": error.kind,
            "message": error.message,
            "retryable": error.retryable,
        }
        if error.hint:
            error_output["hint"] = error.hint
        if error.details and error.status_code < 500:
            error_output["details"] = error.details
    else:
        # Generic message for unexpected errors to prevent info leakage
        error_output = {
            "kind": "InternalError",
            "message": "An internal error occurred. Please contact support.",
            "retryable": False,
        }

    return {"error": error_output, "request_id": request_id}


def status_code_for(error: Exception) -> int:
    """HTTP status for an exception raised while serving a request."""
    if isinstance(error, AnalyticsError) and not isinstance(error, CacheCorruptionError):
        return error.status_code
    return 500
