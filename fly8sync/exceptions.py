"""
Custom Exceptions for Fly8 Sync
===============================

Propagation policy:
    - Channel errors are logged and retried, never raised to callers.
    - Fetch errors are stored on the cache entry (entry.error).
    - Mutation errors are raised to the caller as MutationError.

Usage:
    from fly8sync.exceptions import MutationError, describe_error

    try:
        await view.send("Hello")
    except MutationError as e:
        console.print(describe_error(e))
"""

from typing import Optional, Any, Dict


class Fly8SyncError(Exception):
    """Base exception for all Fly8 sync errors"""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# ============================================
# REST Errors
# ============================================

class ApiError(Fly8SyncError):
    """Backend answered with a non-2xx status"""

    def __init__(self, status_code: int, message: str = "An error occurred",
                 body: Optional[Any] = None):
        super().__init__(
            message,
            code="API_ERROR",
            details={"status_code": status_code, "body": body}
        )
        self.status_code = status_code


class UnauthenticatedError(ApiError):
    """Credential rejected by the backend (401)"""

    def __init__(self, message: str = "Session expired. Please login again.", body: Optional[Any] = None):
        super().__init__(401, message, body)
        self.code = "UNAUTHENTICATED"


class ForbiddenError(ApiError):
    """Authenticated but not allowed (403)"""

    def __init__(self, message: str = "Access forbidden", body: Optional[Any] = None):
        super().__init__(403, message, body)
        self.code = "FORBIDDEN"


class NotFoundError(ApiError):
    """Resource not found (404)"""

    def __init__(self, message: str = "Not found", body: Optional[Any] = None):
        super().__init__(404, message, body)
        self.code = "NOT_FOUND"


class RequestTimeoutError(Fly8SyncError):
    """Request did not finish within its timeout"""

    def __init__(self, timeout: float, target: str = ""):
        super().__init__(
            f"Request timed out after {timeout:g}s" + (f": {target}" if target else ""),
            code="TIMEOUT",
            details={"timeout": timeout, "target": target}
        )


class NetworkError(Fly8SyncError):
    """No response received from the server"""

    def __init__(self, message: str = "No response from server. Please check your connection."):
        super().__init__(message, code="NETWORK_ERROR")


# ============================================
# Channel / Cache Errors
# ============================================

class ChannelError(Fly8SyncError):
    """Event channel failure (logged, never raised to views)"""

    def __init__(self, message: str):
        super().__init__(message, code="CHANNEL_ERROR")


class InvalidQueryKeyError(Fly8SyncError):
    """Query key could not be built or parsed"""

    def __init__(self, value: Any):
        super().__init__(
            f"Invalid query key: {value!r}",
            code="INVALID_QUERY_KEY",
            details={"value": repr(value)}
        )


class MutationError(Fly8SyncError):
    """A mutation failed; the cache was left untouched"""

    def __init__(self, original: Exception, operation: str = "mutation"):
        super().__init__(
            describe_error(original),
            code="MUTATION_FAILED",
            details={"operation": operation, "error_type": type(original).__name__}
        )
        self.original = original


def describe_error(error: Exception) -> str:
    """Get a user-facing message for an error"""
    if isinstance(error, MutationError):
        return error.message
    if isinstance(error, ApiError):
        return error.message or "An error occurred"
    if isinstance(error, (NetworkError, RequestTimeoutError)):
        return error.message
    return str(error) or "An unexpected error occurred"
