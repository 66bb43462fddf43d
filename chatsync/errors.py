"""
Error taxonomy shared by the server and the sync client.

Every error carries the HTTP status it maps to and a stable machine-readable
code. The server turns them into {"detail", "code"} responses; the client
maps responses back onto the same classes.
"""

from typing import Any, Optional


class ChatSyncError(Exception):
    """Base class for all chat sync errors."""

    status_code: int = 500
    code: str = "internal_error"
    retryable: bool = False

    def __init__(self, message: str = "Internal server error", details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class ValidationError(ChatSyncError):
    """Malformed or oversized input, unknown participant. Never retried."""

    status_code = 400
    code = "validation_error"


class AuthenticationError(ChatSyncError):
    """Missing or unknown caller identity."""

    status_code = 401
    code = "authentication_error"

    def __init__(self, message: str = "Authentication required", details: Optional[Any] = None):
        super().__init__(message, details)


class AuthorizationError(ChatSyncError):
    """Caller is not allowed to touch the resource. Never retried."""

    status_code = 403
    code = "forbidden"

    def __init__(self, message: str = "Access denied", details: Optional[Any] = None):
        super().__init__(message, details)


class NotFoundError(ChatSyncError):
    status_code = 404
    code = "not_found"

    def __init__(self, message: str = "Resource not found", details: Optional[Any] = None):
        super().__init__(message, details)


class ConflictError(ChatSyncError):
    """Uniqueness race. Absorbed internally, never sent to clients."""

    status_code = 409
    code = "conflict"

    def __init__(self, message: str = "Resource conflict", details: Optional[Any] = None):
        super().__init__(message, details)


class StoreError(ChatSyncError):
    """Underlying persistence failure."""

    status_code = 500
    code = "store_error"

    def __init__(self, message: str = "Internal server error", details: Optional[Any] = None):
        super().__init__(message, details)


class TransientNetworkError(ChatSyncError):
    """Timeout, connection reset, offline or a 5xx answer."""

    status_code = 503
    code = "transient_network"
    retryable = True

    def __init__(self, message: str = "Network unavailable", details: Optional[Any] = None):
        super().__init__(message, details)


_BY_STATUS = {
    400: ValidationError,
    401: AuthenticationError,
    403: AuthorizationError,
    404: NotFoundError,
    409: ConflictError,
    422: ValidationError,
}


def error_for_status(status_code: int, message: str) -> ChatSyncError:
    """
    Map an HTTP error status onto the taxonomy.

    5xx and 429 answers are transient: the request may succeed later.
    """
    if status_code >= 500 or status_code == 429:
        return TransientNetworkError(message)
    error_cls = _BY_STATUS.get(status_code, ValidationError)
    return error_cls(message)
