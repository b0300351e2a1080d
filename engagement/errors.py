"""
Error taxonomy for the engagement engine.

- StoreUnavailable: the shared store is down, slow or refusing commands.
  Read paths swallow it and return defaults; write paths surface it.
- InvalidIdentity: a real-time connection presented a bad token.

Absence of data (cold product, empty category) is never an error.
"""

from typing import Any, Dict, Optional


class EngagementError(Exception):
    """Base exception carrying an HTTP status for the API layer."""

    code = "ENGAGEMENT_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class StoreUnavailable(EngagementError):
    """Raised when a store operation fails or times out."""

    code = "STORE_UNAVAILABLE"

    def __init__(self, operation: str, error: Optional[BaseException] = None):
        message = f"Store unavailable during '{operation}'. Please try again."
        details: Dict[str, Any] = {"operation": operation}
        if error is not None:
            details["error"] = str(error)
            details["error_type"] = type(error).__name__
        super().__init__(message=message, status_code=503, details=details)
        self.operation = operation


class InvalidIdentity(EngagementError):
    """Raised when an identity token is missing, malformed or expired."""

    code = "INVALID_IDENTITY"

    def __init__(self, reason: str):
        super().__init__(
            message=f"Invalid identity token: {reason}",
            status_code=401,
            details={"reason": reason},
        )
        self.reason = reason


class RateLimited(EngagementError):
    """Raised when an identity exceeds its request window."""

    code = "RATE_LIMITED"

    def __init__(self, identity: str, limit: int, window_seconds: int):
        super().__init__(
            message="Too many requests, please try again later.",
            status_code=429,
            details={"limit": limit, "window_seconds": window_seconds},
        )
        self.identity = identity
