from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and the outward ``error`` label
    rendered in the response body. ``message`` is the optional human-readable
    detail; ``details`` carries structured data such as validation failures.
    """

    status_code: int = 400
    error_code: str = "Bad request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        details: Optional[list[Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message or self.error_code)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.details = details


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "Validation failed"


class AuthenticationError(ServiceError):
    """Credentials were presented but rejected (401).

    Token failures never say why they failed; ``MalformedTokenError`` and
    ``ExpiredTokenError`` share this outward label.
    """
    status_code = 401
    error_code = "Authentication failed"


class MalformedTokenError(AuthenticationError):
    """Signature did not validate or the token could not be parsed."""


class ExpiredTokenError(AuthenticationError):
    """The token's ``exp`` claim is in the past."""


class AuthenticationRequiredError(ServiceError):
    """No identity is attached to a request that needs one (401)."""
    status_code = 401
    error_code = "Authentication required"


class NoTokenError(AuthenticationRequiredError):
    """Authorization header missing or without the ``Bearer `` prefix."""

    def __init__(self, message: Optional[str] = "No token provided", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "Forbidden"


class InsufficientPermissionsError(ForbiddenError):
    error_code = "Insufficient permissions"


class AccountDisabledError(ForbiddenError):
    error_code = "Account disabled"


class AuthorizationCheckFailedError(ServiceError):
    """The owning identity of a resource could not be resolved (500).

    Kept apart from ``InsufficientPermissionsError`` so a lookup failure is
    never reported as a denial.
    """
    status_code = 500
    error_code = "Authorization check failed"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "Not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate registration (409)."""
    status_code = 409
    error_code = "Conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429).

    ``retry_after`` is a human-readable wait; ``retry_after_seconds`` feeds the
    ``Retry-After`` header.
    """
    status_code = 429
    error_code = "Too many requests"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        retry_after_seconds: int,
        limit: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after_seconds = max(0, int(retry_after_seconds))
        self.limit = limit

    @property
    def retry_after(self) -> str:
        seconds = self.retry_after_seconds
        if seconds >= 3600 and seconds % 3600 == 0:
            hours = seconds // 3600
            return f"{hours} hour" if hours == 1 else f"{hours} hours"
        minutes = max(1, -(-seconds // 60))
        return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"


class IPBlockedError(ServiceError):
    """Client key is blocked after repeated failures (429).

    ``retry_after`` is the ISO-8601 instant at which the block lifts.
    """
    status_code = 429
    error_code = "IP temporarily blocked"

    def __init__(self, retry_after: str, *, retry_after_seconds: int, **kwargs: Any) -> None:
        super().__init__("Too many failed attempts. Please try again later.", **kwargs)
        self.retry_after = retry_after
        self.retry_after_seconds = max(0, int(retry_after_seconds))


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "MalformedTokenError",
    "ExpiredTokenError",
    "AuthenticationRequiredError",
    "NoTokenError",
    "ForbiddenError",
    "InsufficientPermissionsError",
    "AccountDisabledError",
    "AuthorizationCheckFailedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "IPBlockedError",
]
