"""Error taxonomy shared by the portal's services and routers.

Every error carries the HTTP status it maps to; ``main`` registers a single
handler that renders them as ``{"detail": message}``.
"""
from __future__ import annotations


class PortalError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, *, errors: list[str] | None = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)


class Unauthenticated(PortalError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(PortalError):
    status_code = 403
    default_message = "Access denied"


class AccountRestricted(Forbidden):
    default_message = "Account access restricted. Please contact support."


class ValidationError(PortalError):
    status_code = 400
    default_message = "Invalid request"


class NotFoundError(PortalError):
    status_code = 404
    default_message = "Not found"


class ConflictError(PortalError):
    status_code = 409
    default_message = "Already exists"


class RateLimitedError(PortalError):
    status_code = 429
    default_message = "Too many login attempts. Please try again later."

    def __init__(self, message: str | None = None, *, reset_time: float | None = None,
                 retry_after: int | None = None):
        super().__init__(message)
        self.reset_time = reset_time
        self.retry_after = retry_after


class IntegrityError(PortalError):
    """Stored data violates an invariant (dangling parent, cyclic ancestry)."""

    status_code = 500
    default_message = "Folder hierarchy is inconsistent"


class UpstreamError(PortalError):
    status_code = 502
    default_message = "Storage service unavailable"
