"""Error taxonomy shared by the auth core and the API layer.

Every error carries the user-facing message and HTTP status it is rendered
with. ``UpstreamUnavailable`` is the exception: it is raised by provider and
store adapters and must be caught at the handler boundary, where the request
degrades to dev auth or session-only operation.
"""

from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base class for errors rendered as ``{"message": ...}`` responses."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None, *, errors: Any = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)


class Unauthenticated(AppError):
    """No session, an expired session, or a principal that cannot be renewed."""

    status_code = 401
    default_message = "Unauthorized"


class RefreshFailed(Unauthenticated):
    """The access token expired and could not be refreshed."""


class AuthenticationFailed(Unauthenticated):
    """Credentials were presented and rejected."""

    default_message = "Invalid email or password"


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation error"


class Conflict(AppError):
    status_code = 400
    default_message = "User already exists with this email"


class InvalidResetToken(AppError):
    status_code = 400
    default_message = "Invalid or expired reset token"


class UpstreamUnavailable(AppError):
    """The identity provider or the credential store failed or timed out."""

    status_code = 503
    default_message = "Service temporarily unavailable"
