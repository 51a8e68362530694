"""
auth/errors.py -- Exception taxonomy for the authentication core.

Every exception carries the HTTP status and machine-readable code the API
layer should emit, so api/main.py maps the whole family with one handler.
Messages are safe to show to clients: none of them reveals whether an email
address is registered.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for errors surfaced to the caller as an error envelope."""

    status_code: int = 400
    code: str = "BAD_REQUEST"
    message: str = "Request failed."

    def __init__(self, message: str | None = None, *, errors: list[dict] | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)
        self.errors = errors or []


# ---------------------------------------------------------------------------
# 400
# ---------------------------------------------------------------------------


class ValidationError(AuthError):
    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Validation failed."


class PasswordMismatch(ValidationError):
    code = "PASSWORD_MISMATCH"
    message = "Passwords do not match."


class WrongCurrentPassword(ValidationError):
    code = "WRONG_CURRENT_PASSWORD"
    message = "Current password is incorrect."


# ---------------------------------------------------------------------------
# 401
# ---------------------------------------------------------------------------


class InvalidCredentials(AuthError):
    status_code = 401
    code = "INVALID_CREDENTIALS"
    message = "Invalid email or password."


class MissingToken(AuthError):
    status_code = 401
    code = "MISSING_TOKEN"
    message = "Authentication required."


class TokenInvalid(AuthError):
    """Signature, shape, or kind check failed. Deliberately non-specific."""

    status_code = 401
    code = "TOKEN_INVALID"
    message = "Invalid token."


class TokenKindMismatch(TokenInvalid):
    """Raised internally for a wrong `kind` claim; indistinguishable on the wire."""


class TokenExpired(TokenInvalid):
    """The only token failure clients can tell apart, so they know to refresh."""

    code = "TOKEN_EXPIRED"
    message = "Token expired."


class Revoked(AuthError):
    status_code = 401
    code = "TOKEN_REVOKED"
    message = "Refresh token has been revoked."


class PrincipalNotFound(AuthError):
    status_code = 401
    code = "TOKEN_INVALID"
    message = "Invalid token."


class IdentityVerificationFailed(AuthError):
    status_code = 401
    code = "SOCIAL_TOKEN_INVALID"
    message = "Could not verify the identity provider token."


# ---------------------------------------------------------------------------
# 403 / 404 / 409 / 500
# ---------------------------------------------------------------------------


class Forbidden(AuthError):
    status_code = 403
    code = "FORBIDDEN"
    message = "You do not have permission to perform this action."


class AccountBlocked(AuthError):
    status_code = 403
    code = "ACCOUNT_BLOCKED"
    message = "This account is blocked."


class NotFound(AuthError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Resource not found."


class Conflict(AuthError):
    status_code = 409
    code = "CONFLICT"
    message = "A user with that email already exists."


class StoreUnavailable(AuthError):
    status_code = 500
    code = "INTERNAL_ERROR"
    message = "An unexpected error occurred."
