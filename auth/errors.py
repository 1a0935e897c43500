"""
auth/errors.py -- Domain exceptions raised by the auth service.

Every failure the auth core can report is an AuthError subclass carrying a
stable machine-readable code, the HTTP status the API layer answers with, and
a user-safe message. api/main.py registers a single exception handler that
turns any AuthError into the standard error envelope, so routes never map
errors one by one.

None of these are fatal: each one is a normal, recoverable outcome of a
request. Persistence failures are not wrapped here and surface as 500s.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every recoverable auth failure."""

    code: str = "auth_error"
    status_code: int = 400
    message: str = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message


# ---------------------------------------------------------------------------
# Single-use link state (invite, password reset)
# ---------------------------------------------------------------------------


class TokenNotFound(AuthError):
    code = "not_found"
    message = "Link is invalid."


class TokenAlreadyUsed(AuthError):
    code = "already_used"
    message = "Link has already been used."


class TokenExpired(AuthError):
    code = "expired"
    message = "Link has expired."


# ---------------------------------------------------------------------------
# Registration / password policy
# ---------------------------------------------------------------------------


class DuplicateIdentity(AuthError):
    code = "duplicate_identity"
    message = "Email or username already in use."


class WeakPassword(AuthError):
    code = "weak_password"
    message = "Password must be at least 8 characters long."


class InvalidProfile(AuthError):
    code = "invalid_profile"
    message = "Username and name must not be blank."


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class InvalidCredentials(AuthError):
    # Same message for unknown email and wrong password.
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid email or password."


class RateLimited(AuthError):
    code = "rate_limited"
    status_code = 401
    message = "Too many login attempts. Please try again later."

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class AccountDisabled(AuthError):
    code = "account_disabled"
    status_code = 401
    message = "User account is disabled."


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class InvalidOrExpiredToken(AuthError):
    code = "invalid_or_expired_token"
    status_code = 401
    message = "Refresh token is invalid or has expired."


class InvalidSignature(AuthError):
    code = "invalid_signature"
    status_code = 401
    message = "Token signature is invalid."


# ---------------------------------------------------------------------------
# User management
# ---------------------------------------------------------------------------


class UserNotFound(AuthError):
    code = "user_not_found"
    message = "User not found."


class InvalidUserUpdate(AuthError):
    code = "invalid_user_update"
    message = "That change is not allowed."
