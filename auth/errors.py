"""
auth/errors.py -- Typed error taxonomy for the auth core.

Every failure the core can report is an AuthError subclass with a stable
machine-readable `code` and a caller-safe `message`. Messages are generic on
purpose: InvalidCredentials never says whether the email exists, RateLimited
never says how long the lockout lasts. Full detail goes to the audit log.

The HTTP adapter maps `code` to a status via `status_code`; the core itself
knows nothing about HTTP beyond that hint.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all auth core failures."""

    code: str = "auth_error"
    message: str = "Authentication failed."
    status_code: int = 400

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message


class InvalidCredentials(AuthError):
    """Bad email, bad password, or inactive account -- intentionally indistinguishable."""

    code = "invalid_credentials"
    message = "Invalid email or password."
    status_code = 401


class DuplicateEmail(AuthError):
    code = "duplicate_email"
    message = "An account with this email already exists."
    status_code = 409


class WeakPassword(AuthError):
    code = "weak_password"
    message = "Password does not meet the strength requirements."
    status_code = 400


class InvalidEmail(AuthError):
    code = "invalid_email"
    message = "Invalid email format."
    status_code = 400


class RateLimited(AuthError):
    code = "rate_limited"
    message = "Too many failed attempts. Please try again later."
    status_code = 429


class TokenExpired(AuthError):
    code = "token_expired"
    message = "Token has expired."
    status_code = 401


class TokenMalformed(AuthError):
    code = "token_malformed"
    message = "Token is invalid."
    status_code = 401


class TokenReused(AuthError):
    """A rotated-away refresh token was presented. The whole lineage is revoked.

    Not recoverable for that session: the caller must log in again.
    """

    code = "token_reused"
    message = "Refresh token has already been used. Please log in again."
    status_code = 401

    def __init__(self, user_id: str | None = None, session_id: str | None = None) -> None:
        super().__init__()
        self.user_id = user_id
        self.session_id = session_id


class TokenRevoked(AuthError):
    code = "token_revoked"
    message = "Session has been revoked. Please log in again."
    status_code = 401


class SessionNotFound(AuthError):
    code = "session_not_found"
    message = "Session not found."
    status_code = 404
