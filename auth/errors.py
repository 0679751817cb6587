"""
auth/errors.py -- Domain exceptions raised by the credential core.

The API layer maps these onto HTTP status codes (see api/main.py). Messages
are deliberately generic: every authentication failure carries the same text
so a caller cannot tell an unknown email from a wrong password, or an expired
token from a tampered or already-consumed one.
"""

from __future__ import annotations

GENERIC_AUTH_MESSAGE = "Invalid or expired credentials."


class AuthError(Exception):
    """Base class for errors the credential core reports to its callers."""

    code = "auth_error"
    message = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class Conflict(AuthError):
    """The email address is already registered."""

    code = "conflict"
    message = "Email already registered."


class Unauthenticated(AuthError):
    """Bad credentials, or a missing/invalid/expired/consumed token.

    Never carries the specific cause. Log the cause server-side if needed.
    """

    code = "unauthenticated"
    message = GENERIC_AUTH_MESSAGE
