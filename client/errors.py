"""client/errors.py -- Exceptions raised by the outbound credential manager."""

from __future__ import annotations

import httpx


class AuthenticationError(Exception):
    """A call could not be authenticated and will not be retried.

    Raised when the refresh exchange fails (credentials are cleared), when no
    refresh token is held, or when a queued retry was cancelled by logout.
    `response` is the original 401 response when there was one.
    """

    def __init__(self, message: str, response: httpx.Response | None = None) -> None:
        super().__init__(message)
        self.response = response
