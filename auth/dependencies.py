"""
auth/dependencies.py -- Inbound gatekeeper and FastAPI Depends() helpers.

Every protected call must present:

    Authorization: Bearer <access token>

The Gatekeeper verifies the token against the access key and produces a
frozen RequestContext. That typed value is what downstream collaborators
read -- nothing is written onto the Request object. The gatekeeper never
refreshes and never touches storage: it is a pure check, safe to run in
parallel across requests.

get_request_context() is the FastAPI dependency:
    @router.get("/items")
    async def route(ctx: RequestContext = Depends(get_request_context)): ...

Layer rule: auth/dependencies.py may import from fastapi (for Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from fastapi import Request

from auth.errors import Unauthenticated
from auth.tokens import Err, utcnow, verify

logger = logging.getLogger("sprue.auth")

_SCHEME = "bearer"


@dataclass(frozen=True)
class RequestContext:
    """Authenticated identity of the caller, populated once by the Gatekeeper."""

    account_id: str
    email: str
    issued_at: datetime
    expires_at: datetime


class Gatekeeper:
    """Stateless bearer-token check against the access-signing key."""

    def __init__(self, access_secret: str, clock: Callable[[], datetime] = utcnow) -> None:
        self._access_secret = access_secret
        self._clock = clock

    def authenticate(self, authorization: str | None) -> RequestContext:
        """Return the caller's RequestContext or raise Unauthenticated.

        Missing header, wrong scheme, empty or multi-part credentials, bad
        signature and expiry all raise the same Unauthenticated.
        """
        token = _extract_bearer(authorization)
        if token is None:
            raise Unauthenticated()

        result = verify(token, self._access_secret, now=self._clock())
        if isinstance(result, Err):
            logger.debug("Access token rejected: %s", result.reason.value)
            raise Unauthenticated()

        claims = result.claims
        return RequestContext(
            account_id=claims.account_id,
            email=claims.email,
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
        )


def _extract_bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != _SCHEME:
        return None
    return parts[1]


def get_request_context(request: Request) -> RequestContext:
    """Require a valid access token. Raises Unauthenticated (HTTP 401) otherwise."""
    gatekeeper: Gatekeeper = request.app.state.auth.gatekeeper
    return gatekeeper.authenticate(request.headers.get("Authorization"))
