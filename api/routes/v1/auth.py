"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/signup   -- create account; returns token pair + user (201)
  POST /api/v1/auth/login    -- password login; returns token pair + user
  POST /api/v1/auth/refresh  -- exchange refresh token for a new pair (rotation)
  POST /api/v1/auth/logout   -- revoke refresh token; always 200

Security:
  [H2] signup and login are rate-limited per IP (Settings.login_rate_limit).
  [C1] CredentialStore.verify_credentials() provides timing equalization.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Every 401 carries the same generic message regardless of cause.

The outbound client treats everything under /api/v1/auth/ as exempt from
refresh-and-retry and never attaches a bearer token there, so no route in
this module may require one. Protected identity routes live in account.py.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    AuthResponse,
    CredentialsRequest,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    TokenPairResponse,
)
from auth.errors import Unauthenticated
from auth.service import AuthService

logger = logging.getLogger("sprue.api")

# Auth policy:
# - POST /api/v1/auth/signup:   public
# - POST /api/v1/auth/login:    public
# - POST /api/v1/auth/refresh:  public -- the refresh token is the credential
# - POST /api/v1/auth/logout:   public -- revoking needs no prior auth
router = APIRouter()


def _no_store(payload: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=payload)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/signup", response_model=AuthResponse, status_code=201)
def signup(request: Request, body: CredentialsRequest) -> JSONResponse:
    """Create an account and return its first token pair.

    A taken email raises Conflict (409). The check is the UNIQUE constraint
    itself, so two concurrent signups cannot both succeed.
    """
    service: AuthService = request.app.state.auth
    account, pair = service.signup(body.email, body.password)
    return _no_store(AuthResponse.from_account(account, pair).model_dump(), status_code=201)


@limiter.limit(login_rate_limit)  # [H2] brute-force mitigation
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email and wrong password produce the same 401 body after the same
    bcrypt work, so neither the response nor its timing reveals which failed.
    """
    service: AuthService = request.app.state.auth
    try:
        account, pair = service.login(body.email, body.password)
    except Unauthenticated:
        logger.warning("Failed login from %s", request.client.host if request.client else "unknown")
        raise
    return _no_store(AuthResponse.from_account(account, pair).model_dump())


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is consumed.

    Invalid, expired, revoked and already-used tokens all return the same 401.
    """
    service: AuthService = request.app.state.auth
    pair = service.refresh(body.refreshToken)
    return _no_store(TokenPairResponse.from_pair(pair).model_dump())


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(request: Request) -> MessageResponse:
    """Revoke the refresh token in the body, if any. Always 200.

    The body is optional and read leniently: a missing, empty or malformed
    body is not an error, and the response never says whether a token was
    revoked.
    """
    service: AuthService = request.app.state.auth
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    token = payload.get("refreshToken") if isinstance(payload, dict) else None
    if isinstance(token, str) and token:
        service.logout(token)
    return MessageResponse(message="Logged out.")

