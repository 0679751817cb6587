"""
api/routes/v1/account.py -- Account endpoints (all require a bearer token).

Routes:
  GET    /api/v1/account  -- identity of the caller
  DELETE /api/v1/account  -- delete the caller's account

Deleting an account revokes every refresh token it owns. Access tokens
already issued stay valid until they expire (at most the access TTL): the
gatekeeper does not consult storage.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import MessageResponse, UserInfo
from auth.dependencies import RequestContext, get_request_context
from auth.errors import Unauthenticated
from auth.service import AuthService

router = APIRouter()


@router.get("/account", response_model=UserInfo)
def whoami(ctx: RequestContext = Depends(get_request_context)) -> UserInfo:
    return UserInfo(id=ctx.account_id, email=ctx.email)


@router.delete("/account", response_model=MessageResponse)
def delete_account(request: Request, ctx: RequestContext = Depends(get_request_context)) -> MessageResponse:
    """Delete the authenticated account and revoke all of its refresh tokens.

    A token for an account that no longer exists is treated like any other
    unusable credential (401).
    """
    service: AuthService = request.app.state.auth
    if not service.delete_account(ctx.account_id):
        raise Unauthenticated()
    return MessageResponse(message="Account and all associated data deleted.")
