"""
API request and response models for Sprue REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire names are camelCase (accessToken, refreshToken) because the browser
client consumes them directly.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Account, TokenPair

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Pragmatic shape check: one "@", no whitespace, a dot in the domain part.
# Deliverability is not our concern; uniqueness is enforced on the normalized form.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CredentialsRequest(BaseModel):
    """Request body for POST /auth/signup."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)


class LoginRequest(BaseModel):
    """Request body for POST /auth/login.

    Only presence and size are checked. The signup password and email rules
    are not applied here: a short or oddly shaped credential is just a wrong
    credential and gets the same generic 401 as any other.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh."""

    refreshToken: str = Field(min_length=1, max_length=1024)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str


class TokenPairResponse(BaseModel):
    """Response body for POST /auth/refresh."""

    model_config = ConfigDict(frozen=True)

    accessToken: str
    refreshToken: str

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenPairResponse":
        return cls(accessToken=pair.access_token, refreshToken=pair.refresh_token)


class AuthResponse(TokenPairResponse):
    """Response body for POST /auth/signup and POST /auth/login."""

    user: UserInfo

    @classmethod
    def from_account(cls, account: Account, pair: TokenPair) -> "AuthResponse":
        return cls(
            accessToken=pair.access_token,
            refreshToken=pair.refresh_token,
            user=UserInfo(id=account.id, email=account.email),
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
