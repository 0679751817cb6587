"""
auth/tokens.py -- JWT token codec (sign / verify).

Security design decisions:
  JWT: python-jose with HS256. Tokens carry sub (account id), email, iat, exp
       and a random jti. The jti makes every token string unique even when two
       tokens for the same account are minted within the same second -- the
       refresh registry keys on the token string, so collisions are not allowed.

  Keys: the caller passes the key. Access tokens and refresh tokens are signed
       with different secrets (Settings.access_token_secret /
       refresh_token_secret), so neither key can forge the other kind.

  Result type: verify() never raises for a bad token. It returns Ok(claims)
       or Err(reason) and the caller branches on the value. Signature and claim
       shape are checked first, expiry second, so a tampered expired token is
       reported as INVALID_SIGNATURE rather than EXPIRED.

  Clock: both functions take an optional `now` so tests can sign tokens in the
       past without sleeping. Expiry is checked here against `now` rather than
       by python-jose, which always uses the wall clock.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from jose import JWTError, jwt

from auth.models import TokenClaims

ALGORITHM = "HS256"


class TokenFailure(str, Enum):
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Ok:
    claims: TokenClaims


@dataclass(frozen=True)
class Err:
    reason: TokenFailure


VerifyResult = Ok | Err


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sign(account_id: str, email: str, key: str, ttl: timedelta, now: datetime | None = None) -> str:
    """Encode a signed JWT for the given identity, valid for `ttl` from `now`."""
    issued = now or utcnow()
    payload = {
        "sub": account_id,
        "email": email,
        "iat": int(issued.timestamp()),
        "exp": int((issued + ttl).timestamp()),
        "jti": secrets.token_urlsafe(16),
    }
    return jwt.encode(payload, key, algorithm=ALGORITHM)


def verify(token: str, key: str, now: datetime | None = None) -> VerifyResult:
    """Verify signature and claim shape, then expiry.

    Returns Ok(TokenClaims) or Err(TokenFailure). Any decoding problem --
    wrong key, altered payload, truncated string, missing claims -- is
    INVALID_SIGNATURE.
    """
    try:
        payload = jwt.decode(token, key, algorithms=[ALGORITHM], options={"verify_exp": False})
    except JWTError:
        return Err(TokenFailure.INVALID_SIGNATURE)

    claims = _claims_from_payload(payload)
    if claims is None:
        return Err(TokenFailure.INVALID_SIGNATURE)
    if claims.expires_at <= (now or utcnow()):
        return Err(TokenFailure.EXPIRED)
    return Ok(claims)


def _claims_from_payload(payload: dict) -> TokenClaims | None:
    sub = payload.get("sub")
    email = payload.get("email")
    iat = payload.get("iat")
    exp = payload.get("exp")
    if not isinstance(sub, str) or not isinstance(email, str):
        return None
    if not isinstance(iat, int) or not isinstance(exp, int):
        return None
    return TokenClaims(
        account_id=sub,
        email=email,
        issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
        expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
    )
