"""
auth/issuer.py -- Token issuance and the refresh rotation protocol.

TokenIssuer mints access/refresh pairs. RefreshProtocol exchanges a refresh
token for a new pair (rotate-on-use) and revokes tokens on logout.

Refresh token states:

    Active  --exchange-->  Consumed   (row deleted, replacement inserted)
    Active  --revoke---->  Consumed   (row deleted)
    Expired / Unknown                 (terminal, always refused)

Every refusal raises the same Unauthenticated. The reason (bad signature,
expired, unknown, already used) is logged, never returned.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.errors import Unauthenticated
from auth.models import Account, RefreshTokenRecord, TokenPair
from auth.registry import RefreshRegistry
from auth.tokens import Err, sign, utcnow, verify

logger = logging.getLogger("sprue.auth")


class TokenIssuer:
    """Signs token pairs and records refresh tokens in the registry."""

    def __init__(
        self,
        registry: RefreshRegistry,
        access_secret: str,
        refresh_secret: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    def mint(self, account_id: str, email: str) -> tuple[TokenPair, RefreshTokenRecord]:
        """Sign a new pair without persisting anything.

        Returns the pair and the registry record the caller must store for the
        refresh token.
        """
        now = self._clock()
        pair = TokenPair(
            access_token=sign(account_id, email, self._access_secret, self.access_ttl, now=now),
            refresh_token=sign(account_id, email, self._refresh_secret, self.refresh_ttl, now=now),
        )
        record = RefreshTokenRecord(
            token=pair.refresh_token,
            account_id=account_id,
            expires_at=now + self.refresh_ttl,
            created_at=now,
        )
        return pair, record

    def issue_pair(self, account: Account) -> TokenPair:
        """Mint a pair for `account` and persist exactly one registry row."""
        pair, record = self.mint(account.id, account.email)
        self._registry.add(record)
        return pair


class RefreshProtocol:
    """Rotation state machine over the refresh registry."""

    def __init__(
        self,
        issuer: TokenIssuer,
        registry: RefreshRegistry,
        refresh_secret: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._issuer = issuer
        self._registry = registry
        self._refresh_secret = refresh_secret
        self._clock = clock

    def exchange(self, refresh_token: str) -> TokenPair:
        """Consume `refresh_token` and return a freshly issued pair.

        1. Verify signature, then expiry, against the refresh key.
        2. Mint the replacement pair (pure, nothing stored yet).
        3. In one transaction: delete the presented row if it is still active
           and insert the replacement row. Nothing matched means the token is
           unknown, expired, or was consumed by a concurrent exchange.
        """
        now = self._clock()
        result = verify(refresh_token, self._refresh_secret, now=now)
        if isinstance(result, Err):
            logger.info("Refresh refused: %s", result.reason.value)
            raise Unauthenticated()

        claims = result.claims
        pair, record = self._issuer.mint(claims.account_id, claims.email)
        if not self._registry.rotate(refresh_token, record, now=now):
            # A validly signed token with no active row: replayed, revoked,
            # or lost a race against a concurrent exchange.
            logger.warning("Refresh refused: token not active for account=%s", claims.account_id)
            raise Unauthenticated()
        return pair

    def revoke(self, refresh_token: str) -> None:
        """Delete the registry row for `refresh_token`, if any.

        Idempotent and silent: never reports whether the token existed.
        """
        self._registry.revoke(refresh_token)

    def revoke_all(self, account_id: str) -> int:
        removed = self._registry.revoke_all(account_id)
        logger.info("Revoked %d refresh tokens for account=%s", removed, account_id)
        return removed
