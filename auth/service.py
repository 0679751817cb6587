"""
auth/service.py -- Composition of the credential core.

AuthService wires CredentialStore, RefreshRegistry, TokenIssuer,
RefreshProtocol and Gatekeeper from one Settings object and one Database
handle, and exposes the operations the HTTP layer calls. Build it once at
process start and share it; it holds no per-request state.

Usage:
    db = Database(settings.database_url)
    service = AuthService(settings, db)
    account, pair = service.signup("a@x.com", "Secret123!")
    pair = service.refresh(pair.refresh_token)
    service.logout(pair.refresh_token)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.dependencies import Gatekeeper
from auth.issuer import RefreshProtocol, TokenIssuer
from auth.models import Account, TokenPair
from auth.registry import RefreshRegistry
from auth.store import CredentialStore, Database
from auth.tokens import utcnow
from core.config import Settings

logger = logging.getLogger("sprue.auth")


class AuthService:
    def __init__(self, settings: Settings, db: Database, clock: Callable[[], datetime] = utcnow) -> None:
        self.settings = settings
        self.db = db
        self.store = CredentialStore(db, bcrypt_rounds=settings.bcrypt_rounds)
        self.registry = RefreshRegistry(db)
        self.issuer = TokenIssuer(
            self.registry,
            access_secret=settings.access_token_secret,
            refresh_secret=settings.refresh_token_secret,
            access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
            refresh_ttl=timedelta(seconds=settings.refresh_token_ttl_seconds),
            clock=clock,
        )
        self.protocol = RefreshProtocol(
            self.issuer,
            self.registry,
            refresh_secret=settings.refresh_token_secret,
            clock=clock,
        )
        self.gatekeeper = Gatekeeper(settings.access_token_secret, clock=clock)

    def signup(self, email: str, password: str) -> tuple[Account, TokenPair]:
        """Create an account and issue its first pair. Raises Conflict on a taken email."""
        account = self.store.create_account(email, password)
        return account, self.issuer.issue_pair(account)

    def login(self, email: str, password: str) -> tuple[Account, TokenPair]:
        """Verify credentials and issue a pair. Raises Unauthenticated."""
        account = self.store.verify_credentials(email, password)
        return account, self.issuer.issue_pair(account)

    def refresh(self, refresh_token: str) -> TokenPair:
        return self.protocol.exchange(refresh_token)

    def logout(self, refresh_token: str) -> None:
        self.protocol.revoke(refresh_token)

    def delete_account(self, account_id: str) -> bool:
        """Revoke every refresh token of the account, then delete it."""
        self.protocol.revoke_all(account_id)
        deleted = self.store.delete_account(account_id)
        if deleted:
            logger.info("Account deleted id=%s", account_id)
        return deleted
