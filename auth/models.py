"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the
issuer/protocol do the work; these only own the domain shape.

Layer rule: no imports from api/, client/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class Account:
    """A registered identity.

    email is stored normalized (stripped, lower-cased) so the UNIQUE index on
    the column is effectively case-insensitive. password_hash is a bcrypt hash,
    never the plaintext.
    """

    id: str
    email: str
    password_hash: str
    created_at: str | None = None


@dataclass
class RefreshTokenRecord:
    """One outstanding refresh token in the registry.

    token is the signed JWT itself and the lookup key (UNIQUE). A record is
    consumed exactly once: the refresh exchange deletes it and inserts its
    replacement in the same transaction.
    """

    token: str
    account_id: str
    expires_at: datetime
    created_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    """Identity claims carried inside a signed token (never stored separately)."""

    account_id: str
    email: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
