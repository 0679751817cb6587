"""
auth/registry.py -- Persistent registry of outstanding refresh tokens.

Each row is one refresh token that may still be exchanged. The token string
is the lookup key (UNIQUE); account_id is indexed for bulk revocation.

Rotation invariant: a token is consumed exactly once. rotate() performs the
check and the retirement as a single conditional DELETE and inserts the
replacement in the same transaction:

    DELETE FROM refresh_tokens WHERE token = :old AND expires_at > :now
    -- rowcount == 1 ?  INSERT new row, COMMIT  :  ROLLBACK, refuse

Two concurrent exchanges of the same token serialize on the row (PostgreSQL
row lock) or on the database write lock (SQLite). The second DELETE matches
nothing, so only one exchange can ever succeed. There is deliberately no
SELECT before the DELETE.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from auth.models import RefreshTokenRecord
from auth.store import Database, from_iso, refresh_tokens_table, to_iso

logger = logging.getLogger("sprue.auth.registry")

_t = refresh_tokens_table


class RefreshRegistry:
    """Repository for RefreshTokenRecord rows."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def add(self, record: RefreshTokenRecord) -> None:
        """Persist a freshly issued refresh token."""
        with self._db.engine.begin() as conn:
            conn.execute(_t.insert().values(**_record_values(record)))

    def rotate(self, old_token: str, replacement: RefreshTokenRecord, now: datetime | None = None) -> bool:
        """Atomically retire `old_token` and persist `replacement`.

        Returns False -- and writes nothing -- if old_token is unknown, already
        consumed, or expired at `now`.
        """
        cutoff = to_iso(now or datetime.now(timezone.utc))
        with self._db.engine.begin() as conn:
            result = conn.execute(_t.delete().where((_t.c.token == old_token) & (_t.c.expires_at > cutoff)))
            if result.rowcount != 1:
                return False
            conn.execute(_t.insert().values(**_record_values(replacement)))
        return True

    def revoke(self, token: str) -> int:
        """Delete the record for `token` if present. Returns the number of rows removed."""
        with self._db.engine.begin() as conn:
            result = conn.execute(_t.delete().where(_t.c.token == token))
        return result.rowcount

    def revoke_all(self, account_id: str) -> int:
        """Delete every refresh token owned by an account."""
        with self._db.engine.begin() as conn:
            result = conn.execute(_t.delete().where(_t.c.account_id == account_id))
        return result.rowcount

    def get(self, token: str) -> RefreshTokenRecord | None:
        with self._db.engine.connect() as conn:
            row = conn.execute(_t.select().where(_t.c.token == token)).fetchone()
        return _row_to_record(row) if row is not None else None

    def count_for_account(self, account_id: str) -> int:
        with self._db.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_t).where(_t.c.account_id == account_id)).scalar()
        return result or 0

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete all expired records. Returns number of rows removed."""
        cutoff = to_iso(now or datetime.now(timezone.utc))
        with self._db.engine.begin() as conn:
            result = conn.execute(_t.delete().where(_t.c.expires_at <= cutoff))
        if result.rowcount:
            logger.info("Purged %d expired refresh tokens", result.rowcount)
        return result.rowcount


def _record_values(record: RefreshTokenRecord) -> dict:
    return {
        "token": record.token,
        "account_id": record.account_id,
        "expires_at": to_iso(record.expires_at),
        "created_at": to_iso(record.created_at),
    }


def _row_to_record(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        token=row.token,
        account_id=row.account_id,
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
    )
