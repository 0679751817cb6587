"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_account is the mapper. Route and dependency code never touches SQL
directly.

Database is the explicit store handle: it is constructed once at process start
(api/main.py lifespan) and passed into every component that needs storage.
There is no module-level engine.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Email uniqueness is enforced by the UNIQUE constraint on accounts.email,
  never by a read-then-write check. Two concurrent signups with the same email
  race on the insert; the loser gets IntegrityError, translated to Conflict.

  verify_credentials() always runs bcrypt, against a dummy hash of the same
  cost when the email is unknown, so response time does not reveal whether an
  account exists [C1].

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import Conflict, Unauthenticated
from auth.models import Account
from auth.passwords import DEFAULT_ROUNDS, hash_password, verify_password

logger = logging.getLogger("sprue.auth")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

accounts_table = Table(
    "accounts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)

refresh_tokens_table = Table(
    "refresh_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(1024), nullable=False, unique=True),
    Column("account_id", String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON makes ON DELETE CASCADE on
    refresh_tokens.account_id effective.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(dt: datetime) -> str:
    """Serialize a UTC datetime with fixed precision so stored strings sort chronologically."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Store handle
# ---------------------------------------------------------------------------


class Database:
    """Owns the SQLAlchemy engine and the schema.

    Usage:
        db = Database("sqlite:///sprue_auth.db")
        store = CredentialStore(db)
        registry = RefreshRegistry(db)
        db.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.url = db_url
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Used by the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for Account records and password verification."""

    def __init__(self, db: Database, bcrypt_rounds: int = DEFAULT_ROUNDS) -> None:
        self._db = db
        self._rounds = bcrypt_rounds
        # Timing equalization dummy hash [C1]. Same cost factor as real hashes,
        # computed once so the first unknown-email login is not measurably faster.
        self._dummy_hash = hash_password("sprue_timing_dummy", rounds=bcrypt_rounds)

    def create_account(self, email: str, password: str) -> Account:
        """Hash the password and insert a new account.

        Raises Conflict if the (normalized) email is already registered. The
        UNIQUE constraint decides -- there is no existence check beforehand.
        """
        account = Account(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            password_hash=hash_password(password, rounds=self._rounds),
            created_at=to_iso(datetime.now(timezone.utc)),
        )
        try:
            with self._db.engine.begin() as conn:
                conn.execute(
                    accounts_table.insert().values(
                        id=account.id,
                        email=account.email,
                        password_hash=account.password_hash,
                        created_at=account.created_at,
                    )
                )
        except IntegrityError as exc:
            raise Conflict() from exc
        logger.info("Account created id=%s", account.id)
        return account

    def verify_credentials(self, email: str, password: str) -> Account:
        """Return the Account if the password matches, else raise Unauthenticated.

        Unknown email and wrong password raise the same exception with the
        same message, after the same amount of bcrypt work.
        """
        account = self.get_by_email(email)
        if account is None:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            verify_password(password, self._dummy_hash)
            raise Unauthenticated()
        if not verify_password(password, account.password_hash):
            raise Unauthenticated()
        return account

    def get_by_email(self, email: str) -> Account | None:
        with self._db.engine.connect() as conn:
            row = conn.execute(
                accounts_table.select().where(accounts_table.c.email == normalize_email(email))
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_account(self, account_id: str) -> Account | None:
        with self._db.engine.connect() as conn:
            row = conn.execute(accounts_table.select().where(accounts_table.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def delete_account(self, account_id: str) -> bool:
        """Delete an account. Returns True if it existed.

        refresh_tokens.account_id cascades on delete, so any token inserted
        after the caller's bulk revoke is removed with the account.
        """
        with self._db.engine.begin() as conn:
            result = conn.execute(accounts_table.delete().where(accounts_table.c.id == account_id))
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        created_at=row.created_at,
    )
