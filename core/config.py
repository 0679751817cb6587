"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Sprue happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_settings() instead, or
better, accept a Settings instance in the constructor.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Only the
      process entry points (lifespan, rate limiter) call it; every component
      receives the Settings object through its constructor.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET).

  @model_validator(mode="after"): Cross-field validation of the two signing
      secrets once every field has been resolved.

Security notes:
  [M6] Secrets shorter than 32 chars are rejected outright. HS256 signing
       relies on key entropy -- a short key weakens every token.

  [M7] In production mode (DEBUG not set or false), a missing secret is a
       hard startup failure.

  [K1] Access and refresh tokens are signed with different keys so a leaked
       access-signing key cannot forge refresh tokens and vice versa. Equal
       keys are refused at startup.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or client/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sprue.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'sprue_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = _DEFAULT_DB_URL
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:4200"])

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # either generates a dev key or raises, so callers never see "".
    access_token_secret: str = ""
    refresh_token_secret: str = ""

    access_token_ttl_seconds: int = Field(default=15 * 60, gt=0)
    refresh_token_ttl_seconds: int = Field(default=7 * 24 * 60 * 60, gt=0)

    # Expired refresh tokens are rejected lazily; this only trims the table.
    refresh_purge_interval_seconds: int = Field(default=6 * 60 * 60, gt=0)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    # bcrypt cost factor (log2 rounds). 12 is ~250ms on commodity hardware.
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce signing-secret policy [M6] [M7] [K1].

        Dev mode (DEBUG=true): auto-generate random secrets with a warning.
            Tokens will not survive a restart -- acceptable for local dev.

        Production mode: refuse to start if either secret is missing.

        Both modes: reject secrets shorter than 32 characters and refuse to
            run with the same secret for both token kinds.
        """
        for name in ("access_token_secret", "refresh_token_secret"):
            value = getattr(self, name)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                setattr(self, name, secrets.token_hex(32))
                logger.warning("Using auto-generated %s. Tokens will not persist across restarts.", name.upper())
            elif len(value) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
