"""
tests/test_config.py -- Unit tests for core/config.py (Settings secret policy).

Covers:
  - Debug mode generates distinct secrets when none are configured
  - Production mode refuses to start without secrets [M7]
  - Short secrets and equal access/refresh secrets are rejected [M6] [K1]
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

GOOD_ACCESS = "a" * 32
GOOD_REFRESH = "r" * 32


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("ACCESS_TOKEN_SECRET", raising=False)
    monkeypatch.delenv("REFRESH_TOKEN_SECRET", raising=False)


def test_debug_generates_distinct_secrets():
    settings = Settings(debug=True)
    assert len(settings.access_token_secret) >= 32
    assert settings.access_token_secret != settings.refresh_token_secret


def test_production_requires_secrets():
    with pytest.raises(ValidationError, match="ACCESS_TOKEN_SECRET is required"):
        Settings(debug=False)


def test_production_accepts_configured_secrets():
    settings = Settings(debug=False, access_token_secret=GOOD_ACCESS, refresh_token_secret=GOOD_REFRESH)
    assert settings.access_token_ttl_seconds == 900
    assert settings.refresh_token_ttl_seconds == 7 * 24 * 60 * 60


def test_short_secret_rejected():
    with pytest.raises(ValidationError, match="at least 32 characters"):
        Settings(debug=True, access_token_secret="short", refresh_token_secret=GOOD_REFRESH)


def test_equal_secrets_rejected():
    with pytest.raises(ValidationError, match="must differ"):
        Settings(debug=True, access_token_secret=GOOD_ACCESS, refresh_token_secret=GOOD_ACCESS)


def test_bcrypt_rounds_floor():
    with pytest.raises(ValidationError):
        Settings(debug=True, bcrypt_rounds=3)


def test_secrets_read_from_environment(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_SECRET", GOOD_ACCESS)
    monkeypatch.setenv("REFRESH_TOKEN_SECRET", GOOD_REFRESH)
    settings = Settings(debug=False)
    assert settings.access_token_secret == GOOD_ACCESS
