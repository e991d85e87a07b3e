"""Tests for core/config.py -- Settings validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings, get_settings

GOOD_KEY = "k" * 32


@pytest.fixture(autouse=True)
def _no_secret_env(monkeypatch):
    monkeypatch.delenv("SECRET_KEY", raising=False)


def test_defaults() -> None:
    s = Settings(debug=True, secret_key=GOOD_KEY, bcrypt_rounds=12)
    assert s.lockout_threshold == 5
    assert s.lockout_window_seconds == 900
    assert s.access_token_expire_seconds == 900
    assert s.refresh_token_expire_days == 7
    assert s.self_registration_enabled is True


def test_debug_generates_secret_key() -> None:
    s = Settings(debug=True, secret_key="")
    assert len(s.secret_key) >= 32


def test_production_requires_secret_key() -> None:
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(debug=False, secret_key="")


def test_short_secret_key_rejected() -> None:
    with pytest.raises(ValidationError, match="at least 32"):
        Settings(debug=True, secret_key="short")


@pytest.mark.parametrize("field", ["lockout_threshold", "lockout_window_seconds", "access_token_expire_seconds"])
def test_non_positive_limits_rejected(field: str) -> None:
    with pytest.raises(ValidationError, match=field):
        Settings(debug=True, secret_key=GOOD_KEY, **{field: 0})


@pytest.mark.parametrize("rounds", [3, 32])
def test_bcrypt_rounds_bounds(rounds: int) -> None:
    with pytest.raises(ValidationError, match="BCRYPT_ROUNDS"):
        Settings(debug=True, secret_key=GOOD_KEY, bcrypt_rounds=rounds)


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("LOCKOUT_THRESHOLD", "3")
    monkeypatch.setenv("SELF_REGISTRATION_ENABLED", "false")
    s = Settings(debug=True, secret_key=GOOD_KEY)
    assert s.lockout_threshold == 3
    assert s.self_registration_enabled is False


def test_get_settings_is_cached() -> None:
    assert get_settings() is get_settings()
