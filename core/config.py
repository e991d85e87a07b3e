"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the auth core happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates a SECRET_KEY with a warning, production
      mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Access-token
       signing and refresh-token HMAC both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("portalauth.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'portal_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 900
    refresh_token_expire_days: int = 7

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    # 5 prior failures -> the 6th attempt is rejected.
    lockout_threshold: int = 5
    lockout_window_seconds: int = 15 * 60
    # Sweep keeps attempts and dead sessions this long.
    retention_days: int = 30

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    password_min_length: int = 8
    bcrypt_rounds: int = 12
    # Upper bound on concurrent bcrypt operations in this process.
    hash_concurrency: int = 4

    # ------------------------------------------------------------------
    # Maintenance / registration
    # ------------------------------------------------------------------

    purge_interval_seconds: int = 6 * 60 * 60
    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Access tokens will not survive restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        """Reject zero or negative thresholds and durations.

        A zero lockout threshold would lock every account permanently; a zero
        token lifetime would issue tokens that are already expired.
        """
        positive = {
            "access_token_expire_seconds": self.access_token_expire_seconds,
            "refresh_token_expire_days": self.refresh_token_expire_days,
            "lockout_threshold": self.lockout_threshold,
            "lockout_window_seconds": self.lockout_window_seconds,
            "retention_days": self.retention_days,
            "password_min_length": self.password_min_length,
            "hash_concurrency": self.hash_concurrency,
            "purge_interval_seconds": self.purge_interval_seconds,
        }
        bad = sorted(name for name, value in positive.items() if value <= 0)
        if bad:
            raise ValueError(f"Settings must be positive: {', '.join(bad)}")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    All modules should call get_settings() rather than constructing Settings()
    directly. In tests: call get_settings.cache_clear() between test cases if
    you need to inject different environment variables.
    """
    return Settings()
