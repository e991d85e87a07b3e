"""
auth/passwords.py -- Password hashing and strength policy.

Security design decisions:
  bcrypt directly (no passlib wrapper). passlib's wrap-bug detection builds a
  password longer than 72 bytes, which bcrypt 4.x+ rejects outright. Direct
  bcrypt usage has no compatibility shim and is actively maintained.

  72-byte ceiling: bcrypt only looks at the first 72 bytes and current
  releases raise on longer input, so check_strength() rejects such passwords
  as WeakPassword instead of letting them reach hashpw().

  Bounded hashing: bcrypt is CPU-bound and deliberately slow. _HASH_SLOTS
  caps how many hashes run at once (Settings.hash_concurrency) so a burst of
  logins queues up instead of starving every request worker.

  _DUMMY_HASH enables timing equalization in UserStore.verify() so response
  time does not reveal whether an email exists [C1].
"""

from __future__ import annotations

import re
import threading

import bcrypt

from auth.errors import WeakPassword
from core.config import get_settings

_settings = get_settings()

_HASH_SLOTS = threading.BoundedSemaphore(_settings.hash_concurrency)

_MAX_PASSWORD_BYTES = 72

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")
_SYMBOL = re.compile(r"[^A-Za-z0-9]")


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    with _HASH_SLOTS:
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=_settings.bcrypt_rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Any bcrypt error (malformed hash, over-long input) is a mismatch.
    """
    with _HASH_SLOTS:
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            return False


def check_strength(plain: str) -> None:
    """Raise WeakPassword unless the password meets the portal policy.

    Policy: min length from settings, at most 72 UTF-8 bytes, and at least one
    lower-case letter, upper-case letter, digit and symbol.
    """
    if len(plain) < _settings.password_min_length:
        raise WeakPassword(f"Password must be at least {_settings.password_min_length} characters long.")
    if len(plain.encode("utf-8")) > _MAX_PASSWORD_BYTES:
        raise WeakPassword(f"Password must be at most {_MAX_PASSWORD_BYTES} bytes long.")
    missing = [
        label
        for label, pattern in (
            ("a lower-case letter", _LOWER),
            ("an upper-case letter", _UPPER),
            ("a number", _DIGIT),
            ("a special character", _SYMBOL),
        )
        if not pattern.search(plain)
    ]
    if missing:
        raise WeakPassword("Password must contain " + ", ".join(missing) + ".")


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones [C1].
_DUMMY_HASH: str = hash_password("portalauth_timing_dummy")
