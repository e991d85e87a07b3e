"""
auth/tokens.py -- Token Service: access-token signing, refresh-token rotation.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens are signed with SECRET_KEY and
       carry user id (sub), role, session id (sid), type, iat, exp and jti.
       verify_access() is a pure signature + expiry check -- no database
       lookup, so it is cheap enough to run on every authenticated request.

  Refresh tokens: opaque "<family>.<random>" strings. The family prefix lets
       a stale token be traced back to its lineage for reuse detection; the
       random part (secrets.token_urlsafe(48), 384 bits) makes guessing
       infeasible. Only HMAC-SHA256(SECRET_KEY, token) is stored. The hash is
       deterministic so the registry can compare it in a WHERE clause, and a
       stolen database alone does not yield usable tokens.

  Rotation: every refresh swaps the stored hash with a compare-and-swap on
       the previous hash. A token whose hash is not the current one for its
       family has already been rotated away -- that is treated as theft, the
       whole family is revoked, and TokenReused is raised. Losing the CAS race
       counts as reuse too, so of two concurrent refreshes with the same token
       exactly one succeeds.

  Lineage expiry is absolute: rotation never pushes expires_at forward.

Signing-key rotation is out of scope; SECRET_KEY is fixed per process.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError

from auth.db import to_iso, utcnow
from auth.errors import TokenExpired, TokenMalformed, TokenReused, TokenRevoked
from auth.models import Identity, IssuedTokens, Role
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.sessions import SessionRegistry
    from auth.store import UserStore

logger = logging.getLogger("portalauth.auth")

_ALGORITHM = "HS256"

_FAMILY_RE = re.compile(r"^[0-9a-f]{32}$")


class TokenService:
    """Mints, verifies and rotates tokens. Persists lineages via SessionRegistry."""

    def __init__(
        self,
        sessions: SessionRegistry,
        users: UserStore,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sessions = sessions
        self.users = users
        self._settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Access tokens (stateless)
    # ------------------------------------------------------------------

    def create_access_token(self, user_id: str, role: Role, session_id: str) -> str:
        now = self._clock()
        payload = {
            "sub": user_id,
            "role": Role(role).value,
            "sid": session_id,
            "type": "access",
            "iat": now,
            "exp": now + timedelta(seconds=self._settings.access_token_expire_seconds),
            "jti": secrets.token_hex(8),
        }
        return jwt.encode(payload, self._settings.secret_key, algorithm=_ALGORITHM)

    def verify_access(self, token: str) -> Identity:
        """Decode and verify an access token.

        Raises TokenExpired for a valid-but-stale token and TokenMalformed for
        anything else (bad signature, wrong type, missing or unknown claims).
        """
        try:
            payload = jwt.decode(token, self._settings.secret_key, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTError as exc:
            raise TokenMalformed() from exc
        if payload.get("type") != "access" or not payload.get("sub") or not payload.get("sid"):
            raise TokenMalformed()
        try:
            role = Role(payload.get("role"))
        except ValueError as exc:
            raise TokenMalformed() from exc
        return Identity(user_id=payload["sub"], role=role, session_id=payload["sid"])

    # ------------------------------------------------------------------
    # Refresh tokens (stateful, rotated)
    # ------------------------------------------------------------------

    def hash_refresh_token(self, raw_token: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string."""
        return hmac.new(
            self._settings.secret_key.encode(),
            raw_token.encode(),
            hashlib.sha256,
        ).hexdigest()

    @staticmethod
    def _new_refresh_token(family: str) -> str:
        return f"{family}.{secrets.token_urlsafe(48)}"

    @staticmethod
    def _family_of(raw_token: str) -> str:
        family, sep, secret = raw_token.partition(".")
        if not sep or not secret or not _FAMILY_RE.match(family):
            raise TokenMalformed()
        return family

    def _issued(self, user_id: str, role: Role, session_id: str, refresh_token: str) -> IssuedTokens:
        return IssuedTokens(
            access_token=self.create_access_token(user_id, role, session_id),
            refresh_token=refresh_token,
            session_id=session_id,
            user_id=user_id,
            expires_in=self._settings.access_token_expire_seconds,
        )

    def issue(self, user_id: str, role: Role, client_meta: str = "") -> IssuedTokens:
        """Start a new lineage: create the session row and mint both tokens."""
        family = uuid.uuid4().hex
        refresh_token = self._new_refresh_token(family)
        session = self.sessions.create(
            user_id=user_id,
            client_meta=client_meta,
            family=family,
            refresh_token_hash=self.hash_refresh_token(refresh_token),
            expires_at=self._clock() + timedelta(days=self._settings.refresh_token_expire_days),
        )
        return self._issued(user_id, role, session.id, refresh_token)

    def rotate_refresh(self, raw_token: str) -> IssuedTokens:
        """Exchange a refresh token for a new access + refresh pair.

        Raises:
            TokenMalformed: not a refresh token at all.
            TokenRevoked:   unknown lineage, revoked lineage, or the user is
                            missing/deactivated (the session is revoked too).
            TokenReused:    the token was already rotated away, or a
                            concurrent refresh won the race. The family is
                            revoked before raising.
            TokenExpired:   the lineage reached its absolute expiry.
        """
        family = self._family_of(raw_token)
        session = self.sessions.get_by_family(family)
        if session is None or session.revoked_at is not None:
            raise TokenRevoked()

        presented = self.hash_refresh_token(raw_token)
        if not hmac.compare_digest(presented, session.refresh_token_hash):
            self.sessions.revoke_family(family, "reuse_detected")
            raise TokenReused(user_id=session.user_id, session_id=session.id)

        if session.expires_at <= to_iso(self._clock()):
            raise TokenExpired()

        user = self.users.get_by_id(session.user_id)
        if user is None or not user.is_active:
            self.sessions.revoke(session.id, "account_inactive")
            raise TokenRevoked()

        new_token = self._new_refresh_token(family)
        if not self.sessions.rotate(session.id, presented, self.hash_refresh_token(new_token)):
            current = self.sessions.get(session.id)
            if current is not None and current.revoked_at is not None and current.refresh_token_hash == presented:
                # Revoked (logout, password change) between our read and the swap.
                raise TokenRevoked()
            self.sessions.revoke_family(family, "reuse_detected")
            raise TokenReused(user_id=session.user_id, session_id=session.id)

        return self._issued(user.id, user.role, session.id, new_token)
