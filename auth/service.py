r"""
auth/service.py -- AuthService: the facade every other module calls.

Composes the Credential Store, Login Attempt Tracker, Token Service, Session
Registry and Audit Log. Each step below goes through a component's public
method; the facade never touches a table itself.

Session lineage states:

    Unauthenticated -> Authenticating -> Active -> Refreshing -> Active
                                                \-> Revoked   (absorbing)
                                                \-> Expired   (absorbing)

Only a fresh login() leads back to Active.

Every failure is raised as an AuthError subclass (auth/errors.py). Nothing in
here exits the process or hides a storage error.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta

from sqlalchemy.engine import Engine

from auth.attempts import LoginAttemptTracker
from auth.audit import AuditLog
from auth.db import create_db_engine, utcnow
from auth.errors import InvalidCredentials, RateLimited, SessionNotFound, TokenReused
from auth.models import (
    AuditEvent,
    AuditLogEntry,
    AuthStatistics,
    Identity,
    IssuedTokens,
    Page,
    Role,
    SessionSummary,
    User,
    UserProfile,
)
from auth.sessions import SessionRegistry
from auth.store import UserStore, normalize_email
from auth.tokens import TokenService
from core.config import Settings, get_settings

logger = logging.getLogger("portalauth.auth")


class AuthService:
    """register / login / refresh / logout / change_password / list_sessions / me, plus admin reporting."""

    def __init__(
        self,
        engine: Engine,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.engine = engine
        self._clock = clock
        self.users = UserStore(engine, clock)
        self.attempts = LoginAttemptTracker(engine, self.settings, clock)
        self.sessions = SessionRegistry(engine, clock)
        self.tokens = TokenService(self.sessions, self.users, self.settings, clock)
        self.audit = AuditLog(engine, clock)

    @classmethod
    def from_url(cls, db_url: str | None = None, settings: Settings | None = None) -> AuthService:
        settings = settings or get_settings()
        return cls(create_db_engine(db_url or settings.database_url), settings)

    def close(self) -> None:
        self.audit.close()
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Registration / login
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        role: Role = Role.VIEWER,
        first_name: str = "",
        last_name: str = "",
    ) -> str:
        """Create an account. No session is started -- the caller logs in next."""
        return self.users.create(email, password, role, first_name=first_name, last_name=last_name)

    def login(self, email: str, password: str, origin_key: str, client_meta: str = "") -> IssuedTokens:
        """Authenticate and open a new session.

        The lockout check runs before any bcrypt work, so a locked account
        costs the attacker a round trip and nothing more -- and a locked
        unknown email looks identical to a locked real one.
        """
        identifier = normalize_email(email)
        if self.attempts.is_locked(identifier, origin_key):
            self.audit.record(
                AuditEvent.ACCOUNT_LOCKED,
                None,
                {
                    "identifier": identifier,
                    "origin": origin_key,
                    "account_failures": self.attempts.failure_count(identifier=identifier),
                    "origin_failures": self.attempts.failure_count(origin_key=origin_key),
                    "window_seconds": self.settings.lockout_window_seconds,
                },
            )
            raise RateLimited()

        try:
            identity = self.users.verify(identifier, password)
        except InvalidCredentials:
            self.attempts.record_attempt(identifier, origin_key, False, "invalid_credentials")
            user = self.users.get_by_email(identifier)
            if user is None:
                reason = "unknown_email"
            elif not user.is_active:
                reason = "inactive_account"
            else:
                reason = "bad_password"
            self.audit.record(
                AuditEvent.LOGIN_FAILURE,
                user.id if user else None,
                {"identifier": identifier, "origin": origin_key, "reason": reason},
            )
            logger.info("Login failed from %s (%s)", origin_key, reason)
            raise

        self.attempts.record_attempt(identifier, origin_key, True)
        self.users.update_last_login(identity.user_id)
        issued = self.tokens.issue(identity.user_id, identity.role, client_meta)
        self.audit.record(
            AuditEvent.LOGIN_SUCCESS,
            identity.user_id,
            {"origin": origin_key, "session_id": issued.session_id, "client": client_meta},
        )
        logger.info("Login succeeded (user=%s session=%s)", identity.user_id, issued.session_id)
        return issued

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    def authenticate(self, access_token: str) -> Identity:
        """Verify an access token. Stateless; raises TokenExpired / TokenMalformed."""
        return self.tokens.verify_access(access_token)

    def refresh(self, refresh_token: str) -> IssuedTokens:
        try:
            issued = self.tokens.rotate_refresh(refresh_token)
        except TokenReused as exc:
            self.audit.record(
                AuditEvent.TOKEN_REUSE_DETECTED,
                exc.user_id,
                {"session_id": exc.session_id, "reason": "refresh_token_reuse"},
            )
            logger.warning("Refresh token reuse detected (user=%s session=%s)", exc.user_id, exc.session_id)
            raise
        self.audit.record(AuditEvent.TOKEN_REFRESH, issued.user_id, {"session_id": issued.session_id})
        return issued

    def logout(self, identity: Identity) -> None:
        """Revoke the session the access token belongs to.

        A second call for the same session raises SessionNotFound -- a no-op
        signal, not a sign of corruption.
        """
        if identity.session_id is None or not self.sessions.revoke(
            identity.session_id, "logout", user_id=identity.user_id
        ):
            raise SessionNotFound()
        self.audit.record(
            AuditEvent.SESSION_REVOKED,
            identity.user_id,
            {"session_id": identity.session_id, "reason": "logout"},
        )

    def logout_all(self, identity: Identity) -> int:
        """Revoke every session of the caller, including the current one."""
        count = self.sessions.revoke_all(identity.user_id, "logout_all")
        self.audit.record(
            AuditEvent.SESSION_REVOKED,
            identity.user_id,
            {"session_id": identity.session_id, "reason": "logout_all", "count": count},
        )
        return count

    def revoke_session(self, identity: Identity, session_id: str) -> None:
        """Revoke one of the caller's own sessions (e.g. a lost device)."""
        if not self.sessions.revoke(session_id, "revoked_by_user", user_id=identity.user_id):
            raise SessionNotFound()
        self.audit.record(
            AuditEvent.SESSION_REVOKED,
            identity.user_id,
            {"session_id": session_id, "reason": "revoked_by_user", "by_session": identity.session_id},
        )

    def list_sessions(self, identity: Identity, include_inactive: bool = False) -> list[SessionSummary]:
        return self.sessions.list(
            identity.user_id,
            include_inactive=include_inactive,
            current_session_id=identity.session_id,
        )

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    def change_password(self, identity: Identity, current_password: str, new_password: str) -> None:
        """Verify the current password, store the new one, revoke every session.

        Default policy is "revoke all, re-authenticate": the session that made
        the change is revoked too.
        """
        user = self.users.get_by_id(identity.user_id)
        if user is None:
            raise InvalidCredentials()
        self.users.verify(user.email, current_password)
        self.users.set_password(user.id, new_password)
        revoked = self.sessions.revoke_all(user.id, "password_changed")
        self.audit.record(
            AuditEvent.PASSWORD_CHANGED,
            user.id,
            {"session_id": identity.session_id, "revoked_sessions": revoked},
        )

    def me(self, access_token: str) -> UserProfile:
        identity = self.tokens.verify_access(access_token)
        user = self.users.get_by_id(identity.user_id)
        if user is None or not user.is_active:
            raise InvalidCredentials()
        return _profile(user)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def set_active(self, user_id: str, active: bool) -> bool:
        """Activate or deactivate a user. Deactivation ends every session at once.

        Returns False if user_id does not exist.
        """
        if not self.users.set_active(user_id, active):
            return False
        if not active:
            count = self.sessions.revoke_all(user_id, "account_deactivated")
            self.audit.record(
                AuditEvent.SESSION_REVOKED,
                user_id,
                {"reason": "account_deactivated", "count": count},
            )
        return True

    def set_role(self, user_id: str, role: Role) -> bool:
        """Change a user's role. Takes effect on the next token refresh."""
        return self.users.set_role(user_id, role)

    def list_users(
        self,
        role: Role | None = None,
        active: bool | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Page:
        """Page of UserProfile. Password hashes never leave the store."""
        page = self.users.list_users(role=role, active=active, search=search, offset=offset, limit=limit)
        return replace(page, items=[_profile(u) for u in page.items])

    def audit_events(
        self,
        user_id: str | None = None,
        event_type: AuditEvent | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditLogEntry]:
        self.audit.flush()
        return self.audit.list_events(user_id=user_id, event_type=event_type, limit=limit, offset=offset)

    def audit_page(
        self,
        user_id: str | None = None,
        event_type: AuditEvent | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Page:
        """Like audit_events, with the total number of matching events."""
        items = self.audit_events(user_id=user_id, event_type=event_type, limit=limit, offset=offset)
        total = self.audit.count_events(user_id=user_id, event_type=event_type)
        return Page(items=items, total=total, offset=offset, limit=limit)

    def statistics(self, top: int = 10) -> AuthStatistics:
        """One reporting snapshot across all four stores."""
        self.audit.flush()
        return AuthStatistics(
            users=self.users.statistics(),
            attempts=self.attempts.statistics(top),
            sessions=self.sessions.statistics(top),
            audit=self.audit.statistics(top),
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge(self, now: datetime | None = None) -> tuple[int, int]:
        """Reclaim storage: dead sessions and attempts older than the retention period.

        Correctness never depends on this running -- expiry is checked lazily.
        Returns (sessions_deleted, attempts_deleted).
        """
        cutoff = (now or self._clock()) - timedelta(days=self.settings.retention_days)
        sessions_deleted = self.sessions.purge_expired(cutoff)
        attempts_deleted = self.attempts.purge_before(cutoff)
        logger.info("Purged %d session(s) and %d attempt(s)", sessions_deleted, attempts_deleted)
        return sessions_deleted, attempts_deleted


def _profile(user: User) -> UserProfile:
    return UserProfile(
        user_id=user.id,
        email=user.email,
        role=user.role,
        first_name=user.first_name,
        last_name=user.last_name,
        is_active=user.is_active,
        created_at=user.created_at,
        last_login_at=user.last_login_at,
    )
