"""
auth/sessions.py -- Session Registry: one row per logical login.

Pattern: Repository + Data Mapper. SessionRegistry owns the user_sessions
table exclusively; the Token Service goes through its public methods.

State per row:
  active   -- revoked_at IS NULL and expires_at > now
  revoked  -- revoked_at set (logout, password change, reuse detection)
  expired  -- expires_at <= now; treated exactly like revoked, no sweep needed

Both terminal states are absorbing: nothing here ever clears revoked_at or
extends expires_at.

Rotation is a compare-and-swap keyed on the previous token hash:

    UPDATE user_sessions SET refresh_token_hash = :new
    WHERE id = :id AND refresh_token_hash = :old AND revoked_at IS NULL

Of two concurrent rotations presenting the same token, exactly one matches
the WHERE clause; the other sees rowcount == 0 and loses.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import case, func, or_, select
from sqlalchemy.engine import Engine

from auth.db import count_by, to_iso, user_sessions, utcnow
from auth.models import SessionStatistics, SessionSummary, UserSession

logger = logging.getLogger("portalauth.sessions")


class SessionRegistry:
    """Repository for UserSession rows."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def _now(self) -> str:
        return to_iso(self._clock())

    def is_active(self, session: UserSession) -> bool:
        return session.revoked_at is None and session.expires_at > self._now()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        user_id: str,
        client_meta: str,
        family: str,
        refresh_token_hash: str,
        expires_at: datetime,
    ) -> UserSession:
        """Insert a new session for a fresh login and return it."""
        now = self._now()
        session = UserSession(
            id=uuid.uuid4().hex,
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            refresh_token_family=family,
            created_at=now,
            last_used_at=now,
            expires_at=to_iso(expires_at),
            client_meta=(client_meta or "")[:255],
        )
        with self.engine.connect() as conn:
            conn.execute(
                user_sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    refresh_token_hash=session.refresh_token_hash,
                    refresh_token_family=session.refresh_token_family,
                    created_at=session.created_at,
                    last_used_at=session.last_used_at,
                    expires_at=session.expires_at,
                    client_meta=session.client_meta,
                )
            )
            conn.commit()
        logger.info("Session created (id=%s user=%s)", session.id, user_id)
        return session

    def rotate(self, session_id: str, expected_hash: str, new_hash: str) -> bool:
        """Swap the refresh hash only if it still equals expected_hash.

        Returns False when another rotation already won, or the session was
        revoked in the meantime.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                user_sessions.update()
                .where(
                    (user_sessions.c.id == session_id)
                    & (user_sessions.c.refresh_token_hash == expected_hash)
                    & (user_sessions.c.revoked_at.is_(None))
                )
                .values(refresh_token_hash=new_hash, last_used_at=self._now())
            )
        return result.rowcount == 1

    def revoke(self, session_id: str, reason: str, user_id: str | None = None) -> bool:
        """Revoke one session.

        user_id, when given, must own the session (IDOR guard). Returns False
        if the session does not exist, is owned by someone else, or was already
        revoked -- a second logout is a no-op, not an error.
        """
        cond = (user_sessions.c.id == session_id) & (user_sessions.c.revoked_at.is_(None))
        if user_id is not None:
            cond = cond & (user_sessions.c.user_id == user_id)
        with self.engine.connect() as conn:
            result = conn.execute(user_sessions.update().where(cond).values(revoked_at=self._now(), revoked_reason=reason))
            conn.commit()
        return result.rowcount > 0

    def revoke_family(self, family: str, reason: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                user_sessions.update()
                .where((user_sessions.c.refresh_token_family == family) & (user_sessions.c.revoked_at.is_(None)))
                .values(revoked_at=self._now(), revoked_reason=reason)
            )
            conn.commit()
        if result.rowcount:
            logger.warning("Session family %s revoked (%s)", family, reason)
        return result.rowcount > 0

    def revoke_all(self, user_id: str, reason: str, except_session_id: str | None = None) -> int:
        """Revoke every unrevoked session of a user. Returns the number revoked."""
        cond = (user_sessions.c.user_id == user_id) & (user_sessions.c.revoked_at.is_(None))
        if except_session_id is not None:
            cond = cond & (user_sessions.c.id != except_session_id)
        with self.engine.connect() as conn:
            result = conn.execute(user_sessions.update().where(cond).values(revoked_at=self._now(), revoked_reason=reason))
            conn.commit()
        logger.info("Revoked %d session(s) for user %s (%s)", result.rowcount, user_id, reason)
        return result.rowcount

    def purge_expired(self, cutoff: datetime) -> int:
        """Delete rows that expired or were revoked before cutoff. Storage reclamation only."""
        iso = to_iso(cutoff)
        with self.engine.connect() as conn:
            result = conn.execute(
                user_sessions.delete().where(
                    or_(user_sessions.c.expires_at < iso, user_sessions.c.revoked_at < iso),
                )
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> UserSession | None:
        with self.engine.connect() as conn:
            row = conn.execute(user_sessions.select().where(user_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_by_family(self, family: str) -> UserSession | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                user_sessions.select().where(user_sessions.c.refresh_token_family == family)
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def list(
        self,
        user_id: str,
        include_inactive: bool = False,
        current_session_id: str | None = None,
    ) -> list[SessionSummary]:
        """Return the user's sessions, newest first.

        Revoked and expired sessions are excluded unless include_inactive is
        set. Summaries never carry token material.
        """
        stmt = user_sessions.select().where(user_sessions.c.user_id == user_id)
        if not include_inactive:
            stmt = stmt.where(user_sessions.c.revoked_at.is_(None), user_sessions.c.expires_at > self._now())
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(user_sessions.c.created_at.desc())).fetchall()
        return [
            SessionSummary(
                id=r.id,
                client_meta=r.client_meta,
                created_at=r.created_at,
                last_used_at=r.last_used_at,
                expires_at=r.expires_at,
                revoked_at=r.revoked_at,
                is_current=r.id == current_session_id,
            )
            for r in rows
        ]

    def statistics(self, top: int = 10) -> SessionStatistics:
        """Partition every stored session into active, revoked and expired.

        A session that is both revoked and past expiry counts as revoked.
        by_user lists the users holding the most active sessions.
        """
        now = self._now()
        live = user_sessions.c.revoked_at.is_(None) & (user_sessions.c.expires_at > now)
        totals = select(
            func.count().label("total"),
            func.count(case((live, 1))).label("active"),
            func.count(user_sessions.c.revoked_at).label("revoked"),
        ).select_from(user_sessions)
        with self.engine.connect() as conn:
            row = conn.execute(totals).one()
            by_user = count_by(conn, user_sessions.c.user_id, live, top=top)
        return SessionStatistics(
            total=row.total,
            active=row.active,
            revoked=row.revoked,
            expired=row.total - row.active - row.revoked,
            by_user=by_user,
        )


def _row_to_session(row) -> UserSession:
    return UserSession(
        id=row.id,
        user_id=row.user_id,
        refresh_token_hash=row.refresh_token_hash,
        refresh_token_family=row.refresh_token_family,
        created_at=row.created_at,
        last_used_at=row.last_used_at,
        expires_at=row.expires_at,
        client_meta=row.client_meta,
        revoked_at=row.revoked_at,
        revoked_reason=row.revoked_reason,
    )
