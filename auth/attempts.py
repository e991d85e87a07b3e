"""
auth/attempts.py -- Login Attempt Tracker: append-only attempt log + lockout.

Lockout is a pure query over recorded history, never a mutable counter:

    failures(identifier) = failed attempts for the account
                           inside the sliding window
                           recorded after the account's most recent success

    failures(origin)     = every failed attempt from the origin
                           inside the sliding window

    locked = failures(identifier) >= threshold or failures(origin) >= threshold

Because the decision is a read over an append-only table, concurrent failing
requests can never lose an increment -- each one inserts its own row. Two
requests that both read "not locked" in the same instant are both allowed to
proceed, and the next reader sees both rows. That bounded race errs toward
more logging, never toward a silent bypass.

"After the most recent success" uses the autoincrement id rather than the
timestamp, so ordering holds even when two rows share an occurred_at.

The account key and the origin key are checked independently: one IP against
many accounts trips the origin key; many IPs against one account trip the
account key. A success resets only the account count; the origin count is
never cleared by a success.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import case, func, select
from sqlalchemy.engine import Engine

from auth.db import count_by, login_attempts, to_iso, utcnow
from auth.models import AttemptStatistics
from core.config import Settings, get_settings

logger = logging.getLogger("portalauth.auth")


class LoginAttemptTracker:
    """Records login attempts and derives lockout state from them."""

    def __init__(
        self,
        engine: Engine,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self._settings = settings or get_settings()
        self._clock = clock

    @property
    def threshold(self) -> int:
        return self._settings.lockout_threshold

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self._settings.lockout_window_seconds)

    def record_attempt(
        self,
        identifier: str,
        origin_key: str,
        succeeded: bool,
        reason: str | None = None,
    ) -> int:
        """Append one attempt row and return its id. Never updates existing rows."""
        with self.engine.connect() as conn:
            result = conn.execute(
                login_attempts.insert().values(
                    identifier=identifier,
                    origin_key=origin_key,
                    succeeded=succeeded,
                    occurred_at=to_iso(self._clock()),
                    failure_reason=None if succeeded else reason,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def failure_count(self, identifier: str | None = None, origin_key: str | None = None) -> int:
        """Failures in the window for exactly one of the two keys.

        By identifier: only failures after the account's latest success.
        By origin_key: every failure in the window.
        """
        if (identifier is None) == (origin_key is None):
            raise ValueError("Pass exactly one of identifier or origin_key.")
        window_start = to_iso(self._clock() - self.window)

        if identifier is not None:
            last_success = (
                select(func.coalesce(func.max(login_attempts.c.id), 0))
                .where(login_attempts.c.identifier == identifier, login_attempts.c.succeeded.is_(True))
                .scalar_subquery()
            )
            key_filter = [login_attempts.c.identifier == identifier, login_attempts.c.id > last_success]
        else:
            key_filter = [login_attempts.c.origin_key == origin_key]

        stmt = (
            select(func.count())
            .select_from(login_attempts)
            .where(
                *key_filter,
                login_attempts.c.succeeded.is_(False),
                login_attempts.c.occurred_at >= window_start,
            )
        )
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar() or 0

    def is_locked(self, identifier: str, origin_key: str) -> bool:
        """True if either the account key or the origin key has hit the threshold."""
        by_account = self.failure_count(identifier=identifier)
        if by_account >= self.threshold:
            logger.warning("Lockout active for account (failures=%d)", by_account)
            return True
        by_origin = self.failure_count(origin_key=origin_key)
        if by_origin >= self.threshold:
            logger.warning("Lockout active for origin %s (failures=%d)", origin_key, by_origin)
            return True
        return False

    def statistics(self, top: int = 10) -> AttemptStatistics:
        """Totals over every retained attempt plus the busiest identifiers and origins."""
        totals = select(
            func.count().label("total"),
            func.count(case((login_attempts.c.succeeded.is_(True), 1))).label("succeeded"),
        ).select_from(login_attempts)
        with self.engine.connect() as conn:
            row = conn.execute(totals).one()
            by_identifier = count_by(conn, login_attempts.c.identifier, top=top)
            by_origin = count_by(conn, login_attempts.c.origin_key, top=top)
        return AttemptStatistics(
            total=row.total,
            succeeded=row.succeeded,
            failed=row.total - row.succeeded,
            by_identifier=by_identifier,
            by_origin=by_origin,
        )

    def purge_before(self, cutoff: datetime) -> int:
        """Delete attempts older than cutoff. Retention sweep only."""
        with self.engine.connect() as conn:
            result = conn.execute(login_attempts.delete().where(login_attempts.c.occurred_at < to_iso(cutoff)))
            conn.commit()
        return result.rowcount
