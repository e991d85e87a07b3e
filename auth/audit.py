"""
auth/audit.py -- Append-only security audit log.

Write paths:
  Critical events (login success/failure, lockout, reuse detection, password
  change, revocation) are inserted synchronously: record() returns only after
  the row is committed, so the triggering request is not complete until its
  audit trail is durable.

  TOKEN_REFRESH is high-volume and non-critical. It is handed to a single
  background worker thread and written shortly after. flush() waits for the
  queue to drain; close() drains and stops the worker.

The class exposes insert and query methods only. There is deliberately no
update or delete: retention and export belong to external reporting.

context is stored as a JSON object. Never put passwords or raw tokens in it.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from auth.db import audit_logs, count_by, to_iso, utcnow
from auth.models import AuditEvent, AuditLogEntry, AuditStatistics

logger = logging.getLogger("portalauth.audit")

NON_CRITICAL_EVENTS = frozenset({AuditEvent.TOKEN_REFRESH})


class AuditLog:
    """Security event recorder."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit")
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def record(self, event_type: AuditEvent, user_id: str | None = None, context: dict | None = None) -> None:
        """Record one event. Blocks until durable unless the event is non-critical."""
        event_type = AuditEvent(event_type)
        entry = AuditLogEntry(
            event_type=event_type,
            user_id=user_id,
            context=dict(context or {}),
            occurred_at=to_iso(self._clock()),
        )
        if event_type in NON_CRITICAL_EVENTS:
            future = self._executor.submit(self._insert, entry)
            with self._lock:
                self._pending.add(future)
            future.add_done_callback(self._on_done)
            return
        self._insert(entry)

    def _insert(self, entry: AuditLogEntry) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                audit_logs.insert().values(
                    user_id=entry.user_id,
                    event_type=entry.event_type.value,
                    occurred_at=entry.occurred_at,
                    context=json.dumps(entry.context, sort_keys=True, default=str),
                )
            )
            conn.commit()

    def _on_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        exc = future.exception()
        if exc is not None:
            logger.error("Background audit write failed: %r", exc)

    def flush(self, timeout: float | None = None) -> None:
        """Wait until every queued background write has finished."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def list_events(
        self,
        user_id: str | None = None,
        event_type: AuditEvent | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditLogEntry]:
        """Return events newest first, optionally filtered by user and type."""
        stmt = audit_logs.select().where(*_filters(user_id, event_type))
        stmt = stmt.order_by(audit_logs.c.id.desc()).offset(offset).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_entry(r) for r in rows]

    def count_events(self, user_id: str | None = None, event_type: AuditEvent | None = None) -> int:
        stmt = select(func.count()).select_from(audit_logs).where(*_filters(user_id, event_type))
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar() or 0

    def statistics(self, top: int = 10) -> AuditStatistics:
        """Event totals by type, by user (busiest first) and by UTC calendar day."""
        day = func.substr(audit_logs.c.occurred_at, 1, 10).label("day")
        per_day = select(day, func.count().label("n")).group_by(day).order_by(day)
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(audit_logs)).scalar() or 0
            by_event = count_by(conn, audit_logs.c.event_type)
            by_user = count_by(conn, audit_logs.c.user_id, top=top)
            by_date = {r.day: r.n for r in conn.execute(per_day)}
        return AuditStatistics(
            total=total,
            by_event={event.value: by_event.get(event.value, 0) for event in AuditEvent},
            by_user={(uid if uid is not None else "anonymous"): n for uid, n in by_user.items()},
            by_date=by_date,
        )


def _filters(user_id: str | None, event_type: AuditEvent | None) -> list:
    conds = []
    if user_id is not None:
        conds.append(audit_logs.c.user_id == user_id)
    if event_type is not None:
        conds.append(audit_logs.c.event_type == AuditEvent(event_type).value)
    return conds


def _row_to_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        user_id=row.user_id,
        event_type=AuditEvent(row.event_type),
        occurred_at=row.occurred_at,
        context=json.loads(row.context or "{}"),
    )
