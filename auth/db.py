"""
auth/db.py -- SQLAlchemy Core schema and engine factory for the auth core.

Four logical tables, one per owning component:
  users           -- Credential Store (auth/store.py)
  login_attempts  -- Login Attempt Tracker (auth/attempts.py)
  user_sessions   -- Session Registry (auth/sessions.py)
  audit_logs      -- Audit Log (auth/audit.py)

Components share the engine but only ever touch their own table. No foreign
keys between audit_logs and the entity tables: audit rows reference users and
sessions by id and must outlive them.

Timestamps are ISO 8601 UTC strings with fixed microsecond precision, so
string comparison in SQL orders them the same way as the datetimes do.

Security:
  All queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # normalized lower-case
    Column("password_hash", Text, nullable=False),
    Column("role", String(16), nullable=False, server_default="VIEWER"),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
)

login_attempts = Table(
    "login_attempts",
    metadata,
    # Autoincrement id doubles as the insertion order for "since last success".
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identifier", String(255), nullable=False),
    Column("origin_key", String(64), nullable=False),
    Column("succeeded", Boolean, nullable=False),
    Column("occurred_at", String(32), nullable=False),
    Column("failure_reason", String(64)),
    Index("ix_login_attempts_identifier", "identifier", "occurred_at"),
    Index("ix_login_attempts_origin", "origin_key", "occurred_at"),
)

user_sessions = Table(
    "user_sessions",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("refresh_token_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("refresh_token_family", String(32), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
    Column("last_used_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("client_meta", String(255), nullable=False, server_default=""),
    Column("revoked_at", String(32)),
    Column("revoked_reason", String(64)),
)

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32), index=True),  # NULL for pre-auth failures
    Column("event_type", String(32), nullable=False, index=True),
    Column("occurred_at", String(32), nullable=False),
    Column("context", Text, nullable=False, server_default="{}"),  # JSON object
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL lets readers proceed while a writer holds the lock. Set per-connection
    because SQLite PRAGMAs are not inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_db_engine(db_url: str) -> Engine:
    """Create the shared engine and make sure all four tables exist."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # Request workers run in a thread pool; writers wait up to 30s for the lock.
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize an aware datetime as fixed-width UTC ISO 8601."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


# ---------------------------------------------------------------------------
# Aggregate helpers
# ---------------------------------------------------------------------------


def count_by(conn, column, *where, top: int | None = None) -> dict:
    """Row counts grouped by column, largest group first. top caps the number of groups."""
    n = func.count().label("n")
    stmt = select(column, n).where(*where).group_by(column).order_by(n.desc(), column)
    if top is not None:
        stmt = stmt.limit(top)
    return {key: count for key, count in conn.execute(stmt)}
