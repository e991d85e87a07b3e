"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost zero logic). Dataclasses own
domain shape; stores and the service do the work. The only behaviour here is
the Role ordering and has_role(), the single role-check capability every
other module uses instead of comparing role strings.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    """Closed set of roles. Rank order: VIEWER < EDITOR < ADMIN."""

    ADMIN = "ADMIN"
    EDITOR = "EDITOR"
    VIEWER = "VIEWER"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]


_ROLE_RANK = {Role.VIEWER: 0, Role.EDITOR: 1, Role.ADMIN: 2}


class AuditEvent(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    TOKEN_REUSE_DETECTED = "TOKEN_REUSE_DETECTED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    SESSION_REVOKED = "SESSION_REVOKED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"


@dataclass
class User:
    """A portal account.

    email is stored normalized (stripped, lower-cased) so uniqueness is
    case-insensitive. password_hash is a bcrypt hash; the plaintext is never
    stored. Users are never hard-deleted -- deactivate with is_active=False.
    """

    email: str
    password_hash: str
    role: Role
    id: str | None = None
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True
    created_at: str | None = None
    updated_at: str | None = None
    last_login_at: str | None = None


@dataclass(frozen=True)
class Identity:
    """The authenticated identity attached to a request.

    session_id is None when the identity comes from a credential check
    (login) rather than from an access token.
    """

    user_id: str
    role: Role
    session_id: str | None = None


def has_role(identity: Identity, required: Role) -> bool:
    """Return True if identity holds `required` or a higher-ranked role."""
    return identity.role.rank >= required.rank


@dataclass
class LoginAttempt:
    """One append-only login attempt. Never updated after insert."""

    identifier: str
    origin_key: str
    succeeded: bool
    id: int | None = None
    occurred_at: str | None = None
    failure_reason: str | None = None


@dataclass
class UserSession:
    """One logical login (device/client) and its refresh-token lineage.

    refresh_token_hash is HMAC-SHA256 of the current refresh token; the raw
    token is never stored. refresh_token_family is shared by every rotation of
    the same login and is unique per session row.
    """

    id: str
    user_id: str
    refresh_token_hash: str
    refresh_token_family: str
    created_at: str
    last_used_at: str
    expires_at: str
    client_meta: str = ""
    revoked_at: str | None = None
    revoked_reason: str | None = None


@dataclass(frozen=True)
class SessionSummary:
    """What "view my active sessions" exposes. No token material."""

    id: str
    client_meta: str
    created_at: str
    last_used_at: str
    expires_at: str
    revoked_at: str | None
    is_current: bool


@dataclass
class AuditLogEntry:
    event_type: AuditEvent
    context: dict
    user_id: str | None = None
    id: int | None = None
    occurred_at: str | None = None


@dataclass(frozen=True)
class IssuedTokens:
    """Result of login and refresh. refresh_token is shown to the client once."""

    access_token: str
    refresh_token: str
    session_id: str
    user_id: str
    expires_in: int
    token_type: str = "bearer"


@dataclass(frozen=True)
class UserProfile:
    """Public profile returned by me(). Never includes the password hash."""

    user_id: str
    email: str
    role: Role
    first_name: str
    last_name: str
    is_active: bool
    created_at: str | None
    last_login_at: str | None


@dataclass(frozen=True)
class Page:
    """One slice of a filtered listing plus the size of the whole result."""

    items: list
    total: int
    offset: int
    limit: int

    @property
    def has_next(self) -> bool:
        return self.offset + len(self.items) < self.total

    @property
    def has_prev(self) -> bool:
        return self.offset > 0


# ---------------------------------------------------------------------------
# Statistics snapshots (admin reporting)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserStatistics:
    total: int
    active: int
    inactive: int
    by_role: dict[str, int]


@dataclass(frozen=True)
class AttemptStatistics:
    """Counts over the retained attempt history. by_* maps hold the busiest keys only."""

    total: int
    succeeded: int
    failed: int
    by_identifier: dict[str, int]
    by_origin: dict[str, int]


@dataclass(frozen=True)
class SessionStatistics:
    """active/revoked/expired partition total. by_user counts active sessions."""

    total: int
    active: int
    revoked: int
    expired: int
    by_user: dict[str, int]


@dataclass(frozen=True)
class AuditStatistics:
    """by_user keys events with no user as "anonymous". by_date is keyed YYYY-MM-DD (UTC)."""

    total: int
    by_event: dict[str, int]
    by_user: dict[str, int]
    by_date: dict[str, int]


@dataclass(frozen=True)
class AuthStatistics:
    users: UserStatistics
    attempts: AttemptStatistics
    sessions: SessionStatistics
    audit: AuditStatistics
