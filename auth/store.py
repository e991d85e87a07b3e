"""
auth/store.py -- Credential Store: SQLAlchemy Core persistence for users.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Service code never touches SQL directly, and no other
component reads or writes the users table.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Email uniqueness is enforced by the UNIQUE constraint, not by a
  check-then-insert. Two concurrent registrations for the same address both
  pass any pre-check; only the constraint decides, and the loser's
  IntegrityError becomes DuplicateEmail.

  verify() always runs bcrypt, whether or not the email exists [C1].
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import case, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.db import to_iso, users, utcnow
from auth.errors import DuplicateEmail, InvalidCredentials, InvalidEmail
from auth.models import Identity, Page, Role, User, UserStatistics
from auth.passwords import _DUMMY_HASH, check_strength, hash_password, verify_password

logger = logging.getLogger("portalauth.auth")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_email(email: str) -> str:
    return email.strip().lower()


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore(create_db_engine("sqlite:///auth.db"))
        uid = store.create("a@x.gov", "S3cret!pass", Role.EDITOR)
        identity = store.verify("a@x.gov", "S3cret!pass")
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def _now(self) -> str:
        return to_iso(self._clock())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        email: str,
        password: str,
        role: Role = Role.VIEWER,
        first_name: str = "",
        last_name: str = "",
    ) -> str:
        """Insert a new user and return its id.

        Raises InvalidEmail, WeakPassword, or DuplicateEmail. The strength
        check runs before hashing so weak passwords never cost a bcrypt round.
        """
        email = normalize_email(email)
        if not _EMAIL_RE.match(email):
            raise InvalidEmail()
        check_strength(password)
        user_id = uuid.uuid4().hex
        now = self._now()
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    users.insert().values(
                        id=user_id,
                        email=email,
                        password_hash=hash_password(password),
                        role=Role(role).value,
                        first_name=first_name,
                        last_name=last_name,
                        is_active=1,
                        created_at=now,
                        updated_at=now,
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise DuplicateEmail() from exc
        logger.info("User created (id=%s role=%s)", user_id, Role(role).value)
        return user_id

    def set_password(self, user_id: str, new_password: str) -> bool:
        """Replace the password hash. Raises WeakPassword.

        Returns True if a row was updated, False if user_id was not found.
        """
        check_strength(new_password)
        return self._update(user_id, password_hash=hash_password(new_password))

    def set_active(self, user_id: str, active: bool) -> bool:
        return self._update(user_id, is_active=1 if active else 0)

    def set_role(self, user_id: str, role: Role) -> bool:
        return self._update(user_id, role=Role(role).value)

    def update_last_login(self, user_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(last_login_at=self._now()))
            conn.commit()

    def _update(self, user_id: str, **fields) -> bool:
        fields["updated_at"] = self._now()
        with self.engine.connect() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email, case-insensitively."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(
        self,
        role: Role | None = None,
        active: bool | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Page:
        """Return a Page of users, newest first.

        search matches email, first_name or last_name case-insensitively as a
        substring. LIKE wildcards in the term are matched literally.
        """
        conds = []
        if role is not None:
            conds.append(users.c.role == Role(role).value)
        if active is not None:
            conds.append(users.c.is_active == (1 if active else 0))
        if search and search.strip():
            term = search.strip().lower()
            conds.append(
                or_(
                    *(
                        func.lower(col).contains(term, autoescape=True)
                        for col in (users.c.email, users.c.first_name, users.c.last_name)
                    )
                )
            )
        stmt = (
            users.select()
            .where(*conds)
            .order_by(users.c.created_at.desc(), users.c.id)
            .offset(offset)
            .limit(limit)
        )
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(users).where(*conds)).scalar() or 0
            rows = conn.execute(stmt).fetchall()
        return Page(items=[_row_to_user(r) for r in rows], total=total, offset=offset, limit=limit)

    def statistics(self) -> UserStatistics:
        """Account totals and the per-role split in two aggregate queries."""
        totals = select(
            func.count().label("total"),
            func.count(case((users.c.is_active == 1, 1))).label("active"),
        ).select_from(users)
        by_role = select(users.c.role, func.count().label("n")).group_by(users.c.role)
        with self.engine.connect() as conn:
            row = conn.execute(totals).one()
            roles = {r.role: r.n for r in conn.execute(by_role)}
        return UserStatistics(
            total=row.total,
            active=row.active,
            inactive=row.total - row.active,
            by_role={role.value: roles.get(role.value, 0) for role in Role},
        )

    def verify(self, email: str, password: str) -> Identity:
        """Check credentials with timing equalization [C1].

        Always runs bcrypt whether or not the user exists:
        - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as a real check)
        - Wrong password: bcrypt runs against the real hash (same cost)
        - Inactive user: the password is still checked, then rejected anyway

        All three failures raise the same InvalidCredentials.
        """
        user = self.get_by_email(email)
        if user is None:
            verify_password(password, _DUMMY_HASH)
            raise InvalidCredentials()
        if not verify_password(password, user.password_hash):
            raise InvalidCredentials()
        if not user.is_active:
            raise InvalidCredentials()
        return Identity(user_id=user.id, role=user.role)


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        role=Role(row.role),
        first_name=row.first_name,
        last_name=row.last_name,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login_at=row.last_login_at,
    )
