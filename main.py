#!/usr/bin/env python3
"""
Portal auth -- operator command line.

Usage:
  python main.py create-admin --email admin@x.gov
  python main.py create-admin --email admin@x.gov --first-name System --last-name Administrator
  python main.py sessions admin@x.gov
  python main.py sessions admin@x.gov --all
  python main.py audit --type LOGIN_FAILURE --limit 20
  python main.py users --role ADMIN --search smith
  python main.py stats
  python main.py purge

Environment variables:
  DATABASE_URL          SQLAlchemy URL of the auth database (default: ./portal_auth.db)
  BOOTSTRAP_PASSWORD    Password for create-admin. Prompted for when unset.
"""

import argparse
import getpass
import os
import sys
from typing import Optional

from auth.errors import AuthError
from auth.models import AuditEvent, Role
from auth.service import AuthService


def _create_admin(service: AuthService, args: argparse.Namespace) -> int:
    """Bootstrap an ADMIN account. Idempotent: an existing email is left untouched."""
    if service.users.get_by_email(args.email) is not None:
        print(f"  Admin user already exists: {args.email}")
        return 0
    password = os.environ.get("BOOTSTRAP_PASSWORD") or getpass.getpass("  Password: ")
    user_id = service.register(
        args.email,
        password,
        Role.ADMIN,
        first_name=args.first_name,
        last_name=args.last_name,
    )
    print(f"  Created admin {args.email} ({user_id})")
    return 0


def _sessions(service: AuthService, args: argparse.Namespace) -> int:
    user = service.users.get_by_email(args.email)
    if user is None:
        print(f"  [!] No user with email {args.email}")
        return 1
    sessions = service.sessions.list(user.id, include_inactive=args.all)
    if not sessions:
        print("  No sessions.")
        return 0
    for s in sessions:
        state = "revoked" if s.revoked_at else "active"
        print(f"  {s.id}  {state:<8} created={s.created_at}  last_used={s.last_used_at}  {s.client_meta}")
    return 0


def _audit(service: AuthService, args: argparse.Namespace) -> int:
    user_id: Optional[str] = None
    if args.email:
        user = service.users.get_by_email(args.email)
        if user is None:
            print(f"  [!] No user with email {args.email}")
            return 1
        user_id = user.id
    event_type = AuditEvent(args.type) if args.type else None
    for e in service.audit_events(user_id=user_id, event_type=event_type, limit=args.limit):
        print(f"  {e.occurred_at}  {e.event_type.value:<22} user={e.user_id or '-'}  {e.context}")
    return 0


def _users(service: AuthService, args: argparse.Namespace) -> int:
    role = Role(args.role) if args.role else None
    page = service.list_users(role=role, search=args.search, offset=args.offset, limit=args.limit)
    for u in page.items:
        state = "active" if u.is_active else "inactive"
        print(f"  {u.user_id}  {u.role.value:<6} {state:<8} {u.email}  last_login={u.last_login_at or '-'}")
    shown = f"{page.offset + 1}-{page.offset + len(page.items)}" if page.items else "0"
    print(f"  Showing {shown} of {page.total} user(s).")
    return 0


def _stats(service: AuthService, args: argparse.Namespace) -> int:
    s = service.statistics(top=args.top)
    print(f"  Users:    {s.users.total} total, {s.users.active} active, {s.users.inactive} inactive")
    print(f"            {', '.join(f'{role}={n}' for role, n in s.users.by_role.items())}")
    print(f"  Attempts: {s.attempts.total} total, {s.attempts.succeeded} succeeded, {s.attempts.failed} failed")
    print(
        f"  Sessions: {s.sessions.total} total, {s.sessions.active} active, "
        f"{s.sessions.revoked} revoked, {s.sessions.expired} expired"
    )
    print(f"  Audit:    {s.audit.total} event(s)")
    for event, n in s.audit.by_event.items():
        if n:
            print(f"            {event:<22} {n}")
    return 0


def _purge(service: AuthService, args: argparse.Namespace) -> int:
    sessions_deleted, attempts_deleted = service.purge()
    print(f"  Purged {sessions_deleted} session(s) and {attempts_deleted} login attempt(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portal-auth",
        description="Operator tasks for the portal authentication core.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--db",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL setting)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-admin", help="Create the first ADMIN account")
    p.add_argument("--email", required=True)
    p.add_argument("--first-name", default="System")
    p.add_argument("--last-name", default="Administrator")
    p.set_defaults(func=_create_admin)

    p = sub.add_parser("sessions", help="List a user's sessions")
    p.add_argument("email")
    p.add_argument("--all", action="store_true", help="Include revoked and expired sessions")
    p.set_defaults(func=_sessions)

    p = sub.add_parser("audit", help="Show recent audit events")
    p.add_argument("--email", default=None, help="Only events for this user")
    p.add_argument("--type", choices=[e.value for e in AuditEvent], default=None, metavar="EVENT")
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=_audit)

    p = sub.add_parser("users", help="List accounts, newest first")
    p.add_argument("--role", choices=[r.value for r in Role], default=None)
    p.add_argument("--search", default=None, help="Substring of email, first or last name")
    p.add_argument("--offset", type=int, default=0)
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=_users)

    p = sub.add_parser("stats", help="Summary counts for users, attempts, sessions and audit events")
    p.add_argument("--top", type=int, default=10, help="Size of the busiest-key breakdowns")
    p.set_defaults(func=_stats)

    p = sub.add_parser("purge", help="Delete dead sessions and old login attempts")
    p.set_defaults(func=_purge)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    service = AuthService.from_url(args.db)
    try:
        return args.func(service, args)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
