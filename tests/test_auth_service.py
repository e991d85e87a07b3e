"""End-to-end tests for auth/service.py -- AuthService composed over a real DB.

Covers the lockout scenario, password change invalidation, logout semantics,
me(), role checks, deactivation, purge and the admin reporting views.
"""

from __future__ import annotations

import pytest

from auth.errors import InvalidCredentials, RateLimited, SessionNotFound, TokenRevoked, WeakPassword
from auth.models import AuditEvent, Identity, Role, UserProfile, has_role

STRONG_PASSWORD = "Str0ng!Pass"
OTHER_PASSWORD = "0ther!Pass9"

ORIGIN = "203.0.113.7"


def _fail(service, n: int, email: str = "a@x.gov", origin: str = ORIGIN) -> None:
    for _ in range(n):
        with pytest.raises(InvalidCredentials):
            service.login(email, OTHER_PASSWORD, origin)


# ---------------------------------------------------------------------------
# Lockout
# ---------------------------------------------------------------------------


class TestLockout:
    def test_five_failures_after_success_lock_even_correct_password(self, service, make_user) -> None:
        make_user("a@x.gov")
        service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)
        _fail(service, 5)
        with pytest.raises(RateLimited):
            service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)

    def test_locked_attempt_is_audited_not_counted(self, service, make_user) -> None:
        make_user()
        _fail(service, 5)
        with pytest.raises(RateLimited):
            service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)
        locked = service.audit_events(event_type=AuditEvent.ACCOUNT_LOCKED)
        assert len(locked) == 1
        assert locked[0].context["account_failures"] == 5
        assert service.attempts.failure_count(identifier="a@x.gov") == 5

    def test_success_resets_consecutive_count(self, service, make_user) -> None:
        make_user()
        _fail(service, 4, origin="198.51.100.1")
        service.login("a@x.gov", STRONG_PASSWORD, "198.51.100.2")
        _fail(service, 4, origin="198.51.100.3")
        service.login("a@x.gov", STRONG_PASSWORD, "198.51.100.4")

    def test_own_account_login_does_not_unlock_spraying_origin(self, service, make_user) -> None:
        make_user("sprayer@x.gov")
        make_user("victim@x.gov")
        for round_no in range(2):
            for i in range(2):
                with pytest.raises(InvalidCredentials):
                    service.login(f"guess{round_no}{i}@x.gov", OTHER_PASSWORD, ORIGIN)
            service.login("sprayer@x.gov", STRONG_PASSWORD, ORIGIN)
        with pytest.raises(InvalidCredentials):
            service.login("victim@x.gov", OTHER_PASSWORD, ORIGIN)
        with pytest.raises(RateLimited):
            service.login("victim@x.gov", STRONG_PASSWORD, ORIGIN)

    def test_unknown_email_locks_like_real_one(self, service) -> None:
        _fail(service, 5, email="ghost@x.gov")
        with pytest.raises(RateLimited):
            service.login("ghost@x.gov", STRONG_PASSWORD, ORIGIN)

    def test_lock_uses_normalized_email(self, service, make_user) -> None:
        make_user()
        variants = ["a@x.gov", "A@X.GOV", " a@x.gov", "A@x.gov", "a@X.gov"]
        for i, variant in enumerate(variants):
            with pytest.raises(InvalidCredentials):
                service.login(variant, OTHER_PASSWORD, f"10.0.0.{i}")
        with pytest.raises(RateLimited):
            service.login("a@x.gov", STRONG_PASSWORD, "10.9.9.9")

    def test_lock_expires_after_window(self, service, make_user, clock) -> None:
        make_user()
        _fail(service, 5)
        with pytest.raises(RateLimited):
            service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)
        clock.advance(minutes=16)
        service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)

    def test_origin_lock_blocks_other_accounts(self, service, make_user) -> None:
        make_user("victim@x.gov")
        for i in range(5):
            with pytest.raises(InvalidCredentials):
                service.login(f"guess{i}@x.gov", OTHER_PASSWORD, ORIGIN)
        with pytest.raises(RateLimited):
            service.login("victim@x.gov", STRONG_PASSWORD, ORIGIN)
        # Same account, different network: fine.
        service.login("victim@x.gov", STRONG_PASSWORD, "198.51.100.1")


# ---------------------------------------------------------------------------
# Login / account
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_updates_last_login(self, service, make_user) -> None:
        uid = make_user()
        assert service.users.get_by_id(uid).last_login_at is None
        service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)
        assert service.users.get_by_id(uid).last_login_at is not None

    def test_inactive_user_cannot_login(self, service, make_user) -> None:
        uid = make_user()
        service.set_active(uid, False)
        with pytest.raises(InvalidCredentials):
            service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)
        failure = service.audit_events(event_type=AuditEvent.LOGIN_FAILURE)[0]
        assert failure.context["reason"] == "inactive_account"

    def test_register_weak_password(self, service) -> None:
        with pytest.raises(WeakPassword):
            service.register("a@x.gov", "abc")


class TestChangePassword:
    def test_change_password_revokes_all_sessions(self, service, make_user) -> None:
        make_user()
        one = service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)
        two = service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)
        service.change_password(service.authenticate(two.access_token), STRONG_PASSWORD, OTHER_PASSWORD)

        for issued in (one, two):
            with pytest.raises(TokenRevoked):
                service.refresh(issued.refresh_token)
        with pytest.raises(InvalidCredentials):
            service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)
        service.login("a@x.gov", OTHER_PASSWORD, ORIGIN)
        assert service.audit_events(event_type=AuditEvent.PASSWORD_CHANGED)[0].context["revoked_sessions"] == 2

    def test_wrong_current_password(self, service, make_user) -> None:
        make_user()
        issued = service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)
        with pytest.raises(InvalidCredentials):
            service.change_password(service.authenticate(issued.access_token), OTHER_PASSWORD, "N3w!Password")
        service.refresh(issued.refresh_token)

    def test_weak_new_password(self, service, make_user) -> None:
        make_user()
        issued = service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)
        with pytest.raises(WeakPassword):
            service.change_password(service.authenticate(issued.access_token), STRONG_PASSWORD, "weak")


class TestLogout:
    def test_logout_without_session_id(self, service) -> None:
        with pytest.raises(SessionNotFound):
            service.logout(Identity(user_id="u1", role=Role.VIEWER))

    def test_logout_audited(self, service, make_user) -> None:
        uid = make_user()
        issued = service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)
        service.logout(service.authenticate(issued.access_token))
        revoked = service.audit_events(user_id=uid, event_type=AuditEvent.SESSION_REVOKED)
        assert revoked[0].context == {"reason": "logout", "session_id": issued.session_id}


class TestMe:
    def test_me_returns_profile(self, service) -> None:
        uid = service.register("a@x.gov", STRONG_PASSWORD, Role.ADMIN, first_name="Ada", last_name="King")
        issued = service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)
        profile = service.me(issued.access_token)
        assert profile.user_id == uid
        assert profile.email == "a@x.gov"
        assert profile.role is Role.ADMIN
        assert (profile.first_name, profile.last_name) == ("Ada", "King")
        assert not hasattr(profile, "password_hash")

    def test_me_for_deactivated_user(self, service, make_user) -> None:
        uid = make_user()
        issued = service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)
        service.users.set_active(uid, False)
        with pytest.raises(InvalidCredentials):
            service.me(issued.access_token)


class TestRoles:
    @pytest.mark.parametrize(
        "role, required, expected",
        [
            (Role.ADMIN, Role.ADMIN, True),
            (Role.ADMIN, Role.VIEWER, True),
            (Role.EDITOR, Role.EDITOR, True),
            (Role.EDITOR, Role.ADMIN, False),
            (Role.VIEWER, Role.EDITOR, False),
            (Role.VIEWER, Role.VIEWER, True),
        ],
    )
    def test_has_role_hierarchy(self, role: Role, required: Role, expected: bool) -> None:
        assert has_role(Identity(user_id="u1", role=role), required) is expected


class TestAdministration:
    def test_deactivation_revokes_sessions(self, service, make_user) -> None:
        uid = make_user()
        issued = service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)
        assert service.set_active(uid, False) is True
        assert service.sessions.get(issued.session_id).revoked_reason == "account_deactivated"
        with pytest.raises(TokenRevoked):
            service.refresh(issued.refresh_token)

    def test_reactivation(self, service, make_user) -> None:
        uid = make_user()
        service.set_active(uid, False)
        service.set_active(uid, True)
        service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)

    def test_unknown_user(self, service) -> None:
        assert service.set_active("0" * 32, False) is False
        assert service.set_role("0" * 32, Role.ADMIN) is False


class TestReporting:
    def test_list_users_returns_profiles(self, service, make_user, clock) -> None:
        make_user("a@x.gov", role=Role.VIEWER)
        clock.advance(seconds=1)
        make_user("b@x.gov", role=Role.ADMIN)
        page = service.list_users(limit=1)
        assert [p.email for p in page.items] == ["b@x.gov"]
        assert page.total == 2 and page.has_next
        assert all(isinstance(p, UserProfile) for p in page.items)
        assert not hasattr(page.items[0], "password_hash")

    def test_audit_page_carries_total(self, service, make_user) -> None:
        make_user()
        for _ in range(3):
            service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)
        page = service.audit_page(event_type=AuditEvent.LOGIN_SUCCESS, limit=2)
        assert len(page.items) == 2
        assert page.total == 3
        assert page.has_next
        rest = service.audit_page(event_type=AuditEvent.LOGIN_SUCCESS, limit=2, offset=2)
        assert len(rest.items) == 1 and not rest.has_next and rest.has_prev

    def test_statistics_snapshot(self, service, make_user) -> None:
        uid = make_user()
        issued = service.login("a@x.gov", STRONG_PASSWORD, ORIGIN)
        _fail(service, 2)
        service.refresh(issued.refresh_token)

        stats = service.statistics()
        assert stats.users.total == 1
        assert (stats.attempts.succeeded, stats.attempts.failed) == (1, 2)
        assert stats.sessions.active == 1
        assert stats.sessions.by_user == {uid: 1}
        # The refresh is written in the background; statistics() waits for it.
        assert stats.audit.by_event["TOKEN_REFRESH"] == 1
        assert stats.audit.by_event["LOGIN_FAILURE"] == 2
