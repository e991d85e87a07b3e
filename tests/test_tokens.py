"""Unit tests for auth/tokens.py -- access tokens and refresh-token rotation.

Covers:
- access token round trip, expiry, tampering and wrong-type rejection
- refresh rotation issues a new pair and retires the old refresh token
- presenting a rotated-away token revokes the whole family (TokenReused)
- refresh after logout / password change is TokenRevoked
- absolute lineage expiry (TokenExpired), no sliding on rotation
- exactly one of two concurrent refreshes with the same token succeeds
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from jose import jwt

from auth.errors import TokenExpired, TokenMalformed, TokenReused, TokenRevoked
from auth.models import Identity, Role
from auth.tokens import TokenService
from core.config import get_settings

STRONG_PASSWORD = "Str0ng!Pass"
OTHER_PASSWORD = "0ther!Pass9"

ORIGIN = "10.0.0.1"


def _login(service, email: str = "a@x.gov"):
    return service.login(email, STRONG_PASSWORD, ORIGIN, "pytest")


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


class TestAccessToken:
    def test_round_trip(self, service, make_user) -> None:
        uid = make_user()
        issued = _login(service)
        identity = service.tokens.verify_access(issued.access_token)
        assert identity == Identity(user_id=uid, role=Role.EDITOR, session_id=issued.session_id)
        assert issued.token_type == "bearer"
        assert issued.expires_in == get_settings().access_token_expire_seconds

    def test_expired_access_token(self, service) -> None:
        past = service.tokens._clock() - timedelta(hours=2)
        stale = TokenService(service.sessions, service.users, get_settings(), lambda: past)
        token = stale.create_access_token("u1", Role.VIEWER, "s1")
        with pytest.raises(TokenExpired):
            service.tokens.verify_access(token)

    @pytest.mark.parametrize("token", ["", "garbage", "a.b.c"])
    def test_garbage_is_malformed(self, service, token: str) -> None:
        with pytest.raises(TokenMalformed):
            service.tokens.verify_access(token)

    def test_wrong_signing_key_is_malformed(self, service) -> None:
        now = service.tokens._clock()
        forged = jwt.encode(
            {"sub": "u1", "role": "ADMIN", "sid": "s1", "type": "access", "exp": now + timedelta(minutes=5)},
            "x" * 40,
            algorithm="HS256",
        )
        with pytest.raises(TokenMalformed):
            service.tokens.verify_access(forged)

    def test_wrong_type_is_malformed(self, service) -> None:
        now = service.tokens._clock()
        token = jwt.encode(
            {"sub": "u1", "role": "ADMIN", "sid": "s1", "type": "refresh", "exp": now + timedelta(minutes=5)},
            get_settings().secret_key,
            algorithm="HS256",
        )
        with pytest.raises(TokenMalformed):
            service.tokens.verify_access(token)

    def test_unknown_role_is_malformed(self, service) -> None:
        now = service.tokens._clock()
        token = jwt.encode(
            {"sub": "u1", "role": "ROOT", "sid": "s1", "type": "access", "exp": now + timedelta(minutes=5)},
            get_settings().secret_key,
            algorithm="HS256",
        )
        with pytest.raises(TokenMalformed):
            service.tokens.verify_access(token)


# ---------------------------------------------------------------------------
# Refresh rotation
# ---------------------------------------------------------------------------


class TestRotation:
    def test_refresh_returns_new_pair_same_session(self, service, make_user) -> None:
        make_user()
        first = _login(service)
        second = service.refresh(first.refresh_token)
        assert second.refresh_token != first.refresh_token
        assert second.session_id == first.session_id
        assert second.refresh_token.split(".")[0] == first.refresh_token.split(".")[0]
        service.tokens.verify_access(second.access_token)

    def test_only_hash_is_stored(self, service, make_user) -> None:
        make_user()
        issued = _login(service)
        row = service.sessions.get(issued.session_id)
        assert row.refresh_token_hash != issued.refresh_token
        assert issued.refresh_token.split(".", 1)[1] not in row.refresh_token_hash
        assert row.refresh_token_hash == service.tokens.hash_refresh_token(issued.refresh_token)

    def test_chain_of_rotations(self, service, make_user) -> None:
        make_user()
        issued = _login(service)
        for _ in range(3):
            issued = service.refresh(issued.refresh_token)
        assert service.sessions.get(issued.session_id).revoked_at is None

    def test_reuse_revokes_family(self, service, make_user) -> None:
        make_user()
        r1 = _login(service)
        r2 = service.refresh(r1.refresh_token)
        with pytest.raises(TokenReused):
            service.refresh(r1.refresh_token)
        # The legitimate holder's newer token is dead too.
        with pytest.raises(TokenRevoked):
            service.refresh(r2.refresh_token)
        session = service.sessions.get(r1.session_id)
        assert session.revoked_reason == "reuse_detected"

    def test_role_change_applies_on_refresh(self, service, make_user) -> None:
        uid = make_user()
        issued = _login(service)
        service.set_role(uid, Role.ADMIN)
        assert service.authenticate(issued.access_token).role is Role.EDITOR
        refreshed = service.refresh(issued.refresh_token)
        assert service.authenticate(refreshed.access_token).role is Role.ADMIN


class TestRefreshRejections:
    @pytest.mark.parametrize("token", ["", "no-dot", "short.abc", "Z" * 32 + ".abc", "0" * 32 + "."])
    def test_malformed_refresh(self, service, token: str) -> None:
        with pytest.raises(TokenMalformed):
            service.refresh(token)

    def test_unknown_family_is_revoked(self, service) -> None:
        with pytest.raises(TokenRevoked):
            service.refresh("0" * 32 + ".whatever")

    def test_after_logout(self, service, make_user) -> None:
        make_user()
        issued = _login(service)
        service.logout(service.authenticate(issued.access_token))
        with pytest.raises(TokenRevoked):
            service.refresh(issued.refresh_token)

    def test_after_password_change(self, service, make_user) -> None:
        make_user()
        issued = _login(service)
        service.change_password(service.authenticate(issued.access_token), STRONG_PASSWORD, OTHER_PASSWORD)
        with pytest.raises(TokenRevoked):
            service.refresh(issued.refresh_token)

    def test_inactive_user_refresh_revoked(self, service, make_user) -> None:
        uid = make_user()
        issued = _login(service)
        service.users.set_active(uid, False)
        with pytest.raises(TokenRevoked):
            service.refresh(issued.refresh_token)
        assert service.sessions.get(issued.session_id).revoked_reason == "account_inactive"

    def test_lineage_expiry_is_absolute(self, service, make_user, clock) -> None:
        make_user()
        issued = _login(service)
        expires_at = service.sessions.get(issued.session_id).expires_at
        clock.advance(days=6)
        issued = service.refresh(issued.refresh_token)
        # Rotation does not extend the lineage.
        assert service.sessions.get(issued.session_id).expires_at == expires_at
        clock.advance(days=2)
        with pytest.raises(TokenExpired):
            service.refresh(issued.refresh_token)


class TestConcurrentRefresh:
    def test_exactly_one_concurrent_refresh_wins(self, service, make_user) -> None:
        make_user()
        issued = _login(service)
        barrier = threading.Barrier(2)
        successes: list = []
        failures: list = []

        def worker() -> None:
            barrier.wait()
            try:
                successes.append(service.refresh(issued.refresh_token))
            except (TokenReused, TokenRevoked) as exc:
                failures.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], TokenReused)
        # The loser's reuse signal kills the lineage for everyone.
        with pytest.raises(TokenRevoked):
            service.refresh(successes[0].refresh_token)
