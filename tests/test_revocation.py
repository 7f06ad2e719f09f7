"""Tests for session revocation and user bans."""

import pytest

from authcore.service.auth import ClientInfo
from authcore.service.errors import NotFoundError, SessionNotFoundError, SessionRejectedError
from authcore.service.revocation import DEFAULT_BAN_REASON, DEFAULT_KICK_REASON
from authcore.service.sessions import generate_token, hash_token


@pytest.fixture
def user(make_user):
    return make_user("a@x.com", "secret123")


@pytest.fixture
def admin(make_user):
    return make_user("root@x.com", "admin-password", role="admin")


def _open(runtime, user_id, ip="10.0.0.1"):
    token = generate_token()
    session = runtime.sessions.create(user_id, hash_token(token), ip_address=ip)
    return token, session


class TestRevoke:
    async def test_revoke_blacklists_and_deactivates(self, runtime, store, user, admin, clock):
        token, session = _open(runtime, user.id)

        entry = runtime.revocations.revoke(session.id, revoked_by=admin.id)

        assert entry.session_id == session.id
        assert entry.user_id == user.id
        assert entry.token_hash == session.token_hash
        assert entry.revoked_by == admin.id
        assert entry.reason == DEFAULT_KICK_REASON
        assert entry.revoked_at == clock.now()
        assert not store.get_session(session.id).is_active
        assert runtime.revocations.is_revoked(hash_token(token))

        with pytest.raises(SessionRejectedError) as exc_info:
            await runtime.auth.validate_session(token)
        assert exc_info.value.reason == "revoked"

    def test_revoke_is_idempotent(self, runtime, store, user, clock):
        _, session = _open(runtime, user.id)

        first = runtime.revocations.revoke(session.id, reason="first")
        clock.advance(minutes=1)
        second = runtime.revocations.revoke(session.id, reason="second")

        assert second.id == first.id
        assert second.reason == "first"
        assert len(store.revoked_sessions) == 1

    def test_unknown_session(self, runtime):
        with pytest.raises(SessionNotFoundError) as exc_info:
            runtime.revocations.revoke("no-such-session")

        assert exc_info.value.status_code == 404

    def test_other_sessions_unaffected(self, runtime, store, user):
        _, kicked = _open(runtime, user.id)
        _, kept = _open(runtime, user.id, ip="10.0.0.7")

        runtime.revocations.revoke(kicked.id)

        assert store.get_session(kept.id).is_active

    async def test_revocation_wins_over_session_row(self, runtime, store, user):
        """A blacklisted token is rejected even if its row were active."""
        token, session = _open(runtime, user.id)
        runtime.revocations.revoke(session.id)
        store.sessions[session.id].is_active = True

        with pytest.raises(SessionRejectedError):
            await runtime.auth.validate_session(token)


class TestBan:
    def test_ban_revokes_all_and_deactivates(self, runtime, store, user, admin):
        tokens = [_open(runtime, user.id, ip=f"10.0.0.{i}")[0] for i in range(3)]

        entries = runtime.revocations.revoke_all_and_ban(user.id, revoked_by=admin.id)

        assert len(entries) == 3
        assert {e.reason for e in entries} == {DEFAULT_BAN_REASON}
        assert not store.get_user(user.id).is_active
        assert runtime.sessions.list_by_user(user.id) == []
        assert all(runtime.revocations.is_revoked(hash_token(t)) for t in tokens)

    def test_ban_skips_already_revoked_sessions(self, runtime, store, user):
        _, kicked = _open(runtime, user.id)
        _open(runtime, user.id)
        runtime.revocations.revoke(kicked.id)

        entries = runtime.revocations.revoke_all_and_ban(user.id)

        assert len(entries) == 1
        assert len(store.revoked_sessions) == 2

    def test_ban_user_without_sessions(self, runtime, store, user):
        assert runtime.revocations.revoke_all_and_ban(user.id) == []
        assert not store.get_user(user.id).is_active

    def test_ban_unknown_user(self, runtime):
        with pytest.raises(NotFoundError):
            runtime.revocations.revoke_all_and_ban("missing")

    def test_ban_session_owner(self, runtime, store, user, admin):
        _, session = _open(runtime, user.id)
        _open(runtime, user.id)

        entries = runtime.revocations.ban_session_owner(session.id, revoked_by=admin.id)

        assert len(entries) == 2
        assert not store.get_user(user.id).is_active

    def test_ban_session_owner_unknown_session(self, runtime):
        with pytest.raises(SessionNotFoundError):
            runtime.revocations.ban_session_owner("missing")

    async def test_reactivation_is_not_retroactive(self, runtime, store, user):
        old_token, _ = _open(runtime, user.id)
        runtime.revocations.revoke_all_and_ban(user.id)

        store.set_user_active(user.id, True)
        result = await runtime.auth.login("a@x.com", "secret123", ClientInfo(ip_address="10.0.0.1"))

        ctx = await runtime.auth.validate_session(result.token)
        assert ctx.user_id == user.id
        with pytest.raises(SessionRejectedError):
            await runtime.auth.validate_session(old_token)
