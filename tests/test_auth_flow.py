"""End-to-end login, OTP step-up, validation and logout through AuthService."""

import asyncio
from datetime import timedelta

import pytest

from authcore.service.auth import ClientInfo, extract_bearer
from authcore.service.errors import (
    AccountInactiveError,
    InvalidCredentialsError,
    LockedOutError,
    OtpAlreadyUsedError,
    OtpDeliveryError,
    OtpInvalidError,
    RateLimitedError,
    SessionRejectedError,
    StoreUnavailableError,
)
from authcore.service.sessions import hash_token
from authcore.storage.errors import StoreUnavailable


def _client(ip="10.0.0.1"):
    return ClientInfo(ip_address=ip, user_agent="pytest")


def _attempts(store, ip):
    return [a for a in store.login_attempts if a.ip_address == ip]


class TestLogin:
    async def test_lockout_scenario(self, runtime, store, make_user):
        make_user("a@x.com", "secret123")

        result = await runtime.auth.login("a@x.com", "secret123", _client("10.0.0.1"))
        assert result.session is not None
        assert result.token
        ok = _attempts(store, "10.0.0.1")
        assert len(ok) == 1 and ok[0].success and ok[0].email == "a@x.com"

        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await runtime.auth.login("a@x.com", "wrong", _client("10.0.0.2"))

        with pytest.raises(LockedOutError) as exc_info:
            await runtime.auth.login("a@x.com", "secret123", _client("10.0.0.2"))
        assert exc_info.value.status_code == 429
        assert exc_info.value.reset_at is not None

        failures = _attempts(store, "10.0.0.2")
        assert len(failures) == 6
        assert not any(a.success for a in failures)
        assert failures[-1].email is None
        assert failures[-1].failure_reason == "locked_out"
        assert {a.failure_reason for a in failures[:5]} == {"invalid_password"}

        # Other addresses are unaffected
        again = await runtime.auth.login("a@x.com", "secret123", _client("10.0.0.1"))
        assert again.session.id != result.session.id

    async def test_lockout_lifts_after_window(self, runtime, make_user, clock):
        make_user("a@x.com", "secret123")
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await runtime.auth.login("a@x.com", "wrong", _client("10.0.0.2"))
        clock.advance(minutes=16)

        result = await runtime.auth.login("a@x.com", "secret123", _client("10.0.0.2"))

        assert result.token

    async def test_rate_limit_below_lockout_threshold(self, build_runtime, clock):
        rt = build_runtime(login_rate_limit_max=2, lockout_threshold=10)
        rt.store.create_user("a@x.com", rt.credentials.hash_password("secret123"), now=clock.now())
        for _ in range(2):
            with pytest.raises(InvalidCredentialsError):
                await rt.auth.login("a@x.com", "wrong", _client())

        with pytest.raises(RateLimitedError) as exc_info:
            await rt.auth.login("a@x.com", "secret123", _client())

        assert not isinstance(exc_info.value, LockedOutError)
        assert exc_info.value.remaining == 0

    async def test_unknown_email_is_indistinguishable(self, runtime, store, make_user):
        make_user("a@x.com", "secret123")

        with pytest.raises(InvalidCredentialsError) as unknown:
            await runtime.auth.login("ghost@x.com", "secret123", _client())
        with pytest.raises(InvalidCredentialsError) as wrong:
            await runtime.auth.login("a@x.com", "bad", _client())

        assert unknown.value.message == wrong.value.message
        reasons = [a.failure_reason for a in _attempts(store, "10.0.0.1")]
        assert reasons == ["unknown_email", "invalid_password"]

    async def test_inactive_account(self, runtime, store, make_user):
        make_user("a@x.com", "secret123", is_active=False)

        with pytest.raises(AccountInactiveError):
            await runtime.auth.login("a@x.com", "secret123", _client())

        assert _attempts(store, "10.0.0.1")[-1].failure_reason == "account_inactive"

    async def test_success_records_last_login(self, runtime, store, make_user, clock):
        user = make_user("a@x.com", "secret123")
        clock.advance(hours=1)

        await runtime.auth.login("A@x.com", "secret123", _client())

        assert store.get_user(user.id).last_login_at == clock.now()

    async def test_session_records_client_details(self, runtime, make_user):
        make_user("a@x.com", "secret123")
        client = ClientInfo(
            ip_address="10.0.0.1", user_agent="pytest", device_info="laptop", location="Oslo"
        )

        result = await runtime.auth.login("a@x.com", "secret123", client)

        assert result.session.ip_address == "10.0.0.1"
        assert result.session.user_agent == "pytest"
        assert result.session.device_info == "laptop"
        assert result.session.location == "Oslo"
        assert result.session.token_hash == hash_token(result.token)

    async def test_store_outage_during_login_is_503(self, runtime, store, make_user, monkeypatch):
        make_user("a@x.com", "secret123")

        def down(email):
            raise StoreUnavailable(operation="get_user_by_email")

        monkeypatch.setattr(store, "get_user_by_email", down)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await runtime.auth.login("a@x.com", "secret123", _client())
        assert exc_info.value.status_code == 503

        failures = _attempts(store, "10.0.0.1")
        assert len(failures) == 1
        assert not failures[0].success
        assert failures[0].email == "a@x.com"
        assert failures[0].failure_reason == "store_unavailable"

    async def test_mixed_case_account_can_log_in(self, runtime, make_user):
        user = make_user("Alice@Example.com", "secret123")

        result = await runtime.auth.login("alice@example.com", "secret123", _client())

        assert result.user_id == user.id


class TestOtpLogin:
    @pytest.fixture
    def otp_runtime(self, build_runtime, clock):
        rt = build_runtime(login_otp_required=True)
        rt.store.create_user("a@x.com", rt.credentials.hash_password("secret123"), now=clock.now())
        return rt

    async def test_password_then_code(self, otp_runtime, clock):
        rt = otp_runtime
        challenge = await rt.auth.login("a@x.com", "secret123", _client())

        assert challenge.otp_required
        assert challenge.session is None and challenge.token is None
        assert challenge.otp_expires_at == clock.now() + timedelta(minutes=10)

        result = await rt.auth.complete_login("a@x.com", rt.email.last_code, _client())
        ctx = await rt.auth.validate_session(result.token)
        assert ctx.user_id == result.user_id

    async def test_code_cannot_be_replayed(self, otp_runtime):
        rt = otp_runtime
        await rt.auth.login("a@x.com", "secret123", _client())
        code = rt.email.last_code
        await rt.auth.complete_login("a@x.com", code, _client())

        with pytest.raises(OtpAlreadyUsedError):
            await rt.auth.complete_login("a@x.com", code, _client())
        assert rt.store.login_attempts[-1].failure_reason == "otp_already_used"

    async def test_wrong_code_counts_towards_lockout(self, otp_runtime):
        rt = otp_runtime
        await rt.auth.login("a@x.com", "secret123", _client())
        code = rt.email.last_code
        wrong = "000000" if code != "000000" else "111111"

        for _ in range(5):
            with pytest.raises(OtpInvalidError):
                await rt.auth.complete_login("a@x.com", wrong, _client())

        with pytest.raises(LockedOutError):
            await rt.auth.complete_login("a@x.com", code, _client())

    async def test_resend_supersedes_previous_code(self, otp_runtime, clock):
        rt = otp_runtime
        await rt.auth.login("a@x.com", "secret123", _client())
        first = rt.email.last_code
        clock.advance(minutes=1)

        expires_at = await rt.auth.resend_login_otp("a@x.com", _client())

        assert expires_at == clock.now() + timedelta(minutes=10)
        second = rt.email.last_code
        if first != second:
            with pytest.raises(OtpAlreadyUsedError):
                await rt.auth.complete_login("a@x.com", first, _client())
        result = await rt.auth.complete_login("a@x.com", second, _client())
        assert result.token

    async def test_resend_without_pending_code(self, otp_runtime):
        with pytest.raises(OtpInvalidError):
            await otp_runtime.auth.resend_login_otp("a@x.com", _client())

    async def test_delivery_failure_surfaces(self, otp_runtime):
        otp_runtime.email.succeed = False

        with pytest.raises(OtpDeliveryError):
            await otp_runtime.auth.login("a@x.com", "secret123", _client())

        failure = otp_runtime.store.login_attempts[-1]
        assert not failure.success
        assert failure.email == "a@x.com"
        assert failure.failure_reason == "delivery_failed"

    async def test_store_outage_during_code_check_is_recorded(self, otp_runtime, monkeypatch):
        rt = otp_runtime
        await rt.auth.login("a@x.com", "secret123", _client())
        code = rt.email.last_code

        def down(email, code, purpose):
            raise StoreUnavailable(operation="find_latest_otp")

        monkeypatch.setattr(rt.store, "find_latest_otp", down)

        with pytest.raises(StoreUnavailableError):
            await rt.auth.complete_login("a@x.com", code, _client())
        failure = rt.store.login_attempts[-1]
        assert not failure.success
        assert failure.failure_reason == "store_unavailable"

    async def test_mixed_case_account_completes_code_step(self, build_runtime, clock):
        rt = build_runtime(login_otp_required=True)
        rt.store.create_user(
            "Bob@X.com", rt.credentials.hash_password("secret123"), now=clock.now()
        )

        await rt.auth.login("BOB@x.com", "secret123", _client())
        result = await rt.auth.complete_login("bob@x.com", rt.email.last_code, _client())

        assert result.token

    async def test_deactivated_between_steps(self, otp_runtime):
        rt = otp_runtime
        await rt.auth.login("a@x.com", "secret123", _client())
        user = rt.store.get_user_by_email("a@x.com")
        rt.store.set_user_active(user.id, False)

        with pytest.raises(AccountInactiveError):
            await rt.auth.complete_login("a@x.com", rt.email.last_code, _client())


class TestValidateSession:
    @pytest.fixture
    def login_result(self, runtime, make_user):
        make_user("a@x.com", "secret123", role="admin")
        return asyncio.run(runtime.auth.login("a@x.com", "secret123", _client()))

    async def test_valid_token(self, runtime, login_result):
        ctx = await runtime.auth.validate_session(login_result.token)

        assert ctx.user_id == login_result.user_id
        assert ctx.role == "admin"
        assert ctx.session_id == login_result.session.id

    async def test_validation_touches_session(self, runtime, store, login_result, clock):
        clock.advance(minutes=7)

        await runtime.auth.validate_session(login_result.token)

        assert store.get_session(login_result.session.id).last_activity_at == clock.now()

    @pytest.mark.parametrize("token", [None, "", "not-a-real-token"])
    async def test_missing_or_unknown_token(self, runtime, login_result, token):
        with pytest.raises(SessionRejectedError):
            await runtime.auth.validate_session(token)

    async def test_expired_session(self, runtime, login_result, clock):
        clock.set(login_result.session.expires_at)

        with pytest.raises(SessionRejectedError) as exc_info:
            await runtime.auth.validate_session(login_result.token)
        assert exc_info.value.reason == "expired"

    async def test_inactive_user(self, runtime, store, login_result):
        store.set_user_active(login_result.user_id, False)

        with pytest.raises(SessionRejectedError):
            await runtime.auth.validate_session(login_result.token)

    async def test_fails_closed_when_store_is_down(self, runtime, store, login_result, monkeypatch):
        def down(token_hash):
            raise StoreUnavailable(operation="get_revocation_by_token_hash")

        monkeypatch.setattr(store, "get_revocation_by_token_hash", down)

        with pytest.raises(StoreUnavailableError):
            await runtime.auth.validate_session(login_result.token)

    async def test_fails_closed_on_unexpected_error(self, runtime, store, login_result, monkeypatch):
        def broken(token_hash):
            raise RuntimeError("driver bug")

        monkeypatch.setattr(store, "get_active_session_by_token_hash", broken)

        with pytest.raises(StoreUnavailableError):
            await runtime.auth.validate_session(login_result.token)


class TestLogout:
    async def test_logout_revokes_current_session(self, runtime, store, make_user):
        user = make_user("a@x.com", "secret123")
        result = await runtime.auth.login("a@x.com", "secret123", _client())

        await runtime.auth.logout(result.token)

        entry = runtime.revocations.get_revocation(hash_token(result.token))
        assert entry.reason == "logout"
        assert entry.revoked_by == user.id
        with pytest.raises(SessionRejectedError):
            await runtime.auth.validate_session(result.token)

    async def test_logout_requires_valid_session(self, runtime):
        with pytest.raises(SessionRejectedError):
            await runtime.auth.logout("bogus")


class TestExtractBearer:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc", "abc"),
            ("bearer abc ", "abc"),
            ("Basic abc", None),
            ("Bearer ", None),
            (None, None),
            ("", None),
        ],
    )
    def test_extract(self, header, expected):
        assert extract_bearer(header) == expected
