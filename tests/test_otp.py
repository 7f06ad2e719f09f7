"""Tests for one-time passcode issuance and verification."""

import threading
from datetime import timedelta

import pytest

from authcore.service import otp as otp_module
from authcore.service.errors import (
    OtpAlreadyUsedError,
    OtpDeliveryError,
    OtpError,
    OtpExpiredError,
    OtpInvalidError,
)
from authcore.service.otp import OtpPurpose, generate_code


def _pending(store, email, purpose):
    return [
        o
        for o in store.otp_codes.values()
        if o.email == email and o.purpose == purpose and not o.is_used
    ]


class TestGenerateCode:
    def test_code_is_six_digits(self):
        for _ in range(50):
            code = generate_code()
            assert len(code) == 6
            assert code.isdigit()

    def test_code_is_zero_padded(self, monkeypatch):
        monkeypatch.setattr(otp_module.secrets, "randbelow", lambda n: 42)

        assert generate_code() == "000042"


class TestIssue:
    async def test_issue_sends_code_with_label_and_expiry(self, runtime, mailer, clock):
        issued = await runtime.otp.issue("a@x.com", OtpPurpose.LOGIN)

        assert issued.expires_at == clock.now() + timedelta(minutes=10)
        assert len(mailer.sent) == 1
        message = mailer.sent[0]
        assert message["to"] == "a@x.com"
        assert message["purpose_label"] == "Login"
        assert message["expires_at"] == issued.expires_at
        assert len(message["code"]) == 6

    async def test_new_code_supersedes_pending_code(self, runtime, store, monkeypatch):
        codes = iter(["111111", "222222"])
        monkeypatch.setattr(otp_module, "generate_code", lambda: next(codes))

        await runtime.otp.issue("a@x.com", OtpPurpose.LOGIN)
        await runtime.otp.issue("a@x.com", OtpPurpose.LOGIN)

        pending = _pending(store, "a@x.com", "login")
        assert [o.code for o in pending] == ["222222"]
        with pytest.raises(OtpAlreadyUsedError):
            runtime.otp.verify("a@x.com", "111111", OtpPurpose.LOGIN)
        runtime.otp.verify("a@x.com", "222222", OtpPurpose.LOGIN)

    async def test_supersession_is_per_purpose(self, runtime, store):
        await runtime.otp.issue("a@x.com", OtpPurpose.LOGIN)
        await runtime.otp.issue("a@x.com", OtpPurpose.RESET_PASSWORD)

        assert len(_pending(store, "a@x.com", "login")) == 1
        assert len(_pending(store, "a@x.com", "reset_password")) == 1

    async def test_send_failure_rolls_back_code(self, runtime, store, mailer):
        mailer.succeed = False

        with pytest.raises(OtpDeliveryError) as exc_info:
            await runtime.otp.issue("a@x.com", OtpPurpose.LOGIN)

        assert exc_info.value.status_code == 502
        assert _pending(store, "a@x.com", "login") == []
        assert not runtime.otp.has_pending("a@x.com", OtpPurpose.LOGIN)

    async def test_send_exception_is_reported_as_delivery_failure(self, runtime, store, mailer):
        mailer.raise_error = OSError("connection refused")

        with pytest.raises(OtpDeliveryError):
            await runtime.otp.issue("a@x.com", OtpPurpose.LOGIN)

        assert _pending(store, "a@x.com", "login") == []

    async def test_send_failure_without_rollback_keeps_code(self, build_runtime):
        rt = build_runtime(otp_rollback_on_send_failure=False)
        rt.email.succeed = False

        with pytest.raises(OtpDeliveryError):
            await rt.otp.issue("a@x.com", OtpPurpose.LOGIN)

        assert rt.otp.has_pending("a@x.com", OtpPurpose.LOGIN)


class TestVerify:
    async def test_code_is_single_use(self, runtime, mailer):
        await runtime.otp.issue("a@x.com", OtpPurpose.LOGIN)
        code = mailer.last_code

        consumed = runtime.otp.verify("a@x.com", code, OtpPurpose.LOGIN)
        assert consumed.is_used

        with pytest.raises(OtpAlreadyUsedError):
            runtime.otp.verify("a@x.com", code, OtpPurpose.LOGIN)

    async def test_expired_code_is_rejected_even_if_unused(self, runtime, mailer, clock):
        await runtime.otp.issue("a@x.com", OtpPurpose.LOGIN)
        clock.advance(minutes=10, seconds=1)

        with pytest.raises(OtpExpiredError):
            runtime.otp.verify("a@x.com", mailer.last_code, OtpPurpose.LOGIN)

    async def test_code_valid_at_exact_expiry(self, runtime, mailer, clock):
        await runtime.otp.issue("a@x.com", OtpPurpose.LOGIN)
        clock.advance(minutes=10)

        runtime.otp.verify("a@x.com", mailer.last_code, OtpPurpose.LOGIN)

    async def test_wrong_purpose_is_invalid(self, runtime, mailer):
        await runtime.otp.issue("a@x.com", OtpPurpose.LOGIN)

        with pytest.raises(OtpInvalidError):
            runtime.otp.verify("a@x.com", mailer.last_code, OtpPurpose.REGISTER)

    @pytest.mark.parametrize("bad_code", ["", "12345", "1234567", "12a456", None])
    def test_malformed_code_is_invalid(self, runtime, bad_code):
        with pytest.raises(OtpInvalidError):
            runtime.otp.verify("a@x.com", bad_code, OtpPurpose.LOGIN)

    async def test_all_rejections_share_one_message(self, runtime, mailer, clock):
        await runtime.otp.issue("a@x.com", OtpPurpose.LOGIN)
        code = mailer.last_code
        wrong = "000000" if code != "000000" else "111111"
        messages = set()

        with pytest.raises(OtpError) as invalid:
            runtime.otp.verify("a@x.com", wrong, OtpPurpose.LOGIN)
        messages.add(invalid.value.message)

        runtime.otp.verify("a@x.com", code, OtpPurpose.LOGIN)
        with pytest.raises(OtpError) as used:
            runtime.otp.verify("a@x.com", code, OtpPurpose.LOGIN)
        messages.add(used.value.message)

        clock.advance(minutes=1)
        await runtime.otp.issue("a@x.com", OtpPurpose.LOGIN)
        clock.advance(minutes=11)
        with pytest.raises(OtpError) as expired:
            runtime.otp.verify("a@x.com", mailer.last_code, OtpPurpose.LOGIN)
        messages.add(expired.value.message)

        assert messages == {"invalid or expired code"}
        assert {invalid.value.reason, used.value.reason, expired.value.reason} == {
            "otp_invalid",
            "otp_already_used",
            "otp_expired",
        }

    async def test_concurrent_verification_consumes_once(self, runtime, mailer):
        await runtime.otp.issue("a@x.com", OtpPurpose.LOGIN)
        code = mailer.last_code
        barrier = threading.Barrier(8)
        outcomes = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                runtime.otp.verify("a@x.com", code, OtpPurpose.LOGIN)
                result = "ok"
            except OtpAlreadyUsedError:
                result = "used"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("used") == 7


class TestCleanup:
    async def test_cleanup_removes_only_expired_codes(self, runtime, store, clock):
        await runtime.otp.issue("old@x.com", OtpPurpose.LOGIN)
        clock.advance(minutes=11)
        await runtime.otp.issue("new@x.com", OtpPurpose.LOGIN)

        assert runtime.otp.cleanup_expired() == 1
        assert runtime.otp.cleanup_expired() == 0
        assert {o.email for o in store.otp_codes.values()} == {"new@x.com"}
