"""Periodic cleanup and the operator scripts."""

import importlib.util
from datetime import timedelta
from pathlib import Path

import pytest

from authcore.service.otp import OtpPurpose
from authcore.service.sessions import generate_token, hash_token

SCRIPTS = Path(__file__).resolve().parent.parent / "scripts"


def _load_script(name):
    spec = importlib.util.spec_from_file_location(name, SCRIPTS / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestRunMaintenance:
    async def test_removes_expired_codes_and_sessions(self, runtime, make_user, clock):
        user = make_user("a@x.com", "secret123")
        await runtime.otp.issue("a@x.com", OtpPurpose.LOGIN)
        runtime.sessions.create(
            user.id, hash_token(generate_token()), expires_at=clock.now() + timedelta(minutes=5)
        )
        clock.advance(minutes=15)

        assert runtime.run_maintenance() == {"otps_removed": 1, "sessions_expired": 1}
        assert runtime.run_maintenance() == {"otps_removed": 0, "sessions_expired": 0}


class TestCleanupScript:
    def test_run_cleanup(self, runtime, make_user, clock):
        user = make_user("a@x.com", "secret123")
        runtime.sessions.create(
            user.id, hash_token(generate_token()), expires_at=clock.now() + timedelta(minutes=1)
        )
        clock.advance(minutes=2)

        result = _load_script("cleanup_expired").run_cleanup(runtime)

        assert result["sessions_expired"] == 1


class TestBootstrapAdmin:
    @pytest.fixture
    def bootstrap(self):
        return _load_script("bootstrap_admin")

    def test_creates_admin(self, bootstrap, runtime):
        result = bootstrap.bootstrap_admin("Root@X.com", "Sup3r-Secret-Pass", runtime=runtime)

        assert result["status"] == "created"
        user = runtime.store.get_user_by_email("root@x.com")
        assert user.role == "admin"
        assert runtime.credentials.verify("root@x.com", "Sup3r-Secret-Pass").role == "admin"

    def test_promotes_and_reactivates(self, bootstrap, runtime, make_user):
        user = make_user("a@x.com", "secret123", is_active=False)

        result = bootstrap.bootstrap_admin("a@x.com", "ignored-Password1", runtime=runtime)

        assert result["status"] == "promoted"
        refreshed = runtime.store.get_user(user.id)
        assert refreshed.role == "admin"
        assert refreshed.is_active

    def test_existing_admin_unchanged(self, bootstrap, runtime, make_user):
        make_user("root@x.com", "secret123", role="admin")

        result = bootstrap.bootstrap_admin("root@x.com", "whatever-Pass1", runtime=runtime)

        assert result["status"] == "already_admin"

    def test_dry_run(self, bootstrap, runtime):
        result = bootstrap.bootstrap_admin("new@x.com", "Sup3r-Secret-Pass", dry_run=True, runtime=runtime)

        assert result["status"] == "dry_run"
        assert runtime.store.get_user_by_email("new@x.com") is None

    @pytest.mark.parametrize(
        "password,ok",
        [("short1!", False), ("alllowercaseletters", False), ("Longer-Password1", True)],
    )
    def test_password_policy(self, bootstrap, password, ok):
        assert bootstrap.validate_password(password) is ok
