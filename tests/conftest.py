import asyncio
import inspect
import os
import sys
from pathlib import Path

# Must be set before any import that might initialize the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authcore.clock import FrozenClock  # noqa: E402
from authcore.config import Settings  # noqa: E402
from authcore.service.email import EmailService  # noqa: E402
from authcore.service.runtime import (  # noqa: E402
    Runtime,
    reset_runtime_for_tests,
    set_runtime,
)
from authcore.storage.memory import MemoryStore  # noqa: E402


class RecordingEmailService(EmailService):
    """Captures OTP messages instead of talking to SMTP."""

    def __init__(self) -> None:
        super().__init__(log_only=True)
        self.sent = []
        self.succeed = True
        self.raise_error = None

    def send_otp(self, to_email, code, purpose_label, expires_at, ttl_minutes):
        if self.raise_error is not None:
            raise self.raise_error
        self.sent.append(
            {
                "to": to_email,
                "code": code,
                "purpose_label": purpose_label,
                "expires_at": expires_at,
                "ttl_minutes": ttl_minutes,
            }
        )
        return self.succeed

    @property
    def last_code(self):
        return self.sent[-1]["code"]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def build_runtime(clock):
    """Factory for an isolated runtime around a memory store and frozen clock."""

    def _build(**overrides):
        settings = Settings(test_mode=True, use_memory_store=True, **overrides)
        return Runtime(
            settings,
            store=MemoryStore(),
            email_service=RecordingEmailService(),
            clock=clock,
        )

    return _build


@pytest.fixture
def runtime(build_runtime):
    rt = build_runtime()
    set_runtime(rt)
    return rt


@pytest.fixture
def store(runtime):
    return runtime.store


@pytest.fixture
def mailer(runtime):
    return runtime.email


@pytest.fixture
def make_user(runtime):
    """Create a user with an argon2id password hash."""

    def _make(email="a@x.com", password="secret123", **kwargs):
        password_hash = runtime.credentials.hash_password(password) if password else None
        return runtime.store.create_user(
            email, password_hash, now=runtime.clock.now(), **kwargs
        )

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
