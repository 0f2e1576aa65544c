import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before anything reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("COOKIE_SECURE", "false")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_TIME_COST", "1")
os.environ.setdefault("PASSWORD_MEMORY_COST", "1024")
os.environ.setdefault("PASSWORD_PARALLELISM", "1")
# Each runtime starts from an empty store and in-process rate limits
os.environ.pop("SHARED_FS_ROOT", None)
os.environ.pop("REDIS_URL", None)
os.environ.pop("RESEND_API_KEY", None)
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sentinel_auth.config import Settings  # noqa: E402
from sentinel_auth.service.auth import AuthService  # noqa: E402
from sentinel_auth.service.email import DeliveryReceipt, MessageKind  # noqa: E402
from sentinel_auth.service.runtime import reset_runtime_for_tests  # noqa: E402
from sentinel_auth.service.sessions import SessionTracker  # noqa: E402
from sentinel_auth.service.tokens import TokenIssuer  # noqa: E402
from sentinel_auth.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
TEST_PASSWORD = "TestPassword123!"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Notifier that records every message instead of sending it.

    Kinds listed in ``failing`` return an undelivered receipt; set ``raising``
    to make every send raise instead.
    """

    def __init__(self):
        self.messages = []
        self.failing = set()
        self.raising = False

    def _record(self, kind: MessageKind, to_email: str, **payload) -> DeliveryReceipt:
        if self.raising:
            raise RuntimeError("notifier exploded")
        self.messages.append({"kind": kind, "to": to_email, **payload})
        if kind in self.failing:
            return DeliveryReceipt(kind, to_email, sent=False, error="provider unavailable")
        return DeliveryReceipt(kind, to_email, sent=True)

    def send_email_verification(self, to_email, token):
        return self._record(MessageKind.EMAIL_VERIFICATION, to_email, token=token)

    def send_password_reset(self, to_email, token):
        return self._record(MessageKind.PASSWORD_RESET, to_email, token=token)

    def send_login_alert(self, to_email, *, ip_address, user_agent, login_at):
        return self._record(
            MessageKind.LOGIN_ALERT,
            to_email,
            ip_address=ip_address,
            user_agent=user_agent,
            login_at=login_at,
        )

    def send_password_changed(self, to_email):
        return self._record(MessageKind.PASSWORD_CHANGED, to_email)

    def of_kind(self, kind: MessageKind):
        return [m for m in self.messages if m["kind"] == kind]

    def last_token(self, kind: MessageKind) -> str:
        return self.of_kind(kind)[-1]["token"]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        password_time_cost=1,
        password_memory_cost=1024,
        password_parallelism=1,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def issuer(settings, clock):
    return TokenIssuer(settings, clock=clock)


@pytest.fixture
def tracker(memory_store, notifier, clock):
    return SessionTracker(memory_store, notifier, clock=clock)


@pytest.fixture
def auth_service(memory_store, settings, issuer, notifier, tracker, clock):
    return AuthService(
        memory_store,
        settings,
        issuer=issuer,
        notifier=notifier,
        tracker=tracker,
        clock=clock,
    )


@pytest.fixture
def verified_user(auth_service, notifier):
    """Register and verify ``verified@example.com``; returns the public projection."""
    result = auth_service.register("verified@example.com", TEST_PASSWORD)
    auth_service.verify_email(notifier.last_token(MessageKind.EMAIL_VERIFICATION))
    return {**result["user"], "is_verified": True}


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
