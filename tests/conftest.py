import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault(
    "JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production"
)
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authguard.config import Settings, reset_settings_cache  # noqa: E402
from authguard.service.auth import AuthService  # noqa: E402
from authguard.service.passwords import hash_password  # noqa: E402
from authguard.storage.memory import MemoryStore  # noqa: E402
from authguard.storage.models import PrincipalStatus  # noqa: E402

PASSWORD = "Correct-Horse-1"
START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime = START):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingNotifier:
    def __init__(self, result: bool = True):
        self.sent = []
        self.result = result

    def send(self, template_id, to, payload):
        self.sent.append((template_id, to, dict(payload)))
        return self.result

    def last(self, template_id):
        return next(p for t, _, p in reversed(self.sent) if t == template_id)


class RecordedSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-test-access-secret-0123456789abcdef",
        jwt_refresh_secret="unit-test-refresh-secret-0123456789abcdef",
    )


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="unit-test-mfa-key")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def sleep():
    return RecordedSleep()


@pytest.fixture
def service(store, settings, notifier, clock, sleep):
    return AuthService(store, settings, notifier, clock=clock, sleep=sleep)


@pytest.fixture
def make_principal(store, clock):
    def _make(
        email="alice@example.com",
        password=PASSWORD,
        *,
        role="user",
        status=PrincipalStatus.ACTIVE,
        email_verified=True,
    ):
        return store.create_principal(
            email,
            hash_password(password),
            created_at=clock.now(),
            role=role,
            status=status,
            email_verified=email_verified,
        )

    return _make


@pytest.fixture
def principal(make_principal):
    return make_principal()


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
