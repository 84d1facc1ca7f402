import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from trafficlearn.config import Settings  # noqa: E402
from trafficlearn.service.auth import AuthService  # noqa: E402
from trafficlearn.service.runtime import reset_runtime_for_tests  # noqa: E402
from trafficlearn.storage.memory import MemoryStore  # noqa: E402
from trafficlearn.storage.models import Role  # noqa: E402

PASSWORD = "Learner123!"


class FakeClock:
    """Settable time source shared by every component under test."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(cookie_secure=False)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def auth(store, settings, clock):
    return AuthService(store, store, settings, clock=clock)


@pytest.fixture
def new_ctx(auth):
    """Open a session context, optionally resuming an existing session id."""

    def _open(session_id=None, remember_cookie=None):
        return auth.open_session(session_id, remember_cookie=remember_cookie, client_ip="127.0.0.1")

    return _open


@pytest.fixture
def make_user(store, auth):
    def _make(email="learner@example.com", role=Role.LEARNER, password=PASSWORD, **kwargs):
        kwargs.setdefault("first_name", "Aline")
        kwargs.setdefault("last_name", "Uwase")
        return store.create_user(email, auth.hash_password(password), role, **kwargs)

    return _make


@pytest.fixture
def subscribe(store, clock):
    def _subscribe(user, days=30, status="active"):
        today = clock.now.date()
        return store.add_subscription(
            user.id, today - timedelta(days=1), today + timedelta(days=days), status=status
        )

    return _subscribe
