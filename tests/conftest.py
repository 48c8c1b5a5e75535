import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment for anything that builds settings or the runtime from env vars
_test_tmp_dir = tempfile.mkdtemp(prefix="identcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_TIME_COST", "1")
os.environ.setdefault("PASSWORD_MEMORY_COST", "8")
os.environ.setdefault("PASSWORD_PARALLELISM", "1")
# Empty URL: the runtime goes straight to the in-process cache
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from identcore.config import Settings  # noqa: E402
from identcore.service.auth import AuthService  # noqa: E402
from identcore.storage.memory import MemoryStore  # noqa: E402
from identcore.storage.memory_cache import MemoryCache  # noqa: E402
from identcore.storage.models import AccountStatus, Role  # noqa: E402

PASSWORD = "correct horse battery"
JWT_SECRET = "unit-test-signing-key-0123456789abcdef"


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    """Notifier double that records every message instead of sending it."""

    def __init__(self) -> None:
        self.sent = []

    def send_registration_code(self, to_email, code, ttl_minutes):
        self.sent.append(("registration", to_email, code))
        return True

    def send_password_reset_code(self, to_email, code, ttl_minutes):
        self.sent.append(("password_reset", to_email, code))
        return True

    def send_password_changed(self, to_email):
        self.sent.append(("password_changed", to_email, None))
        return True

    def last_code(self, to_email, kind):
        for sent_kind, email, code in reversed(self.sent):
            if sent_kind == kind and email == to_email:
                return code
        return None


class Flows:
    """Async shortcuts for putting accounts into a known state."""

    def __init__(self, auth: AuthService, store: MemoryStore, notifier: RecordingNotifier):
        self.auth = auth
        self.store = store
        self.notifier = notifier

    async def code_for(self, email: str, kind: str = "registration") -> str:
        await self.auth.flush_notifications()
        return self.notifier.last_code(email, kind)

    async def active_account(self, email: str, role: Role = Role.USER, password: str = PASSWORD):
        self.store.create_account(
            email,
            self.auth.passwords.hash_password(password),
            role=role,
            status=AccountStatus.ACTIVE,
        )
        return await self.auth.login(email, password)

    @staticmethod
    def bearer(result) -> str:
        return f"Bearer {result.tokens.access_token}"


def make_settings(**overrides) -> Settings:
    values = dict(
        jwt_secret=JWT_SECRET,
        password_time_cost=1,
        password_memory_cost=8,
        password_parallelism=1,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth(store, cache, settings, notifier, clock):
    return AuthService(store, cache, settings, notifier=notifier, clock=clock)


@pytest.fixture
def flows(auth, store, notifier):
    return Flows(auth, store, notifier)


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
