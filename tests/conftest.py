import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="opsauth_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("SIGNING_KEY", "test-signing-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from opsauth.config import Settings  # noqa: E402
from opsauth.service.audit import MemoryAuditSink  # noqa: E402
from opsauth.service.auth import AuthService  # noqa: E402
from opsauth.service.credentials import PasswordHashing  # noqa: E402
from opsauth.service.errors import DirectoryUnavailableError  # noqa: E402
from opsauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from opsauth.storage.memory import MemoryStore  # noqa: E402

PASSWORD = "Valve-Control#42"
OTHER_PASSWORD = "Pump-Station#77"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeDirectory:
    """Directory stand-in: username -> password, or raise when unavailable."""

    def __init__(self, accounts: dict | None = None, *, unavailable: bool = False):
        self.accounts = dict(accounts or {})
        self.unavailable = unavailable
        self.calls: list[str] = []

    async def authenticate(self, username: str, password: str) -> bool:
        self.calls.append(username)
        if self.unavailable:
            raise DirectoryUnavailableError("directory down")
        return self.accounts.get(username) == password


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture(scope="session")
def hashing():
    """Cheap argon2 parameters so the suite stays fast."""
    return PasswordHashing(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings_factory(tmp_path):
    def _make(**overrides) -> Settings:
        values = {
            "signing_key": "unit-test-signing-key-with-enough-entropy-0123456789",
            "state_dir": str(tmp_path),
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(settings_factory):
    return settings_factory()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def audit():
    return MemoryAuditSink()


@pytest.fixture
def service_factory(store, audit, clock, hashing, settings_factory):
    def _make(directory=None, **overrides) -> AuthService:
        return AuthService(
            store,
            settings_factory(**overrides),
            audit=audit,
            directory=directory,
            clock=clock,
            hashing=hashing,
        )

    return _make


@pytest.fixture
def auth_service(service_factory):
    return service_factory()


@pytest.fixture
def make_user(store, hashing):
    def _make(username, password=PASSWORD, roles=("Viewer",), **kwargs):
        return store.create_user(
            username,
            password_hash=hashing.hash(password) if password else None,
            roles=list(roles),
            **kwargs,
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
