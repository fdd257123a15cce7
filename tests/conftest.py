import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Seed the environment before anything reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("AUTH_RATE_LIMIT", "0")
os.environ.setdefault("API_RATE_LIMIT", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from taskgate.service.credentials import CredentialStore  # noqa: E402
from taskgate.service.lockout import LockoutPolicy  # noqa: E402
from taskgate.service.refresh import RefreshTokenManager  # noqa: E402
from taskgate.service.revocation import RevocationRegistry  # noqa: E402
from taskgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from taskgate.service.tokens import TokenCodec  # noqa: E402
from taskgate.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789"


class FakeClock:
    """Mutable UTC clock injected into services in place of wall time."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

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
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def credentials(memory_store, clock):
    return CredentialStore(
        memory_store, lockout=LockoutPolicy(5, 15), min_password_length=6, clock=clock
    )


@pytest.fixture
def codec(clock):
    return TokenCodec(TEST_SECRET, issuer="taskgate", ttl_minutes=15, clock=clock)


@pytest.fixture
def refresh_manager(memory_store, clock):
    return RefreshTokenManager(
        memory_store,
        encryption_key="unit-test-encryption-key",
        ttl_minutes=7 * 24 * 60,
        max_records=5,
        clock=clock,
    )


@pytest.fixture
def registry(clock):
    return RevocationRegistry(ttl_seconds=15 * 60, clock=clock)


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
