import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before anything builds Settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep hashing fast in tests
os.environ.setdefault("HASH_TIME_COST", "1")
os.environ.setdefault("HASH_MEMORY_COST", "1024")
os.environ.setdefault("HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from idcore.config import Settings  # noqa: E402
from idcore.service.audit import AuditRecorder  # noqa: E402
from idcore.service.auth import AuthService  # noqa: E402
from idcore.service.hashing import SecretHasher  # noqa: E402
from idcore.service.otp import OtpService  # noqa: E402
from idcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from idcore.service.sessions import SessionService  # noqa: E402
from idcore.service.tokens import TokenService  # noqa: E402
from idcore.service.two_factor import TwoFactorService  # noqa: E402
from idcore.storage.memory import MemoryCache, MemoryStore  # noqa: E402
from idcore.storage.models import UserRole  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
TEST_PASSWORD = "TestPassword123!"


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingGateway:
    """SMS gateway double that keeps every code it was asked to send."""

    def __init__(self, delivered: bool = True):
        self.delivered = delivered
        self.sent = []

    async def send_otp(self, phone, code, channel):
        self.sent.append((phone, code, channel))
        return self.delivered

    @property
    def last_code(self):
        return self.sent[-1][1] if self.sent else None


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        hash_time_cost=1,
        hash_memory_cost=1024,
        hash_parallelism=1,
        use_memory_cache=True,
        test_mode=True,
    )


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="test-mfa-key-material")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def hasher(settings):
    return SecretHasher.from_settings(settings)


@pytest.fixture
def audit(store):
    return AuditRecorder(store)


@pytest.fixture
def tokens(settings):
    return TokenService.from_settings(settings)


@pytest.fixture
def sessions(store, tokens, audit):
    return SessionService(store, tokens, audit)


@pytest.fixture
def two_factor(store, hasher, audit):
    return TwoFactorService(store, hasher, audit, issuer="Zaed", recovery_code_count=10)


@pytest.fixture
def otp(cache, gateway, hasher, audit):
    return OtpService(cache, gateway, hasher, audit)


@pytest.fixture
def auth(store, cache, settings, tokens, sessions, two_factor, hasher, audit):
    return AuthService(
        store,
        cache,
        settings,
        tokens=tokens,
        sessions=sessions,
        two_factor=two_factor,
        hasher=hasher,
        audit=audit,
    )


@pytest.fixture
def partner(auth):
    """Active partner account with password TEST_PASSWORD."""
    return auth.provision_user(
        "partner@example.com",
        TEST_PASSWORD,
        role=UserRole.PARTNER_PHARMACY,
        name="Nile Pharmacy",
        partner_id="partner-1",
    )


@pytest.fixture
def admin(auth):
    return auth.provision_user(
        "admin@example.com",
        TEST_PASSWORD,
        role=UserRole.ADMIN,
        name="Ops Admin",
    )


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
