import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any import that might build the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="hotelbook_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from hotelbook.config import Settings  # noqa: E402
from hotelbook.service.auth import AuthService  # noqa: E402
from hotelbook.service.hashing import SecretHasher  # noqa: E402
from hotelbook.service.runtime import reset_runtime_for_tests  # noqa: E402
from hotelbook.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Str0ng!Passw0rd"


class FakeClock:
    """Settable clock handed to services in place of ``utcnow``."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingDelivery:
    """OTP delivery channel that keeps every code it was handed."""

    def __init__(self, *, succeed: bool = True):
        self.sent: list[tuple[str, str]] = []
        self.succeed = succeed

    def deliver_otp(self, to_email: str, code: str, *, ttl_minutes: int = 10) -> bool:
        self.sent.append((to_email, code))
        return self.succeed

    def last_code(self, email: str) -> str:
        for to_email, code in reversed(self.sent):
            if to_email == email:
                return code
        raise AssertionError(f"no code delivered to {email}")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def hasher():
    return SecretHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def auth_service(memory_store, settings, delivery, hasher, clock):
    return AuthService(
        memory_store, settings, delivery=delivery, hasher=hasher, clock=clock
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
