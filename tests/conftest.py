import asyncio
import inspect
import os
from datetime import datetime, timedelta, timezone

# Environment defaults must be in place before any petconsult import reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "access-secret-for-tests-only-0123456789abcdef")
os.environ.setdefault("JWT_REFRESH_SECRET", "refresh-secret-for-tests-only-0123456789abcdef")
os.environ.setdefault("BCRYPT_SALT_ROUNDS", "4")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from petconsult.app import create_app  # noqa: E402
from petconsult.config import Settings, reset_settings_cache  # noqa: E402
from petconsult.service.runtime import Runtime  # noqa: E402
from petconsult.service.sms import LoggingSmsNotifier  # noqa: E402
from petconsult.storage.memory import MemoryStore  # noqa: E402

ACCESS_SECRET = "access-secret-for-tests-only-0123456789abcdef"
REFRESH_SECRET = "refresh-secret-for-tests-only-0123456789abcdef"


class FakeClock:
    """Settable UTC clock shared by services under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


def make_settings(**overrides) -> Settings:
    values = {
        "jwt_secret": ACCESS_SECRET,
        "jwt_refresh_secret": REFRESH_SECRET,
        "use_memory_store": True,
        "test_mode": True,
        "bcrypt_salt_rounds": 4,
        "redis_url": None,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


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
def notifier():
    return LoggingSmsNotifier()


@pytest.fixture
def runtime(settings, store, notifier):
    return Runtime(settings, store=store, notifier=notifier)


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime=runtime)) as test_client:
        yield test_client


def last_code(notifier: LoggingSmsNotifier, mobile: str) -> str:
    """Pull the digits of the most recent code sent to ``mobile``."""
    for receptor, message in reversed(notifier.outbox):
        if receptor == mobile:
            return "".join(ch for ch in message.split("\n", 1)[0] if ch.isdigit())
    raise AssertionError(f"no message sent to {mobile}")


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
