import asyncio
import inspect
import os
import sys
import threading
import time
from pathlib import Path

# Environment must be in place before any import that reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("MASTER_KEY", "test-master-key-for-automation-only")
# Empty URL keeps tests on the in-process cache even when a local Redis is up
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("KEY_ROTATION_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tokenward.config import Settings, reset_settings_cache  # noqa: E402
from tokenward.service import runtime as runtime_module  # noqa: E402
from tokenward.service.auth import AuthService  # noqa: E402
from tokenward.service.crypto import MasterKeyCipher  # noqa: E402
from tokenward.service.keys import KeyService  # noqa: E402
from tokenward.service.passwords import CredentialVerifier  # noqa: E402
from tokenward.service.sessions import SessionStore  # noqa: E402
from tokenward.service.token_cache import TokenCache  # noqa: E402
from tokenward.service.tokens import TokenIssuer  # noqa: E402
from tokenward.storage.memory import MemoryStore  # noqa: E402
from tokenward.storage.memory_cache import MemoryCache  # noqa: E402
from tokenward.storage.models import UserStatus  # noqa: E402

TEST_PASSWORD = "TestPassword123!"


class FakeClock:
    """Wall clock that tests can push forward."""

    def __init__(self, start: float | None = None) -> None:
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingMailer:
    """Mail sender that keeps every payload instead of delivering it."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.confirmations = []
        self.resets = []
        self._cond = threading.Condition()

    def _record(self, bucket, payload) -> bool:
        with self._cond:
            bucket.append(payload)
            self._cond.notify_all()
        if self.fail:
            raise ConnectionError("smtp unavailable")
        return True

    def send_confirmation_email(self, payload) -> bool:
        return self._record(self.confirmations, payload)

    def send_reset_password_email(self, payload) -> bool:
        return self._record(self.resets, payload)

    def wait_for(self, bucket_name: str, count: int = 1, timeout: float = 5.0):
        """Block until ``count`` payloads landed in the bucket (API tests)."""
        with self._cond:
            self._cond.wait_for(
                lambda: len(getattr(self, bucket_name)) >= count, timeout=timeout
            )
            return list(getattr(self, bucket_name))


def token_from_url(url: str) -> str:
    return url.split("token=", 1)[1]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    yield
    runtime_module.runtime = None
    reset_settings_cache()


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        master_key="unit-test-master-key",
        use_memory_store=True,
        redis_url="",
        cookie_secure=False,
        app_base_url="https://app.example.com",
    )


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
def cipher(settings):
    return MasterKeyCipher(settings.master_key)


@pytest.fixture
def keys(store, cipher):
    return KeyService(store, cipher)


@pytest.fixture
def tokens(keys, settings):
    return TokenIssuer(keys, settings)


@pytest.fixture
def sessions(cache, clock):
    return SessionStore(cache, atomic_rotation=True, clock=clock)


@pytest.fixture
def token_cache(sessions):
    return TokenCache(sessions)


@pytest.fixture
def verifier():
    # Cheap parameters keep the suite fast; production uses argon2 defaults
    return CredentialVerifier(time_cost=1, memory_cost=8192, parallelism=1)


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def auth(store, keys, tokens, sessions, token_cache, verifier, settings, mailer):
    return AuthService(
        store,
        keys,
        tokens,
        sessions,
        token_cache,
        verifier,
        settings,
        mailer=mailer,
    )


@pytest.fixture
def make_user(store, verifier):
    def _make(
        email: str = "user@example.com",
        *,
        name: str = "Test User",
        password: str = TEST_PASSWORD,
        status: UserStatus = UserStatus.ACTIVE,
    ):
        user = store.create_user(email, name, status=status)
        store.save_password(user.id, *verifier.hash(password))
        return user

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
