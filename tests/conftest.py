import asyncio
import inspect
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

# Keep tests away from any real Redis or .env-driven configuration
os.environ.setdefault("USE_MEMORY_BACKEND", "true")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionauth.config import Settings, reset_settings_cache  # noqa: E402
from sessionauth.service.auth import SessionService  # noqa: E402
from sessionauth.service.credentials import CredentialVerifier  # noqa: E402
from sessionauth.service.sessions import SessionStore  # noqa: E402
from sessionauth.storage.kv import MemoryBackend  # noqa: E402
from sessionauth.storage.memory import MemoryUserRepository  # noqa: E402

HASH_THREAD_PREFIX = "test-hash"


class FakeClock:
    """Manually advanced epoch clock shared by the store and the backend."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def fast_verifier(**overrides) -> CredentialVerifier:
    """argon2id with the smallest legal cost so tests stay quick."""
    params = {"time_cost": 1, "memory_cost": 8, "parallelism": 1}
    params.update(overrides)
    return CredentialVerifier(**params)


def make_settings(**overrides) -> Settings:
    params = {
        "use_memory_backend": True,
        "cookie_secure": False,
        "session_ttl_seconds": 3600,
        "session_max_lifetime_seconds": 24 * 3600,
        "argon2_time_cost": 1,
        "argon2_memory_cost_kib": 8,
        "argon2_parallelism": 1,
        "hash_workers": 2,
        "store_retry_backoff_seconds": 0.0,
    }
    params.update(overrides)
    return Settings(**params)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def backend(clock):
    return MemoryBackend(clock=clock)


@pytest.fixture
def store(backend, clock):
    return SessionStore(backend, clock=clock)


@pytest.fixture
def verifier():
    return fast_verifier()


@pytest.fixture
def users():
    return MemoryUserRepository()


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix=HASH_THREAD_PREFIX)
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture
def service(verifier, store, users, settings, executor):
    return SessionService(verifier, store, users, settings, executor=executor)


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
