import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any import reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps every test on the per-runtime in-memory cache
os.environ["REDIS_URL"] = ""
os.environ.setdefault("EMAIL_INITIAL_DELAY_SECONDS", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fastapi.testclient import TestClient  # noqa: E402

from sakalsense.app import create_app  # noqa: E402
from sakalsense.config import Role, reset_settings_cache  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def client():
    """Client with a running lifespan, so each test gets a fresh runtime."""
    with TestClient(create_app()) as test_client:
        yield test_client


@pytest.fixture
def runtime(client):
    return client.app.state.runtime


@pytest.fixture
def seed_account(runtime):
    """Create an account directly in the store and return (account, password)."""

    def _seed(role: Role, email: str, password: str = "Password123!", full_name: str = "Test Person"):
        pwd_hash, algo = runtime.passwords.hash_password(password)
        account = runtime.store.create_account(role, email, full_name, pwd_hash, algo)
        return account, password

    return _seed


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
