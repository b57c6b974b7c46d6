import asyncio
import inspect
import os

# Logging is configured when chatauth.logging is first imported
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_JSON", "true")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

from chatauth.config import deep_merge, load_and_validate  # noqa: E402
from chatauth.service.auth import AuthService  # noqa: E402
from chatauth.service.passwords import PasswordService  # noqa: E402
from chatauth.storage.memory import MemoryStore  # noqa: E402

TEST_EMAIL = "user@example.com"
TEST_PASSWORD = "CorrectPass1!"

BASE_CONFIG = {
    "app": {"name": "chatauth", "environment": "test"},
    "server": {"host": "127.0.0.1", "port": 8000, "request_timeout_secs": 5},
    "database": {"url": "memory://", "min_connections": 1, "max_connections": 4},
    "auth": {
        "signing_secret": "test-signing-secret-for-automation-only",
        "access_token_ttl_minutes": 15,
        "refresh_token_ttl_minutes": 60,
    },
}


def make_settings(**sections):
    """Validated settings from ``BASE_CONFIG`` with per-section overrides."""
    return load_and_validate([BASE_CONFIG, sections])


def fast_hasher() -> PasswordHasher:
    # Minimal argon2id cost so hashing does not dominate the suite
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)


@pytest.fixture
def base_config():
    return deep_merge(BASE_CONFIG, {})


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def passwords():
    return PasswordService(fast_hasher())


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, settings, passwords):
    return AuthService(memory_store, settings, passwords=passwords)


@pytest.fixture
def test_user(memory_store, passwords):
    return memory_store.create_user(TEST_EMAIL, passwords.hash(TEST_PASSWORD), "Test User")


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
