import asyncio
import inspect
import os

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

from authcore.service.auth import AuthService  # noqa: E402
from authcore.service.credentials import CredentialCodec  # noqa: E402
from authcore.service.guard import RequestGuard  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.storage.memory import MemoryCache, MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class RecordingEmail:
    """Email sender double that remembers every message it was asked to send."""

    def __init__(self, *, succeed: bool = True, raise_error: bool = False):
        self.succeed = succeed
        self.raise_error = raise_error
        self.sent = []

    def _record(self, kind, to_email, token):
        self.sent.append((kind, to_email, token))
        if self.raise_error:
            raise ConnectionRefusedError("smtp down")
        return self.succeed

    def send_verification_email(self, to_email, token):
        return self._record("verification", to_email, token)

    def send_password_reset_email(self, to_email, token):
        return self._record("password_reset", to_email, token)

    def send_email_change_verification_email(self, to_email, token):
        return self._record("email_change", to_email, token)

    def last(self, kind):
        matches = [entry for entry in self.sent if entry[0] == kind]
        return matches[-1] if matches else None


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def codec():
    return CredentialCodec(TEST_SECRET, issuer="authcore-tests")


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def memory_cache():
    return MemoryCache()


@pytest.fixture
def email_outbox():
    return RecordingEmail()


@pytest.fixture
def auth_service(memory_store, memory_cache, email_outbox, codec):
    return AuthService(
        memory_store,
        memory_store,
        memory_cache,
        memory_cache,
        email_outbox,
        codec,
    )


@pytest.fixture
def guard(codec, memory_cache):
    return RequestGuard(codec, memory_cache, memory_cache)


@pytest.fixture
def verified_user(memory_store, auth_service):
    """john@example.com / password123, already verified."""
    return memory_store.create_user(
        "john@example.com",
        auth_service.hash_password("password123"),
        is_verified=True,
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
