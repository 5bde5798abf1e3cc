import asyncio
import inspect
import os
import sys
import tempfile
import time
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionguard.config import Settings  # noqa: E402
from sessionguard.service.auth import AuthService  # noqa: E402
from sessionguard.service.mfa import MfaEngine  # noqa: E402
from sessionguard.service.passwords import PasswordPolicyEngine  # noqa: E402
from sessionguard.service.revocation import InMemoryRevocationRegistry  # noqa: E402
from sessionguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionguard.service.tokens import TokenIssuer  # noqa: E402
from sessionguard.storage.common import (  # noqa: E402
    ALLOW_REGISTRATION_KEY,
    SYSTEM_INITIALIZED_KEY,
)
from sessionguard.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Correct-Horse7Battery!"
OTHER_STRONG_PASSWORD = "Tangerine9Lamp$Sky"
THIRD_STRONG_PASSWORD = "Quiet#River4Stone"


class FakeClock:
    """Settable epoch clock shared by the token issuer, registry and MFA engine."""

    def __init__(self, start: float | None = None):
        self.now = float(int(start if start is not None else time.time()))

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(tmp_path, settings):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-mfa-key")


@pytest.fixture
def registry(clock):
    return InMemoryRevocationRegistry(clock=clock)


@pytest.fixture
def tokens(settings, registry, clock):
    return TokenIssuer(settings, registry, clock=clock)


@pytest.fixture
def passwords(settings):
    return PasswordPolicyEngine.from_settings(settings)


@pytest.fixture
def mfa(settings, clock):
    return MfaEngine.from_settings(settings, clock=clock)


@pytest.fixture
def auth_service(memory_store, registry, tokens, passwords, mfa, settings):
    return AuthService(memory_store, registry, tokens, passwords, mfa, settings)


@pytest.fixture
def open_registration(memory_store):
    asyncio.run(memory_store.set_system_setting(SYSTEM_INITIALIZED_KEY, "true"))
    asyncio.run(memory_store.set_system_setting(ALLOW_REGISTRATION_KEY, "true"))
    return memory_store


@pytest.fixture
def test_user(memory_store, passwords):
    """A plain user whose password is STRONG_PASSWORD."""
    return asyncio.run(
        memory_store.create_user(
            "alice", passwords.hash(STRONG_PASSWORD), email="alice@example.com"
        )
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
