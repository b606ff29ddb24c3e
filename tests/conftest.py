import os
import sys
import tempfile
import time
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tokenwarden_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("RESET_TOKEN_SECRET", "test-reset-secret-for-testing-only-not-for-production")
os.environ.setdefault("EXPOSE_RESET_TOKEN", "true")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_TIME_COST", "1")
os.environ.setdefault("PASSWORD_MEMORY_COST", "1024")
os.environ.setdefault("PASSWORD_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokenwarden.config import Settings  # noqa: E402
from tokenwarden.service.lifecycle import TokenLifecycleManager  # noqa: E402
from tokenwarden.service.passwords import PasswordHasher  # noqa: E402
from tokenwarden.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokenwarden.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float | None = None) -> None:
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = fail

    def send_password_reset(self, to_email, token, *, expires_in_minutes=60):
        if self.fail:
            raise ConnectionError("smtp unreachable")
        self.sent.append((to_email, token))
        return True


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-test-access-secret-0123456789abcdef",
        reset_token_secret="unit-test-reset-secret-fedcba9876543210",
        password_time_cost=1,
        password_memory_cost=1024,
        password_parallelism=1,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)


@pytest.fixture
def manager(store, settings, notifier, clock):
    mgr = TokenLifecycleManager(
        store,
        settings,
        hasher=PasswordHasher.from_settings(settings),
        notifier=notifier,
        clock=clock,
    )
    yield mgr
    mgr.close()
