import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="festauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps rate limits in-process so tests never need a Redis server
os.environ["REDIS_URL"] = ""
# Cheap argon2 costs; hashing dominates test runtime otherwise
os.environ.setdefault("ARGON2_MEMORY_COST", "64")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
for _limit in ("REGISTER", "LOGIN", "REFRESH", "RESET", "VERIFY"):
    os.environ.setdefault(f"{_limit}_RATE_LIMIT_PER_MINUTE", "1000")

import pytest  # noqa: E402
from argon2.exceptions import VerifyMismatchError  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from festauth.service.runtime import reset_runtime_for_tests  # noqa: E402


class RecordingEmail:
    """EmailDispatcher that keeps every message in memory instead of sending it."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.verifications = []
        self.resets = []
        self.password_changes = []
        self.invitations = []

    def send_email_verification(self, to_email, display_name, token):
        self.verifications.append((to_email, display_name, token))
        return self.succeed

    def send_password_reset(self, to_email, display_name, token):
        self.resets.append((to_email, display_name, token))
        return self.succeed

    def send_password_changed(self, to_email, display_name):
        self.password_changes.append((to_email, display_name))
        return self.succeed

    def send_invitation(self, to_email, festival_name, inviter_name, role, is_new_user):
        self.invitations.append((to_email, festival_name, inviter_name, role, is_new_user))
        return self.succeed


class CountingArgon2:
    """Wraps an argon2 hasher and counts verifications that ran to completion.

    Only a match or a mismatch means the key derivation ran; a hash that fails
    to decode is rejected before it and is not counted.
    """

    def __init__(self, inner):
        self.inner = inner
        self.completed = 0

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def verify(self, encoded_hash, password):
        try:
            result = self.inner.verify(encoded_hash, password)
        except VerifyMismatchError:
            self.completed += 1
            raise
        self.completed += 1
        return result


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def outbox():
    """Swap the runtime's mail sender for a recorder and return it."""
    from festauth.service.runtime import get_runtime

    recorder = RecordingEmail()
    runtime = get_runtime()
    runtime.email = recorder
    runtime.auth.email = recorder
    return recorder


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
