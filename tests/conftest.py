import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="llmhub_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("FRONT_END_URL", "https://app.example.test")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from llmhub.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


class RecordingMailer:
    """Mailer double that keeps every message instead of sending it."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def _record(self, kind, to_email, link):
        self.sent.append({"kind": kind, "to": to_email, "link": link})
        return not self.fail

    def send_verification(self, to_email, link):
        return self._record("verification", to_email, link)

    def send_password_reset(self, to_email, link):
        return self._record("password_reset", to_email, link)

    def last_token(self):
        return self.sent[-1]["link"].rsplit("token=", 1)[1]


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def mailer():
    """Install a recording mailer on the live runtime."""
    recorder = RecordingMailer()
    get_runtime().tokens.mailer = recorder
    return recorder


@pytest.fixture
def recording_mailer():
    """Standalone recorder for services built directly in unit tests."""
    return RecordingMailer()


@pytest.fixture
def clock():
    return FakeClock()


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
