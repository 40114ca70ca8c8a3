import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="rentease_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
# Keep sessions and OTP records in process memory so tests never share state
os.environ["REDIS_URL"] = ""
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from rentease.service.email import DeliveryResult  # noqa: E402
from rentease.service.runtime import reset_runtime_for_tests  # noqa: E402


class RecordingMailer:
    """Captures outgoing messages instead of delivering them."""

    def __init__(self, fail_on=()):
        self.sent = []
        self.fail_on = set(fail_on)

    def _record(self, kind, to_email, **payload):
        self.sent.append({"kind": kind, "to": to_email, **payload})
        if kind in self.fail_on:
            return DeliveryResult(False, f"{kind} transport down")
        return DeliveryResult(True)

    def send_email_verification(self, to_email, otp, *, resent=False):
        return self._record("verification", to_email, otp=otp, resent=resent)

    def send_registration_welcome(self, to_email):
        return self._record("welcome", to_email)

    def send_password_reset(self, to_email, token):
        return self._record("reset", to_email, token=token)

    def last(self, kind):
        matches = [m for m in self.sent if m["kind"] == kind]
        return matches[-1] if matches else None


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def recording_mailer():
    return RecordingMailer()


@pytest.fixture
def mailer(recording_mailer):
    """Install a recording mailer on the live runtime."""
    from rentease.service.runtime import get_runtime

    get_runtime().auth.mailer = recording_mailer
    return recording_mailer


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
