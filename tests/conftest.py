import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="kidsmin_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("EMAIL_DEV_MODE", "true")
os.environ.setdefault("TWOFA_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from kidsmin.service.errors import MailDeliveryError  # noqa: E402
from kidsmin.service.runtime import reset_runtime_for_tests  # noqa: E402


class RecordingMailer:
    """Mailer double that keeps every message and can be told to fail."""

    def __init__(self):
        self.sent = []
        self.codes = []
        self.fail = False

    def _record(self, kind, to_email, **fields):
        if self.fail:
            raise MailDeliveryError()
        self.sent.append({"kind": kind, "to": to_email, **fields})

    def send(self, to_email, subject, text_body, html_body):
        self._record("raw", to_email, subject=subject)

    def send_two_factor_code(self, to_email, display_name, code, ttl_minutes):
        self._record("twofa", to_email, code=code, ttl_minutes=ttl_minutes)
        self.codes.append(code)

    def send_set_password(self, to_email, url):
        self._record("set_password", to_email, url=url)

    def send_password_reset(self, to_email, url):
        self._record("reset", to_email, url=url)

    @property
    def last_url(self):
        for message in reversed(self.sent):
            if "url" in message:
                return message["url"]
        return None


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def fast_hasher():
    # Minimal argon2 cost keeps hashing out of the test runtime
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Each test gets its own memory-store snapshot file
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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
