import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.setdefault("ADMIN_EMAIL", "admin@example.com")
os.environ.setdefault("ADMIN_PASSWORD", "AdminPassw0rd!")
# Empty REDIS_URL keeps counters in MemoryCache so tests are deterministic
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authcore.config import Settings  # noqa: E402
from authcore.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from authcore.storage.models import SmtpConfig  # noqa: E402

ADMIN_EMAIL = os.environ["ADMIN_EMAIL"]
ADMIN_PASSWORD = os.environ["ADMIN_PASSWORD"]


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state directory per test so MemoryStore does not reload old sessions
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings detached from the runtime, for unit tests."""
    return Settings(
        shared_fs_root=str(tmp_path),
        jwt_access_secret="unit-access-secret-0123456789abcdef",
        jwt_refresh_secret="unit-refresh-secret-0123456789abcdef",
        admin_email=ADMIN_EMAIL,
        admin_password=ADMIN_PASSWORD,
    )


@pytest.fixture
def client():
    """Create a test client for the API."""
    from fastapi.testclient import TestClient

    from authcore import app as app_module

    return TestClient(app_module.app)


@pytest.fixture
def outbox(monkeypatch):
    """Configure SMTP on the runtime and capture OTP mails instead of sending."""
    runtime = get_runtime()
    runtime.store.save_smtp_config(
        SmtpConfig(host="smtp.test", port=587, username="mailer@test", password="pw")
    )
    sent: list[dict] = []

    def _capture(to_addr, code, ttl_seconds):
        sent.append({"to": to_addr, "code": code, "ttl": ttl_seconds})
        return True

    monkeypatch.setattr(runtime.email, "send_otp", _capture)
    return sent


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
