import asyncio
import inspect
import os
import tempfile

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="appauth_test_")
os.environ.setdefault("DATA_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

from appauth.config import Settings  # noqa: E402
from appauth.service.auth import AuthService  # noqa: E402
from appauth.service.passwords import PasswordHashing  # noqa: E402
from appauth.storage.memory import MemoryStore  # noqa: E402

CUSTOMER_ENDPOINT = "http://localhost:5173"
BUSINESS_ENDPOINT = "http://localhost:5174"
TODO_ENDPOINT = "http://localhost:3000"


class RecordingEmailService:
    """Email double that records outgoing tokens instead of sending."""

    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.verifications = []
        self.resets = []

    def send_email_verification(self, to_email, token, app_endpoint, ttl_hours=24):
        self.verifications.append((to_email, token, app_endpoint))
        return self.deliver

    def send_password_reset(self, to_email, token, app_endpoint, ttl_minutes=60):
        self.resets.append((to_email, token, app_endpoint))
        return self.deliver


def fast_passwords() -> PasswordHashing:
    return PasswordHashing(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def settings(tmp_path):
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        data_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        oauth_google_client_id="google-client",
        oauth_google_client_secret="google-secret",
        oauth_github_client_id="github-client",
        oauth_github_client_secret="github-secret",
        oauth_redirect_uri="http://testserver/v1/auth/oauth/{provider}/callback",
        frontend_url="http://localhost:3000",
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def email_service():
    return RecordingEmailService()


@pytest.fixture
def auth_service(memory_store, settings, email_service):
    """Create auth service for testing."""
    return AuthService(
        store=memory_store,
        cache=None,
        settings=settings,
        email_service=email_service,
        passwords=fast_passwords(),
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
