"""Pytest configuration and fixtures."""

import asyncio
import os
import secrets

import pytest

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"

os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)

from accounts import OTHER_TEST_USER_ID, TEST_USER_ID  # noqa: E402
from app.config import get_settings  # noqa: E402
from app.database import reset_instances  # noqa: E402
from app.main import app  # noqa: E402
from app.rate_limit import limiter  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_backend(tmp_path, monkeypatch):
    """Point every test at its own database and backup directory."""
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "vroom.db"))
    monkeypatch.setenv("BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.delenv("GOOGLE_SERVICE_ACCOUNT_FILE", raising=False)
    get_settings.cache_clear()
    reset_instances()
    limiter.enabled = False
    yield tmp_path
    reset_instances()
    get_settings.cache_clear()
    limiter.enabled = True


@pytest.fixture
def client():
    """Create a test client with the app lifespan running."""
    with TestClient(app) as client:
        yield client


@pytest.fixture
def thread_calls(monkeypatch):
    """Names of the callables handed to asyncio.to_thread during the test."""
    calls = []
    to_thread = asyncio.to_thread

    async def recording_to_thread(func, /, *args, **kwargs):
        calls.append(getattr(func, "__name__", repr(func)))
        return await to_thread(func, *args, **kwargs)

    monkeypatch.setattr(asyncio, "to_thread", recording_to_thread)
    return calls


@pytest.fixture
def make_auth_headers():
    from app.auth import create_access_token

    def _make(user_id: str = TEST_USER_ID):
        token = create_access_token(get_settings(), user_id=user_id)
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def auth_headers(make_auth_headers):
    """Create auth headers with a test token."""
    return make_auth_headers()


@pytest.fixture
def other_auth_headers(make_auth_headers):
    return make_auth_headers(OTHER_TEST_USER_ID)
