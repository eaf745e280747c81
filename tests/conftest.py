import os
import sys
import tempfile
from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

# Add the parent directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Settings are cached on first import, so the test environment goes in first
os.environ["ENVIRONMENT"] = "test"
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///" + os.path.join(
    tempfile.gettempdir(), "audio_feed_test.db"
)
os.environ.pop("API_KEY", None)

from main import app  # noqa: E402
from api.dependencies import build_registry, get_registry  # noqa: E402
from core.config import Settings  # noqa: E402
from core.database import build_engine, build_session_factory, create_db_and_tables  # noqa: E402
from core.models import Identity  # noqa: E402
from providers.storage_provider import InMemoryStorageProvider  # noqa: E402


@pytest.fixture
def test_settings() -> Settings:
    """Settings with short backoff and timeouts for fast tests."""
    return Settings(
        environment="test",
        storage_backend="memory",
        counter_retry_backoff_ms=1,
        operation_timeout_seconds=5.0,
        subscription_queue_size=64,
    )


@pytest.fixture
async def db_engine(tmp_path):
    """A fresh SQLite database per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'audio_feed.db'}")
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def storage() -> InMemoryStorageProvider:
    return InMemoryStorageProvider("https://storage.example.test")


@pytest.fixture
def registry(session_factory, storage, test_settings):
    return build_registry(session_factory, storage, test_settings)


@pytest.fixture
def identity() -> Identity:
    return Identity(
        id="user-1",
        email="jane.doe@example.com",
        display_name="Jane Doe",
        photo_url="https://images.example.test/jane.jpg",
    )


@pytest.fixture
def other_identity() -> Identity:
    return Identity(id="user-2", email="sam@example.com", display_name="Sam")


@pytest.fixture
def auth_headers(identity):
    return {
        "X-API-Key": "pk_test_key",
        "X-User-Id": identity.id,
        "X-User-Email": identity.email,
        "X-User-Name": identity.display_name,
        "X-User-Photo": identity.photo_url,
    }


@pytest.fixture
async def async_client(registry) -> AsyncGenerator[AsyncClient, None]:
    """Async test client wired to the per-test registry."""
    app.dependency_overrides[get_registry] = lambda: registry
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client
    app.dependency_overrides.clear()
