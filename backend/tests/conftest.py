"""
Pytest configuration and shared test fixtures.

Unit tests run against mocked sessions and repositories; API tests build the
application with test settings and override the service dependencies.
"""

from typing import Generator
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings, get_settings
from orderflow.main import create_app
from tests.factories import TEST_HMAC_SECRET


@pytest.fixture
def settings() -> Settings:
    """Settings for tests: no real database, a configured gateway."""
    return Settings(
        environment="test",
        secret_key="test-secret-key-with-at-least-32-characters",
        gateway_api_key="test-api-key",
        gateway_hmac_secret=TEST_HMAC_SECRET,
        gateway_api_url="https://gateway.test",
        gateway_max_retries=2,
        pending_payment_timeout_minutes=30,
    )


@pytest.fixture
def mock_session() -> AsyncMock:
    """
    Create mock async database session.

    Returns:
        AsyncMock: Mock database session
    """
    session = AsyncMock(spec=AsyncSession)
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.refresh = AsyncMock()
    session.flush = AsyncMock()
    return session


@pytest.fixture
def app(settings: Settings):
    """Application wired to test settings; lifespan is not started."""
    application = create_app(settings)
    application.dependency_overrides[get_settings] = lambda: settings
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """
    Synchronous test client.

    Used without a context manager so the lifespan (database pool and
    gateway client) is never started.
    """
    yield TestClient(app, raise_server_exceptions=False)
