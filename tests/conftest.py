"""Pytest configuration and shared fixtures.

Tests run without a database: services are exercised with in-memory ORM
objects and mocked sessions, and the API is driven through ASGITransport
with the get_db dependency overridden.
"""

import os
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

# Set testing mode BEFORE importing the app to use NullPool
os.environ["TESTING"] = "true"

from pulsar_escalation.config import settings

# Override settings for testing
settings.testing = True

from pulsar_escalation.database import get_db
from pulsar_escalation.main import app


def make_db_session() -> AsyncMock:
    """Create a mock AsyncSession.

    add() is synchronous on a real session, so it is a plain MagicMock here.
    """
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def db_session() -> AsyncMock:
    """Provide a mock database session."""
    return make_db_session()


@pytest.fixture
async def client(db_session) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client whose requests share db_session."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
        ) as ac:
            yield ac
    finally:
        app.dependency_overrides.pop(get_db, None)
