"""Test fixtures for API tests.

The application runs against in-memory stores: shared components are placed
on ``app.state`` (normally done by the lifespan handler) and the SQL
credential store is overridden.
"""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from lexauth.api.deps import get_credential_store
from lexauth.main import app as application
from lexauth.utils.security import create_access_token


@pytest.fixture
def app(credential_store, challenge_store, rate_limiter, audit_log):
    """Application wired to the in-memory test stores."""
    application.state.rate_limiter = rate_limiter
    application.state.challenge_store = challenge_store
    application.state.audit_log = audit_log
    application.dependency_overrides[get_credential_store] = lambda: credential_store
    yield application
    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the application."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers():
    """Bearer headers for an account id."""

    def _headers(account_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(account_id)}"}

    return _headers
