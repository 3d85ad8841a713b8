"""Pytest configuration and fixtures."""

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from client_identity.db.turso import TursoClient
from client_identity.identity.schemas import PartialClientProfile
from client_identity.identity.service import IdentityResolutionService
from client_identity.main import app
from client_identity.repositories.client_repo import ClientRepository

BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
async def db_client(tmp_path: Path) -> AsyncIterator[TursoClient]:
    """Create a temp file database client for testing."""
    db_path = tmp_path / "test_clients.db"
    client = TursoClient(url=f"file:{db_path}")
    await client.connect()
    yield client
    await client.close()


@pytest.fixture
async def repo(db_client: TursoClient) -> ClientRepository:
    """Create ClientRepository with initialized schema."""
    repo = ClientRepository(db_client)
    await repo.initialize()
    return repo


@pytest.fixture
def make_client(repo: ClientRepository):
    """Factory inserting a client created `days` after BASE_TIME."""

    async def _make(
        first_name: str = "John",
        last_name: str = "Smith",
        days: int = 0,
        **fields: str,
    ):
        return await repo.create_client(
            PartialClientProfile(first_name=first_name, last_name=last_name, **fields),
            created_at=BASE_TIME + timedelta(days=days),
        )

    return _make


@pytest.fixture
async def client(db_client: TursoClient) -> AsyncIterator[AsyncClient]:
    """Create async test client for FastAPI app with database."""
    repo = ClientRepository(db_client)
    await repo.initialize()

    app.state.db = db_client
    app.state.client_repo = repo
    app.state.identity_service = IdentityResolutionService(store=repo)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    # Clean up app state
    del app.state.db
    del app.state.client_repo
    del app.state.identity_service
