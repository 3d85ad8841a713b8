"""Tests for API endpoints."""

import pytest
from httpx import AsyncClient

from client_identity.identity.schemas import PartialClientProfile
from client_identity.main import app
from client_identity.repositories.client_repo import ClientRepository


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient) -> None:
    """Test basic health check endpoint."""
    response = await client.get("/health/")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert "timestamp" in data
    assert data["version"] == "0.1.0"
    assert data["environment"] == "development"


@pytest.mark.asyncio
async def test_liveness(client: AsyncClient) -> None:
    """Test liveness probe endpoint."""
    response = await client.get("/health/live")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "alive"


@pytest.mark.asyncio
async def test_readiness(client: AsyncClient) -> None:
    """Test readiness probe endpoint."""
    response = await client.get("/health/ready")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ready"
    assert data["checks"] == {"api": "ok", "database": "ok", "identity": "ok"}


@pytest.mark.asyncio
async def test_search_and_merge_workflow(client: AsyncClient) -> None:
    """Find a duplicate at intake, review it and merge it."""
    repo: ClientRepository = app.state.client_repo
    kept = await repo.create_client(
        PartialClientProfile(first_name="Tom", last_name="Bell", phone="2295550100")
    )
    dup = await repo.create_client(
        PartialClientProfile(first_name="tom", last_name="bell", city="Albany")
    )
    await repo.create_interaction(dup.id, summary="food box")

    response = await client.post(
        "/identity/matches",
        json={"profile": {"first_name": "Tom", "last_name": "Bell"}},
    )
    assert response.status_code == 200
    matches = response.json()
    assert matches["status"] == "matches"
    assert {c["client"]["id"] for c in matches["candidates"]} == {kept.id, dup.id}

    response = await client.post(
        "/identity/workflows", json={"client_ids": [kept.id, dup.id]}
    )
    assert response.status_code == 201
    workflow_id = response.json()["id"]

    response = await client.post(
        f"/identity/workflows/{workflow_id}/review",
        json={"primary_id": kept.id},
    )
    assert response.status_code == 200
    assert response.json()["plan"]["canonical_fields"]["city"] == "Albany"

    response = await client.post(
        f"/identity/workflows/{workflow_id}/execute",
        json={"merged_by": "front-desk"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["state"] == "completed"
    assert data["result"]["merged_ids"] == [dup.id]
    assert data["result"]["reassigned_counts"]["interaction"] == 1

    # Re-executing a completed workflow is refused
    response = await client.post(
        f"/identity/workflows/{workflow_id}/execute", json={}
    )
    assert response.status_code == 409
    assert response.json()["detail"]["error"] == "invalid_workflow_state"
