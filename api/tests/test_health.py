"""Health check tests."""

from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_root(client: AsyncClient):
    """Test root endpoint."""
    response = await client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["name"] == "HookRelay"
    assert "version" in data


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    """Test health check endpoint."""
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "valkey": "up"}


@pytest.mark.asyncio
async def test_health_degraded_without_valkey(client: AsyncClient):
    with patch("hookrelay.main.ping_valkey", AsyncMock(return_value=False)):
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "degraded", "valkey": "down"}


@pytest.mark.asyncio
async def test_metrics(client: AsyncClient):
    response = await client.get("/metrics")
    assert response.status_code == 200
    assert "hookrelay_endpoints_total 0" in response.text
    assert "hookrelay_dead_letters_unresolved 0" in response.text


@pytest.mark.asyncio
async def test_docs_available(client: AsyncClient):
    """Test OpenAPI docs are available."""
    response = await client.get("/docs")
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_openapi_schema(client: AsyncClient):
    """Test OpenAPI schema is available."""
    response = await client.get("/openapi.json")
    assert response.status_code == 200
    schema = response.json()
    assert schema["info"]["title"] == "HookRelay"
    assert "paths" in schema
