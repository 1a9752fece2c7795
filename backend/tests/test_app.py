"""
Application shell: health endpoints and correlation ids.
"""

from httpx import AsyncClient


async def test_health(client: AsyncClient):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


async def test_correlation_id_is_echoed(client: AsyncClient):
    response = await client.get("/", headers={"X-Correlation-ID": "abc-123"})

    assert response.headers["X-Correlation-ID"] == "abc-123"


async def test_correlation_id_is_generated(client: AsyncClient):
    response = await client.get("/health")

    assert len(response.headers["X-Correlation-ID"]) == 36


async def test_docs_hidden_outside_debug(client: AsyncClient):
    response = await client.get("/docs")

    assert response.status_code == 404
