"""Tests for health check endpoints."""

import os
from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

from review_bridge import __version__
from review_bridge.bridge import Bridge
from review_bridge.config import Settings
from review_bridge.main import create_app
from review_bridge.storage.migrations import MIGRATIONS


def _settings() -> Settings:
    with patch.dict(os.environ, {}, clear=True):
        return Settings(_env_file=None, DATABASE_PATH=":memory:", APP_NAME="Test Bridge")


async def _client(bridge: Bridge):
    transport = ASGITransport(app=create_app(bridge, manage_lifecycle=False))
    return AsyncClient(transport=transport, base_url="http://test")


@pytest.fixture
async def client(storage, review_source, chat):
    """Client against a bridge with a fully migrated store."""
    bridge = Bridge(_settings(), storage, review_source, chat)
    async with await _client(bridge) as client:
        yield client


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    """Test basic health endpoint returns ok."""
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_root(client: AsyncClient):
    """Test root endpoint returns app info."""
    response = await client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["name"] == "Test Bridge"
    assert data["version"] == __version__
    assert data["docs"] == "/docs"


@pytest.mark.asyncio
async def test_ready_on_migrated_store(client: AsyncClient):
    response = await client.get("/health/ready")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ready"
    assert data["running"] is False
    checks = {check["name"]: check["status"] for check in data["checks"]}
    assert checks == {"connectivity": "pass", "schema_version": "pass", "transaction": "pass", "storage": "pass"}


@pytest.mark.asyncio
async def test_ready_with_pending_migrations_is_a_warning(raw_storage, review_source, chat):
    """An unmigrated store is still ready; start() will migrate it."""
    bridge = Bridge(_settings(), raw_storage, review_source, chat)
    async with await _client(bridge) as client:
        response = await client.get("/health/ready")

    assert response.status_code == 200
    schema = next(c for c in response.json()["checks"] if c["name"] == "schema_version")
    assert schema["status"] == "warn"
    assert schema["details"]["current"] == 0


@pytest.mark.asyncio
async def test_schema_ahead_of_code_is_unavailable(storage, review_source, chat):
    bridge = Bridge(_settings(), storage, review_source, chat, migrations=MIGRATIONS[:5])
    async with await _client(bridge) as client:
        response = await client.get("/health/ready")

    assert response.status_code == 503
    assert response.json()["status"] == "degraded"


@pytest.mark.asyncio
async def test_stats_lists_apps(client: AsyncClient):
    response = await client.get("/stats")
    assert response.status_code == 200
    assert response.json() == {"apps": {}}
