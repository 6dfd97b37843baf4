"""Tests for the health, readiness and version endpoints."""

import pytest

pytestmark = pytest.mark.asyncio


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy"}


async def test_version(client):
    resp = await client.get("/version")
    assert resp.json() == {"version": "0.1.0", "environment": "development"}


async def test_ready_degraded_without_redis(client):
    resp = await client.get("/ready")
    assert resp.status_code == 503
    body = resp.json()
    assert body["status"] == "degraded"
    assert body["checks"]["database"] == "ok"
    assert body["checks"]["redis"].startswith("error")


async def test_request_id_propagated(client):
    resp = await client.get("/health", headers={"X-Request-Id": "abc123"})
    assert resp.headers["X-Request-Id"] == "abc123"
    resp = await client.get("/health")
    assert len(resp.headers["X-Request-Id"]) == 32


async def test_unknown_route_is_json(client):
    resp = await client.get("/api/v1/nope")
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Not Found"}
