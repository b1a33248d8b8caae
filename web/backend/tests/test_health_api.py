"""Tests for health check and root endpoints."""
from types import SimpleNamespace

import pytest


class TestHealthEndpoint:
    """GET /api/v2/health."""

    @pytest.mark.asyncio
    async def test_degraded_without_pipeline(self, bare_client):
        resp = await bare_client.get("/api/v2/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "degraded"
        assert data["service"] == "bulk-actions"
        assert data["services"] == {"database": False, "workers": 0, "scheduler": False}

    @pytest.mark.asyncio
    async def test_ok_with_pipeline(self, app, bare_client):
        app.state.bulk = SimpleNamespace(
            workers=[SimpleNamespace(is_running=True), SimpleNamespace(is_running=False)],
            scheduler=SimpleNamespace(is_running=True),
        )
        resp = await bare_client.get("/api/v2/health")
        data = resp.json()
        assert data["status"] == "ok"
        assert data["services"]["workers"] == 1
        assert data["services"]["scheduler"] is True

    @pytest.mark.asyncio
    async def test_security_headers(self, bare_client):
        resp = await bare_client.get("/api/v2/health")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"


class TestRootEndpoint:
    """GET /."""

    @pytest.mark.asyncio
    async def test_root(self, bare_client):
        resp = await bare_client.get("/")
        assert resp.status_code == 200
        data = resp.json()
        assert data["service"] == "bulk-actions"
        assert data["version"] == "1.0.0"
        assert data["docs"] == "/api/docs"
