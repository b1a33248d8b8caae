"""Tests for per-account rate limiting."""
import logging
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from limits.storage import MemoryStorage
from starlette.requests import Request

from web.backend.core.rate_limit import (
    RATE_ACCOUNT,
    account_budget,
    account_key,
    configure_limiter,
    limiter,
)


def _request(headers=None):
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw})


class TestAccountKey:

    def test_header_value(self):
        assert account_key(_request({"X-Account-Id": " acme "})) == "acme"

    @pytest.mark.parametrize("headers", [None, {"X-Account-Id": ""}, {"X-Account-Id": "   "}])
    def test_default_account(self, headers):
        assert account_key(_request(headers)) == "default"


class TestAccountBudget:

    def test_default(self):
        assert RATE_ACCOUNT == "100/minute"

    def test_reads_settings(self):
        with patch(
            "web.backend.core.rate_limit.get_web_settings",
            return_value=SimpleNamespace(rate_limit="5/second"),
        ):
            assert account_budget() == "5/second"

    def test_empty_setting_falls_back(self):
        with patch(
            "web.backend.core.rate_limit.get_web_settings",
            return_value=SimpleNamespace(rate_limit=""),
        ):
            assert account_budget() == RATE_ACCOUNT


class TestPerAccountLimit:
    """The budget is shared across bulk endpoints and kept per account."""

    @pytest.mark.asyncio
    async def test_exceeding_budget_returns_429(self, client):
        with patch(
            "web.backend.core.rate_limit.get_web_settings",
            return_value=SimpleNamespace(rate_limit="2/minute"),
        ):
            headers = {"X-Account-Id": "acme"}
            assert (await client.get("/api/v2/bulk-actions", headers=headers)).status_code == 200
            assert (await client.get("/api/v2/bulk-actions/handlers", headers=headers)).status_code == 200
            assert (await client.get("/api/v2/bulk-actions", headers=headers)).status_code == 429

            other = await client.get("/api/v2/bulk-actions", headers={"X-Account-Id": "globex"})
            assert other.status_code == 200

    @pytest.mark.asyncio
    async def test_health_not_limited(self, bare_client):
        with patch(
            "web.backend.core.rate_limit.get_web_settings",
            return_value=SimpleNamespace(rate_limit="1/minute"),
        ):
            for _ in range(3):
                assert (await bare_client.get("/api/v2/health")).status_code == 200


class TestConfigureLimiter:

    def test_none_url_does_nothing(self):
        storage = limiter._storage
        configure_limiter(None)
        configure_limiter("")
        assert limiter._storage is storage

    def test_redis_url_swaps_storage(self):
        storage, strategy, uri = limiter._storage, limiter._limiter, limiter._storage_uri
        fake_storage = MemoryStorage()
        try:
            with patch("web.backend.core.rate_limit.storage_from_string", return_value=fake_storage) as factory:
                configure_limiter("redis://localhost:6379/0")
            factory.assert_called_once_with("redis://localhost:6379/0")
            assert limiter._storage is fake_storage
            assert limiter._limiter.storage is fake_storage
        finally:
            limiter._storage, limiter._limiter, limiter._storage_uri = storage, strategy, uri

    def test_invalid_url_logs_warning(self, caplog):
        storage = limiter._storage
        with caplog.at_level(logging.WARNING, logger="web.backend.core.rate_limit"):
            configure_limiter("notascheme://nowhere")
        assert limiter._storage is storage
        assert "Failed to configure Redis rate limiter" in caplog.text
