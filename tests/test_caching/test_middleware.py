"""
Tests for the Request Cache Middleware
======================================

Tests for querycache/caching/middleware.py
"""

from unittest.mock import patch

import pytest
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from querycache.caching.ephemeral import current_ephemeral_cache
from querycache.caching.middleware import RequestCacheMiddleware
from querycache.config import get_settings


def build_app(coordinator, calls, **options):
    """Build an app whose endpoint resolves the same key twice per request."""

    async def produce():
        calls.append(1)
        return {"user": "ada"}

    async def endpoint(request: Request) -> JSONResponse:
        first = await coordinator.remember("query:users:profile", produce, persistent=False)
        second = await coordinator.remember("query:users:profile", produce, persistent=False)
        scoped = current_ephemeral_cache()
        return JSONResponse(
            {
                "same": first == second,
                "scoped": scoped is not None,
                "size": scoped.size() if scoped is not None else 0,
            }
        )

    return Starlette(
        routes=[Route("/profile", endpoint)],
        middleware=[Middleware(RequestCacheMiddleware, cache=coordinator, **options)],
    )


class TestRequestCacheMiddleware:
    """Tests for RequestCacheMiddleware."""

    def test_request_gets_own_scope(self, coordinator):
        """Test handlers see a scoped cache shared within the request."""
        calls = []
        client = TestClient(build_app(coordinator, calls))

        response = client.get("/profile")

        assert response.status_code == 200
        assert response.json() == {"same": True, "scoped": True, "size": 1}
        assert len(calls) == 1

    def test_requests_do_not_share_entries(self, coordinator, ephemeral):
        """Test a second request starts with an empty request cache."""
        calls = []
        client = TestClient(build_app(coordinator, calls))

        client.get("/profile")
        client.get("/profile")

        assert len(calls) == 2
        assert ephemeral.size() == 0
        assert current_ephemeral_cache() is None

    def test_stats_logged(self, coordinator):
        """Test per-request statistics are logged when enabled."""
        client = TestClient(build_app(coordinator, [], log_stats=True))

        with patch("querycache.caching.middleware.logger") as mock_logger:
            client.get("/profile")

        mock_logger.debug.assert_called_once()
        args, kwargs = mock_logger.debug.call_args
        assert args == ("request_cache_stats",)
        assert kwargs["path"] == "/profile"
        assert kwargs["hits"] == 1
        assert kwargs["misses"] == 1

    def test_stats_not_logged_by_default(self, coordinator):
        """Test nothing is logged unless requested."""
        client = TestClient(build_app(coordinator, []))

        with patch("querycache.caching.middleware.logger") as mock_logger:
            client.get("/profile")

        mock_logger.debug.assert_not_called()

    def test_log_stats_follows_settings(self, coordinator, monkeypatch):
        """Test QUERY_CACHE_LOG_STATS turns on statistics logging when not passed."""
        monkeypatch.setenv("QUERY_CACHE_LOG_STATS", "true")
        get_settings.cache_clear()
        try:
            client = TestClient(build_app(coordinator, []))

            with patch("querycache.caching.middleware.logger") as mock_logger:
                client.get("/profile")
        finally:
            get_settings.cache_clear()

        mock_logger.debug.assert_called_once()

    def test_explicit_log_stats_overrides_settings(self, coordinator, monkeypatch):
        """Test an explicit log_stats wins over the setting."""
        monkeypatch.setenv("QUERY_CACHE_LOG_STATS", "true")
        get_settings.cache_clear()
        try:
            client = TestClient(build_app(coordinator, [], log_stats=False))

            with patch("querycache.caching.middleware.logger") as mock_logger:
                client.get("/profile")
        finally:
            get_settings.cache_clear()

        mock_logger.debug.assert_not_called()


@pytest.mark.asyncio
async def test_scope_outside_http(coordinator):
    """Test background jobs can open a request scope directly."""
    with coordinator.request_scope() as scoped:
        await coordinator.put("k", "v", persistent=False)
        assert scoped.get("k") == "v"

    assert current_ephemeral_cache() is None
