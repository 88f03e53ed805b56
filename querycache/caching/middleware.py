"""
Request cache middleware.

Gives every HTTP request its own ephemeral cache so cached query results
never leak between requests, and optionally logs per-request cache
statistics.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from querycache.caching.coordinator import CacheCoordinator
from querycache.config import get_settings

logger = structlog.get_logger(__name__)


class RequestCacheMiddleware(BaseHTTPMiddleware):
    """
    Open a request scope on the cache coordinator around each request.

    The scope's cache is stored in a context variable, so handlers (and
    tasks they spawn) resolve ``coordinator.ephemeral`` to it. The cache is
    cleared when the response has been produced.

    ``log_stats`` defaults to the ``QUERY_CACHE_LOG_STATS`` setting.
    """

    def __init__(
        self, app: ASGIApp, cache: CacheCoordinator, log_stats: bool | None = None
    ) -> None:
        super().__init__(app)
        self.cache = cache
        self.log_stats = get_settings().log_stats if log_stats is None else log_stats

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        with self.cache.request_scope() as ephemeral:
            response: Response = await call_next(request)

            if self.log_stats:
                stats = ephemeral.get_stats()
                if stats["hits"] + stats["misses"] > 0:
                    logger.debug("request_cache_stats", path=request.url.path, **stats)

        return response
