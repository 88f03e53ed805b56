"""
Cache Coordinator
=================

Read-through/write-through front for the two cache tiers.

Tier 1: ephemeral cache scoped to the current invocation (fastest)
Tier 2: durable cache shared across invocations and processes

Reads check tier 1, then tier 2 (promoting durable hits into tier 1 when
``auto_promote`` is on), then fall back to the caller's default. Writes go
to every enabled tier. A disabled tier is skipped, never an error, but
invalidation always reaches the ephemeral tier so nothing stale survives
re-enabling it.

``remember`` is not atomic across concurrent callers: two simultaneous
misses for the same key both run the producer and the last durable write
wins. No lock is taken.
"""

from __future__ import annotations

from collections.abc import Iterable
from contextlib import AbstractContextManager
from typing import Any, TypeVar

import structlog

from querycache.caching.durable import DurableCache
from querycache.caching.ephemeral import (
    EphemeralCache,
    current_ephemeral_cache,
    ephemeral_scope,
)
from querycache.caching.stores import CacheStore, build_stores
from querycache.config import CacheConfig, Settings, get_settings
from querycache.monitoring.logging import setup_logging
from querycache.types import MISSING, Producer, resolve_producer

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Rough per-entry size used for the ephemeral footprint estimate
ESTIMATED_ENTRY_BYTES = 1024


class CacheCoordinator:
    """Unified API over the ephemeral and durable cache tiers."""

    def __init__(
        self,
        durable: DurableCache,
        config: CacheConfig | None = None,
        ephemeral: EphemeralCache | None = None,
    ) -> None:
        self._config = config or CacheConfig()
        self._durable = durable
        self._ephemeral = ephemeral or EphemeralCache(max_items=self._config.max_ephemeral_items)

    @property
    def ephemeral(self) -> EphemeralCache:
        """The active scope's cache, or the coordinator's own outside a scope."""
        scoped = current_ephemeral_cache()
        return scoped if scoped is not None else self._ephemeral

    @property
    def durable(self) -> DurableCache:
        return self._durable

    @property
    def config(self) -> CacheConfig:
        return self._config

    def request_scope(self) -> AbstractContextManager[EphemeralCache]:
        """Give the enclosed invocation its own ephemeral cache."""
        return ephemeral_scope(max_items=self._config.max_ephemeral_items)

    async def lookup(
        self, key: str, store: str | None = None, *, persistent: bool = True
    ) -> Any:
        """Return the cached value from the fastest tier holding it, or ``MISSING``."""
        if self._request_tier_active():
            value = self.ephemeral.lookup(key)
            if value is not MISSING:
                return value

        if persistent and self._persistent_tier_active():
            value = await self._durable.lookup(key, self._store(store))
            if value is not MISSING:
                if self._config.auto_promote and self._request_tier_active():
                    self.ephemeral.put(key, value)
                return value

        return MISSING

    async def get(self, key: str, default: Any = None, store: str | None = None) -> Any:
        value = await self.lookup(key, store)
        return default if value is MISSING else value

    async def put(
        self,
        key: str,
        value: Any,
        ttl: int | None = None,
        tags: Iterable[str] | None = None,
        store: str | None = None,
        *,
        persistent: bool = True,
    ) -> bool:
        success = True

        if self._request_tier_active():
            self.ephemeral.put(key, value)

        if persistent and self._persistent_tier_active():
            ttl = self._config.default_ttl if ttl is None else ttl
            if not await self._durable.put(key, value, ttl, tags, self._store(store)):
                success = False

        return success

    async def forever(
        self,
        key: str,
        value: Any,
        tags: Iterable[str] | None = None,
        store: str | None = None,
        *,
        persistent: bool = True,
    ) -> bool:
        success = True

        if self._request_tier_active():
            self.ephemeral.put(key, value)

        if persistent and self._persistent_tier_active():
            if not await self._durable.forever(key, value, tags, self._store(store)):
                success = False

        return success

    async def remember(
        self,
        key: str,
        producer: Producer[T],
        ttl: int | None = None,
        tags: Iterable[str] | None = None,
        store: str | None = None,
        *,
        persistent: bool = True,
    ) -> T:
        """
        Get ``key`` from the tiers, or run ``producer`` and store its result.

        The producer runs at most once per call. If it raises, the error
        propagates and nothing is written.
        """
        value = await self.lookup(key, store, persistent=persistent)
        if value is not MISSING:
            return value  # type: ignore[no-any-return]

        value = await resolve_producer(producer)
        await self.put(key, value, ttl, tags, store, persistent=persistent)
        return value  # type: ignore[no-any-return]

    async def remember_forever(
        self,
        key: str,
        producer: Producer[T],
        tags: Iterable[str] | None = None,
        store: str | None = None,
        *,
        persistent: bool = True,
    ) -> T:
        value = await self.lookup(key, store, persistent=persistent)
        if value is not MISSING:
            return value  # type: ignore[no-any-return]

        value = await resolve_producer(producer)
        await self.forever(key, value, tags, store, persistent=persistent)
        return value  # type: ignore[no-any-return]

    async def has(self, key: str, store: str | None = None) -> bool:
        if self._request_tier_active() and self.ephemeral.has(key):
            return True

        if self._persistent_tier_active():
            return await self._durable.has(key, self._store(store))

        return False

    async def forget(self, key: str, store: str | None = None) -> bool:
        success = True

        self._forget_ephemeral(key)

        if self._config.persistent_cache_enabled:
            if not await self._durable.forget(key, self._store(store)):
                success = False

        return success

    async def forget_many(self, keys: Iterable[str], store: str | None = None) -> bool:
        success = True
        for key in keys:
            if not await self.forget(key, store):
                success = False
        return success

    async def flush_tags(self, tags: Iterable[str], store: str | None = None) -> bool:
        """
        Flush tagged durable entries.

        The ephemeral tier keeps no tag index, so it is cleared entirely.
        """
        success = True

        self.ephemeral.clear()

        if self._config.persistent_cache_enabled:
            if not await self._durable.flush_tags(tags, self._store(store)):
                success = False

        return success

    async def flush(self, store: str | None = None) -> bool:
        success = True

        self.ephemeral.clear()

        if self._config.persistent_cache_enabled:
            if not await self._durable.flush(self._store(store)):
                success = False

        return success

    def get_stats(self) -> dict[str, Any]:
        """Both tiers' counters plus merged totals."""
        request_stats = self.ephemeral.stats
        persistent_stats = self._durable.stats

        hits = request_stats.hits + persistent_stats.hits
        misses = request_stats.misses + persistent_stats.misses
        total = hits + misses

        return {
            "request_cache": self.ephemeral.get_stats(),
            "persistent_cache": self._durable.get_stats(),
            "combined": {
                "hits": hits,
                "misses": misses,
                "sets": request_stats.sets + persistent_stats.sets,
                "deletes": request_stats.deletes + persistent_stats.deletes,
                "hit_rate": round(hits / total, 4) if total > 0 else 0.0,
            },
        }

    def get_statistics(self) -> dict[str, Any]:
        """Flattened statistics with request totals and a size estimate."""
        stats = self.get_stats()
        combined = stats["combined"]

        return {
            "hit_rate": combined["hit_rate"],
            "total_requests": combined["hits"] + combined["misses"],
            "hits": combined["hits"],
            "misses": combined["misses"],
            "cache_size_bytes": self.ephemeral.size() * ESTIMATED_ENTRY_BYTES,
            "request_cache": stats["request_cache"],
            "persistent_cache": stats["persistent_cache"],
        }

    def reset_stats(self) -> None:
        self.ephemeral.reset_stats()
        self._durable.reset_stats()

    def configure(self, **changes: Any) -> None:
        """Change runtime options, e.g. ``configure(auto_promote=False)``."""
        was_active = self._request_tier_active()
        self._config.update(**changes)

        if not was_active and self._request_tier_active():
            self.ephemeral.clear()

        if "max_ephemeral_items" in changes:
            self._ephemeral.max_items = self._config.max_ephemeral_items

        logger.debug("cache_coordinator_configured", **changes)

    def get_config(self) -> dict[str, Any]:
        return self._config.to_dict()

    def enable_request_cache(self) -> None:
        was_active = self._request_tier_active()
        self._config.request_cache_enabled = True
        self.ephemeral.enable()

        # Writes made while the tier was off bypassed it
        if not was_active:
            self.ephemeral.clear()

    def disable_request_cache(self) -> None:
        self._config.request_cache_enabled = False
        self.ephemeral.disable()

    def enable_persistent_cache(self) -> None:
        self._config.persistent_cache_enabled = True
        self._durable.enable()

    def disable_persistent_cache(self) -> None:
        self._config.persistent_cache_enabled = False
        self._durable.disable()

    def enable_auto_promotion(self) -> None:
        self._config.auto_promote = True

    def disable_auto_promotion(self) -> None:
        self._config.auto_promote = False

    def is_request_cache_active(self) -> bool:
        return self._request_tier_active()

    def is_persistent_cache_active(self) -> bool:
        return self._persistent_tier_active()

    async def close(self) -> None:
        await self._durable.close()

    def _forget_ephemeral(self, key: str) -> None:
        ephemeral = self.ephemeral
        if ephemeral.is_enabled:
            ephemeral.forget(key)
        else:
            # A disabled cache ignores single-key removal
            ephemeral.clear()

    def _request_tier_active(self) -> bool:
        return self._config.request_cache_enabled and self.ephemeral.is_enabled

    def _persistent_tier_active(self) -> bool:
        return self._config.persistent_cache_enabled and self._durable.is_enabled

    def _store(self, store: str | None) -> str | None:
        return store or self._config.default_store


def create_cache_coordinator(
    settings: Settings | None = None,
    stores: dict[str, CacheStore] | None = None,
    *,
    configure_logs: bool = True,
) -> CacheCoordinator:
    """
    Wire stores, the durable tier and the coordinator from settings.

    Logging is configured from the same settings unless ``configure_logs``
    is False, for hosts that set up structlog themselves.
    """
    settings = settings or get_settings()
    if configure_logs:
        setup_logging(settings)

    stores = stores if stores is not None else build_stores(settings)

    default_store = settings.default_store
    if default_store is None:
        default_store = "redis" if "redis" in stores else next(iter(stores))

    durable = DurableCache(stores, default_store=default_store, default_ttl=settings.default_ttl)

    config = CacheConfig.from_settings(settings)
    config.default_store = default_store

    logger.info(
        "cache_coordinator_initialized",
        stores=list(stores),
        default_store=default_store,
        request_cache_enabled=config.request_cache_enabled,
        persistent_cache_enabled=config.persistent_cache_enabled,
    )
    return CacheCoordinator(durable, config)
