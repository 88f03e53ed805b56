"""
Durable Cache
=============

Cross-invocation cache tier over one or more named stores.

The durable tier is best effort: an unknown store name, an unreachable
backend or a value the backend cannot encode turns into a miss on read and
``False`` on write. It never raises into the caller's data path. Only
exceptions from a ``remember`` producer propagate, and then nothing is
written.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, TypeVar

import structlog

from querycache.caching.ephemeral import CacheStats
from querycache.caching.exceptions import CacheError, StoreNotFoundError
from querycache.caching.stores import CacheStore
from querycache.types import MISSING, Producer, resolve_producer

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_TTL = 3600

# Errors a backend may raise that degrade to a miss/False
STORE_ERRORS = (CacheError, ConnectionError, TimeoutError, OSError, ValueError, TypeError)


class DurableCache:
    """
    TTL- and tag-aware cache tier over injected stores.

    ``clears`` in the statistics counts successful flushes (full or by tag).
    """

    def __init__(
        self,
        stores: Mapping[str, CacheStore],
        default_store: str | None = None,
        default_ttl: int = DEFAULT_TTL,
        enabled: bool = True,
    ) -> None:
        if not stores:
            raise ValueError("DurableCache requires at least one store")

        self._stores: dict[str, CacheStore] = dict(stores)
        self._default_store = default_store or next(iter(self._stores))
        self._default_ttl = max(1, default_ttl)
        self._enabled = enabled
        self._stats = CacheStats()

    def store(self, name: str | None = None) -> CacheStore:
        """Resolve a store by name, falling back to the default store."""
        name = name or self._default_store
        try:
            return self._stores[name]
        except KeyError:
            raise StoreNotFoundError(f"Cache store [{name}] is not defined") from None

    def register_store(self, store: CacheStore, name: str | None = None) -> None:
        self._stores[name or store.name] = store

    @property
    def store_names(self) -> list[str]:
        return list(self._stores)

    async def lookup(self, key: str, store: str | None = None) -> Any:
        """Return the stored value or ``MISSING``, counting a hit or miss."""
        if not self._enabled:
            return MISSING

        try:
            value = await self.store(store).get(key)
        except STORE_ERRORS as e:
            logger.warning("cache_get_error", key=key, store=store, error=str(e))
            self._stats.misses += 1
            return MISSING

        if value is MISSING:
            self._stats.misses += 1
        else:
            self._stats.hits += 1
        return value

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
    ) -> bool:
        if not self._enabled:
            return False

        ttl = self._default_ttl if ttl is None else ttl
        return await self._write(key, value, ttl, tags, store)

    async def forever(
        self,
        key: str,
        value: Any,
        tags: Iterable[str] | None = None,
        store: str | None = None,
    ) -> bool:
        if not self._enabled:
            return False

        return await self._write(key, value, None, tags, store)

    async def remember(
        self,
        key: str,
        producer: Producer[T],
        ttl: int | None = None,
        tags: Iterable[str] | None = None,
        store: str | None = None,
    ) -> T:
        value = await self.lookup(key, store)
        if value is not MISSING:
            return value  # type: ignore[no-any-return]

        value = await resolve_producer(producer)
        await self.put(key, value, ttl, tags, store)
        return value  # type: ignore[no-any-return]

    async def remember_forever(
        self,
        key: str,
        producer: Producer[T],
        tags: Iterable[str] | None = None,
        store: str | None = None,
    ) -> T:
        value = await self.lookup(key, store)
        if value is not MISSING:
            return value  # type: ignore[no-any-return]

        value = await resolve_producer(producer)
        await self.forever(key, value, tags, store)
        return value  # type: ignore[no-any-return]

    async def has(self, key: str, store: str | None = None) -> bool:
        if not self._enabled:
            return False

        try:
            return await self.store(store).has(key)
        except STORE_ERRORS as e:
            logger.warning("cache_has_error", key=key, store=store, error=str(e))
            return False

    async def forget(self, key: str, store: str | None = None) -> bool:
        if not self._enabled:
            return False

        try:
            removed = await self.store(store).forget(key)
        except STORE_ERRORS as e:
            logger.warning("cache_forget_error", key=key, store=store, error=str(e))
            return False

        if removed:
            self._stats.deletes += 1
        return removed

    async def forget_many(self, keys: Iterable[str], store: str | None = None) -> bool:
        success = True
        for key in keys:
            if not await self.forget(key, store):
                success = False
        return success

    async def flush_tags(self, tags: Iterable[str], store: str | None = None) -> bool:
        """Remove entries written with any of ``tags``; no-op on tag-less stores."""
        tags = frozenset(tags)
        if not self._enabled or not tags:
            return False

        try:
            flushed = await self.store(store).tags(tags).flush()
        except STORE_ERRORS as e:
            logger.warning("cache_flush_tags_error", tags=sorted(tags), store=store, error=str(e))
            return False

        if flushed:
            self._stats.clears += 1
        return flushed

    async def flush(self, store: str | None = None) -> bool:
        try:
            flushed = await self.store(store).flush()
        except STORE_ERRORS as e:
            logger.warning("cache_flush_error", store=store, error=str(e))
            return False

        if flushed:
            self._stats.clears += 1
        return flushed

    async def close(self) -> None:
        for store in self._stores.values():
            await store.close()

    @property
    def stats(self) -> CacheStats:
        return self._stats

    def get_stats(self) -> dict[str, Any]:
        return self._stats.to_dict()

    def reset_stats(self) -> None:
        self._stats = CacheStats()

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        self._enabled = False

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def default_ttl(self) -> int:
        return self._default_ttl

    @default_ttl.setter
    def default_ttl(self, ttl: int) -> None:
        self._default_ttl = max(1, ttl)

    @property
    def default_store(self) -> str:
        return self._default_store

    @default_store.setter
    def default_store(self, name: str) -> None:
        self._default_store = name

    async def _write(
        self,
        key: str,
        value: Any,
        ttl: int | None,
        tags: Iterable[str] | None,
        store: str | None,
    ) -> bool:
        tag_set = frozenset(tags or ())
        try:
            backend = self.store(store)
            if tag_set:
                stored = await backend.tags(tag_set).put(key, value, ttl)
            else:
                stored = await backend.put(key, value, ttl)
        except STORE_ERRORS as e:
            logger.warning("cache_put_error", key=key, store=store, error=str(e))
            return False

        if stored:
            self._stats.sets += 1
        return stored
