"""
Cacheable Query Executors
=========================

Mixin that puts the cache tiers in front of a query executor.

An executor opts in by subclassing ``Cacheable`` and providing:

- ``collection``: the collection the executor reads from
- ``describe()``: a ``QueryDescriptor`` of its current filters/orderings/limits
- ``uncached_<method>``: the real implementation of each cacheable method

Usage:
    class UserQuery(Cacheable):
        async def uncached_fetch(self, limit=None): ...

        async def fetch(self, limit=None):
            return await self.get_cached("fetch", limit)
"""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from typing import Any, Self

import structlog

from querycache.caching.coordinator import CacheCoordinator
from querycache.caching.descriptor import QueryDescriptor
from querycache.caching.keys import KeyDeriver, extract_collection

logger = structlog.get_logger(__name__)

UNCACHED_PREFIX = "uncached_"

DEFAULT_INVALIDATED_METHODS = ("fetch", "first", "count", "exists")


class Cacheable(ABC):
    """Per-instance caching behaviour for query executors."""

    def __init__(
        self,
        *args: Any,
        cache: CacheCoordinator,
        key_deriver: KeyDeriver | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._cache = cache
        self._key_deriver = key_deriver or KeyDeriver()
        self._cache_enabled = True
        self._custom_cache_key: str | None = None
        self._cache_tags: list[str] = []
        self._cache_ttl: int | None = None
        self._cache_store: str | None = None
        self._persistent_cache_enabled = True

        # Keys this instance produced, by method name
        self._cached_keys: dict[str, str] = {}

    @property
    @abstractmethod
    def collection(self) -> str:
        """Collection this executor queries."""

    @abstractmethod
    def describe(self) -> QueryDescriptor:
        """Current query state used to derive cache keys."""

    async def get_cached(self, method: str, *arguments: Any) -> Any:
        """Run ``method`` through the cache tiers."""
        if not self.should_cache():
            return await self._execute(method, arguments)

        key = self.get_cache_key(method, arguments)
        self._cached_keys[method] = key

        return await self._cache.remember(
            key,
            lambda: self._execute(method, arguments),
            self._cache_ttl,
            self._effective_tags(),
            self._cache_store,
            persistent=self._uses_persistent_cache(),
        )

    def should_cache(self) -> bool:
        return self._cache_enabled and (
            self._cache.is_request_cache_active() or self._uses_persistent_cache()
        )

    def get_cache_key(self, method: str, arguments: Sequence[Any] = ()) -> str:
        if self._custom_cache_key is not None:
            return self._custom_cache_key

        descriptor = self.describe().for_operation(method, arguments)

        if method == "count":
            return self._key_deriver.derive_count_key(self.collection, descriptor)
        if method == "exists":
            return self._key_deriver.derive_exists_key(self.collection, descriptor)
        return self._key_deriver.derive_query_key(self.collection, descriptor)

    # Fluent configuration

    def without_cache(self) -> Self:
        self._cache_enabled = False
        return self

    def with_cache(self) -> Self:
        self._cache_enabled = True
        return self

    def cache_key(self, key: str) -> Self:
        self._custom_cache_key = key
        return self

    def cache_tags(self, tags: Iterable[str]) -> Self:
        for tag in tags:
            if tag not in self._cache_tags:
                self._cache_tags.append(tag)
        return self

    def cache_ttl(self, ttl: int) -> Self:
        self._cache_ttl = ttl
        return self

    def cache_store(self, store: str) -> Self:
        self._cache_store = store
        return self

    def with_persistent_cache(self) -> Self:
        self._persistent_cache_enabled = True
        return self

    def without_persistent_cache(self) -> Self:
        self._persistent_cache_enabled = False
        return self

    def get_cache_tags(self) -> list[str]:
        return list(self._cache_tags)

    # Invalidation

    async def clear_cache(self) -> None:
        """Forget every key this instance has produced."""
        if self._custom_cache_key is not None:
            await self._cache.forget(self._custom_cache_key, self._cache_store)
            return

        for key in self._cached_keys.values():
            await self._cache.forget(key, self._cache_store)

        self._cached_keys = {}

    async def invalidate_cache(self, methods: Iterable[str] = DEFAULT_INVALIDATED_METHODS) -> None:
        """Forget the keys of the named methods only."""
        for method in methods:
            key = self._cached_keys.pop(method, None) or self.get_cache_key(method)
            await self._cache.forget(key, self._cache_store)

    async def flush_cache(self) -> None:
        """Drop everything cached for this collection, in both tiers."""
        collection = self.collection

        for key in self._cached_keys.values():
            await self._cache.forget(key, self._cache_store)
        self._cached_keys = {}

        ephemeral = self._cache.ephemeral
        for key in ephemeral.keys():
            if extract_collection(key) == collection:
                ephemeral.forget(key)

        if self._uses_persistent_cache():
            await self._cache.durable.flush_tags(
                [collection], self._cache_store or self._cache.config.default_store
            )

        logger.debug("collection_cache_flushed", collection=collection)

    # Inspection

    async def is_cached(self, method: str = "fetch", *arguments: Any) -> bool:
        if not self.should_cache():
            return False

        if arguments:
            key = self.get_cache_key(method, arguments)
        else:
            key = self._cached_keys.get(method) or self.get_cache_key(method)

        return await self._cache.has(key, self._cache_store)

    async def warm_cache(self, method: str = "fetch", *arguments: Any) -> Any:
        """Populate the cache by running ``method`` once."""
        return await self.get_cached(method, *arguments)

    async def remember(self, ttl: int, method: str = "fetch", *arguments: Any) -> Any:
        """Run ``method`` cached with a one-off TTL."""
        original_ttl = self._cache_ttl
        self._cache_ttl = ttl
        try:
            return await self.get_cached(method, *arguments)
        finally:
            self._cache_ttl = original_ttl

    async def remember_forever(self, method: str = "fetch", *arguments: Any) -> Any:
        if not self.should_cache():
            return await self._execute(method, arguments)

        key = self.get_cache_key(method, arguments)
        self._cached_keys[method] = key

        return await self._cache.remember_forever(
            key,
            lambda: self._execute(method, arguments),
            self._effective_tags(),
            self._cache_store,
            persistent=self._uses_persistent_cache(),
        )

    def get_cache_stats(self) -> dict[str, Any]:
        return self._cache.get_stats()["combined"]

    async def get_cache_debug_info(self) -> dict[str, Any]:
        return {
            "cache_enabled": self._cache_enabled,
            "should_cache": self.should_cache(),
            "persistent_cache_enabled": self._persistent_cache_enabled,
            "custom_cache_key": self._custom_cache_key,
            "cache_key": self.get_cache_key("fetch"),
            "cache_tags": self.get_cache_tags(),
            "cache_ttl": self._cache_ttl,
            "cache_store": self._cache_store,
            "collection": self.collection,
            "cached_keys": dict(self._cached_keys),
            "is_cached": await self.is_cached("fetch"),
            "cache_stats": self._cache.get_stats(),
        }

    async def _execute(self, method: str, arguments: Sequence[Any]) -> Any:
        real = getattr(self, f"{UNCACHED_PREFIX}{method}", None)
        if real is None:
            raise AttributeError(
                f"{type(self).__name__} has no '{UNCACHED_PREFIX}{method}' implementation"
            )

        result = real(*arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _uses_persistent_cache(self) -> bool:
        return self._persistent_cache_enabled and self._cache.is_persistent_cache_active()

    def _effective_tags(self) -> list[str]:
        tags = [self.collection]
        tags.extend(tag for tag in self._cache_tags if tag != self.collection)
        return tags
