"""
Ephemeral Cache
===============

In-process cache scoped to a single invocation (one inbound request, one job).

Entries have no TTL and no tags. The cache is bounded by ``max_items`` and
evicts the oldest 10% of entries (insertion order) when it is full.

Each invocation should get its own instance: ``ephemeral_scope()`` installs
a fresh cache in a context variable so concurrent requests never share one.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from querycache.types import MISSING

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ITEMS = 1000
EVICTION_FRACTION = 0.1


@dataclass
class CacheStats:
    """Per-tier cache counters."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    clears: int = 0

    @property
    def hit_rate(self) -> float:
        """Fraction of lookups served from the cache."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "clears": self.clears,
            "hit_rate": round(self.hit_rate, 4),
        }


class EphemeralCache:
    """Bounded FIFO key/value store with hit/miss statistics."""

    def __init__(self, max_items: int = DEFAULT_MAX_ITEMS, enabled: bool = True) -> None:
        self._entries: dict[str, Any] = {}
        self._max_items = max(1, max_items)
        self._enabled = enabled
        self._stats = CacheStats()

    def lookup(self, key: str) -> Any:
        """Return the cached value or ``MISSING``, counting a hit or miss."""
        if not self._enabled:
            return MISSING

        if key in self._entries:
            self._stats.hits += 1
            return self._entries[key]

        self._stats.misses += 1
        return MISSING

    def get(self, key: str, default: Any = None) -> Any:
        value = self.lookup(key)
        return default if value is MISSING else value

    def put(self, key: str, value: Any) -> None:
        if not self._enabled:
            return

        if key not in self._entries and len(self._entries) >= self._max_items:
            self._evict(max(1, int(self._max_items * EVICTION_FRACTION)))

        self._entries[key] = value
        self._stats.sets += 1

    def has(self, key: str) -> bool:
        return self._enabled and key in self._entries

    def forget(self, key: str) -> None:
        if not self._enabled:
            return

        if key in self._entries:
            del self._entries[key]
            self._stats.deletes += 1

    def clear(self) -> None:
        self._entries.clear()
        self._stats.clears += 1

    def remember(self, key: str, producer: Callable[[], T]) -> T:
        """Return the cached value, or produce, store and return it."""
        value = self.lookup(key)
        if value is not MISSING:
            return value  # type: ignore[no-any-return]

        value = producer()
        self.put(key, value)
        return value  # type: ignore[no-any-return]

    def shrink(self) -> int:
        """Drop the oldest 20% of entries once the cache is over 80% full."""
        if len(self._entries) <= self._max_items * 0.8:
            return 0
        return self._evict(int(len(self._entries) * 0.2))

    def keys(self) -> list[str]:
        return list(self._entries)

    def size(self) -> int:
        return len(self._entries)

    @property
    def stats(self) -> CacheStats:
        return self._stats

    def get_stats(self) -> dict[str, Any]:
        return {**self._stats.to_dict(), "size": len(self._entries)}

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
    def max_items(self) -> int:
        return self._max_items

    @max_items.setter
    def max_items(self, value: int) -> None:
        self._max_items = max(1, value)

    def dump(self) -> dict[str, Any]:
        """Snapshot for debugging."""
        return {
            "cache": dict(self._entries),
            "stats": self.get_stats(),
            "enabled": self._enabled,
            "max_items": self._max_items,
        }

    def _evict(self, count: int) -> int:
        oldest = list(self._entries)[:count]
        for key in oldest:
            del self._entries[key]

        logger.debug("ephemeral_cache_evicted", count=len(oldest), remaining=len(self._entries))
        return len(oldest)


_current_cache: ContextVar[EphemeralCache | None] = ContextVar(
    "querycache_ephemeral_cache", default=None
)


def current_ephemeral_cache() -> EphemeralCache | None:
    """The cache of the active invocation scope, if any."""
    return _current_cache.get()


@contextmanager
def ephemeral_scope(max_items: int = DEFAULT_MAX_ITEMS) -> Iterator[EphemeralCache]:
    """
    Run a block with its own, fresh ephemeral cache.

    Usage:
        with ephemeral_scope() as cache:
            await handle_request()
    """
    cache = EphemeralCache(max_items=max_items)
    token = _current_cache.set(cache)
    try:
        yield cache
    finally:
        _current_cache.reset(token)
        cache.clear()
