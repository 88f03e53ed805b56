"""
Cache Stores
============

Pluggable backends for the durable cache tier.

Every store offers ``get``/``put``/``has``/``forget``/``flush`` plus a
``tags()`` view. Stores without a tag index accept tagged writes as plain
writes and turn tag flushes into a logged no-op, so callers can use one
code path against every backend.
"""

from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from redis.exceptions import RedisError

from querycache.caching.exceptions import StoreUnavailableError
from querycache.types import MISSING

if TYPE_CHECKING:
    from querycache.config import Settings

logger = structlog.get_logger(__name__)

R = TypeVar("R")


class CacheStore(ABC):
    """Base class for durable cache backends."""

    supports_tags: bool = False

    def __init__(self, name: str) -> None:
        self.name = name

    @abstractmethod
    async def get(self, key: str) -> Any:
        """Return the stored value or ``MISSING``."""

    @abstractmethod
    async def put(self, key: str, value: Any, ttl: int | None) -> bool:
        """Store ``value``; ``ttl=None`` keeps it until explicitly removed."""

    @abstractmethod
    async def forget(self, key: str) -> bool:
        """Remove ``key``; True if something was removed."""

    @abstractmethod
    async def flush(self) -> bool:
        """Remove every entry owned by this store."""

    async def has(self, key: str) -> bool:
        return await self.get(key) is not MISSING

    async def put_tagged(
        self, key: str, value: Any, ttl: int | None, tags: frozenset[str]
    ) -> bool:
        return await self.put(key, value, ttl)

    async def flush_tags(self, tags: frozenset[str]) -> bool:
        logger.warning("cache_tags_unsupported", store=self.name, tags=sorted(tags))
        return False

    def tags(self, tags: Iterable[str]) -> TaggedCache:
        return TaggedCache(self, tags)

    async def close(self) -> None:
        return None


class TaggedCache:
    """A view of a store that labels writes and flushes by label."""

    def __init__(self, store: CacheStore, tags: Iterable[str]) -> None:
        self._store = store
        self._tags = frozenset(tags)

    @property
    def tag_names(self) -> frozenset[str]:
        return self._tags

    async def put(self, key: str, value: Any, ttl: int | None) -> bool:
        return await self._store.put_tagged(key, value, ttl, self._tags)

    async def forever(self, key: str, value: Any) -> bool:
        return await self._store.put_tagged(key, value, None, self._tags)

    async def flush(self) -> bool:
        return await self._store.flush_tags(self._tags)


@dataclass
class _MemoryEntry:
    value: Any
    expires_at: float | None
    tags: frozenset[str] = field(default_factory=frozenset)

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class MemoryStore(CacheStore):
    """
    In-process TTL store with an optional tag index.

    Suitable for tests, single-process deployments and as the fallback when
    Redis is not configured. ``supports_tags=False`` emulates a backend
    without tag support.

    Expired entries are dropped when read, and writes sweep the whole store
    at most once every ``sweep_interval`` seconds.
    """

    def __init__(
        self,
        name: str = "memory",
        *,
        supports_tags: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = 60.0,
    ) -> None:
        super().__init__(name)
        self.supports_tags = supports_tags
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval
        self._entries: dict[str, _MemoryEntry] = {}
        self._tag_index: dict[str, set[str]] = defaultdict(set)

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return MISSING

        if entry.is_expired(self._clock()):
            self._discard(key)
            return MISSING

        return entry.value

    async def put(self, key: str, value: Any, ttl: int | None) -> bool:
        return self._store(key, value, ttl, frozenset())

    async def put_tagged(
        self, key: str, value: Any, ttl: int | None, tags: frozenset[str]
    ) -> bool:
        if not self.supports_tags:
            return await super().put_tagged(key, value, ttl, tags)
        return self._store(key, value, ttl, tags)

    async def forget(self, key: str) -> bool:
        return self._discard(key)

    async def flush(self) -> bool:
        self._entries.clear()
        self._tag_index.clear()
        return True

    async def flush_tags(self, tags: frozenset[str]) -> bool:
        if not self.supports_tags:
            return await super().flush_tags(tags)

        keys: set[str] = set()
        for tag in tags:
            keys |= self._tag_index.pop(tag, set())

        for key in keys:
            self._discard(key)

        logger.debug("memory_store_tags_flushed", store=self.name, tags=sorted(tags), keys=len(keys))
        return True

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._discard(key)

        self._next_sweep = now + self._sweep_interval
        if expired:
            logger.debug("memory_store_purged", store=self.name, keys_removed=len(expired))
        return len(expired)

    def _store(self, key: str, value: Any, ttl: int | None, tags: frozenset[str]) -> bool:
        if ttl is not None and ttl <= 0:
            self._discard(key)
            return False

        now = self._clock()
        if now >= self._next_sweep:
            self.purge_expired()

        self._discard(key)
        expires_at = now + ttl if ttl is not None else None
        self._entries[key] = _MemoryEntry(value=value, expires_at=expires_at, tags=tags)
        for tag in tags:
            self._tag_index[tag].add(key)
        return True

    def _discard(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False

        for tag in entry.tags:
            members = self._tag_index.get(tag)
            if members is not None:
                members.discard(key)
                if not members:
                    del self._tag_index[tag]
        return True


class RedisStore(CacheStore):
    """
    Redis-backed store shared across processes.

    Values are JSON-encoded (never pickled) and must already be JSON-native:
    anything that would not read back as an equal value is rejected with
    ``TypeError`` rather than silently converted. Tags are Redis sets holding the
    member keys. All keys live under ``prefix`` so ``flush`` only touches
    this application's entries.
    """

    supports_tags = True

    def __init__(self, client: Any, name: str = "redis", prefix: str = "querycache:") -> None:
        super().__init__(name)
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        name: str = "redis",
        prefix: str = "querycache:",
        password: str | None = None,
    ) -> RedisStore:
        import redis.asyncio as aioredis

        client = aioredis.from_url(  # type: ignore[no-untyped-call]
            url,
            password=password,
            encoding="utf-8",
            decode_responses=True,
        )
        return cls(client, name=name, prefix=prefix)

    @property
    def prefix(self) -> str:
        return self._prefix

    async def get(self, key: str) -> Any:
        raw = await self._call("get", self._client.get(self._key(key)))
        if raw is None:
            return MISSING
        return json.loads(raw)

    async def put(self, key: str, value: Any, ttl: int | None) -> bool:
        payload = encode_value(value)
        if ttl is None:
            result = await self._call("set", self._client.set(self._key(key), payload))
        else:
            result = await self._call("set", self._client.set(self._key(key), payload, ex=ttl))
        return bool(result)

    async def put_tagged(
        self, key: str, value: Any, ttl: int | None, tags: frozenset[str]
    ) -> bool:
        stored = await self.put(key, value, ttl)
        if stored:
            for tag in tags:
                await self._call("sadd", self._client.sadd(self._tag_key(tag), self._key(key)))
        return stored

    async def has(self, key: str) -> bool:
        count = await self._call("exists", self._client.exists(self._key(key)))
        return int(count) > 0

    async def forget(self, key: str) -> bool:
        removed = await self._call("delete", self._client.delete(self._key(key)))
        return int(removed) > 0

    async def flush(self) -> bool:
        try:
            keys = [key async for key in self._client.scan_iter(match=f"{self._prefix}*", count=100)]
        except RedisError as e:
            raise StoreUnavailableError(f"Redis scan failed on store '{self.name}': {e}") from e

        if keys:
            await self._call("delete", self._client.delete(*keys))

        logger.info("redis_store_flushed", store=self.name, keys_removed=len(keys))
        return True

    async def flush_tags(self, tags: frozenset[str]) -> bool:
        tag_keys = [self._tag_key(tag) for tag in sorted(tags)]
        members: set[str] = set()
        for tag_key in tag_keys:
            members |= set(await self._call("smembers", self._client.smembers(tag_key)))

        if members:
            await self._call("delete", self._client.delete(*members))
        if tag_keys:
            await self._call("delete", self._client.delete(*tag_keys))

        logger.debug("redis_store_tags_flushed", store=self.name, tags=sorted(tags), keys=len(members))
        return True

    async def close(self) -> None:
        await self._client.aclose()

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self._prefix}tag:{tag}"

    async def _call(self, operation: str, pending: Awaitable[R]) -> R:
        try:
            return await pending
        except RedisError as e:
            raise StoreUnavailableError(
                f"Redis {operation} failed on store '{self.name}': {e}"
            ) from e


def encode_value(value: Any) -> str:
    """
    JSON-encode ``value`` for a shared store.

    Only types that decode to an equal value are accepted: ``None``,
    ``str``, ``bool``, ``int``, finite ``float``, ``list`` and ``dict`` with
    string keys. Tuples, sets, datetimes and other objects raise
    ``TypeError``; circular structures and NaN raise ``ValueError``.
    """
    _check_json_native(value, set())
    return json.dumps(value, allow_nan=False)


def _check_json_native(value: Any, visiting: set[int]) -> None:
    # Exact types: subclasses such as enums would decode as their base type
    if value is None or type(value) in (str, bool, int, float):
        return
    if type(value) not in (list, dict):
        raise TypeError(f"Cannot store {type(value).__name__} values as JSON")

    marker = id(value)
    if marker in visiting:
        raise ValueError("Cannot store circular structures as JSON")

    visiting.add(marker)
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Cannot store {type(key).__name__} mapping keys as JSON")
            _check_json_native(item, visiting)
    else:
        for item in value:
            _check_json_native(item, visiting)
    visiting.discard(marker)


def build_stores(settings: Settings) -> dict[str, CacheStore]:
    """Build the named store registry described by ``settings``."""
    stores: dict[str, CacheStore] = {"memory": MemoryStore("memory")}

    if settings.redis_url:
        stores["redis"] = RedisStore.from_url(
            settings.redis_url,
            name="redis",
            prefix=f"{settings.key_prefix}:",
            password=settings.redis_password,
        )
        logger.info("cache_store_registered", store="redis")

    return stores
