"""
Tests for Cacheable Query Executors
===================================

Tests for querycache/caching/cacheable.py
"""

from collections import Counter

import pytest

from querycache.caching.cacheable import Cacheable
from querycache.caching.descriptor import FilterClause, QueryDescriptor
from querycache.caching.keys import extract_collection
from querycache.caching.stores import MemoryStore


class UserQuery(Cacheable):
    """Minimal executor over an in-memory list of documents."""

    def __init__(self, cache, documents=None, collection="users"):
        super().__init__(cache=cache)
        self._collection = collection
        self._documents = documents if documents is not None else [
            {"id": "u1", "name": "ada", "active": True},
            {"id": "u2", "name": "bob", "active": False},
        ]
        self._filters = []
        self._limit = None
        self.calls = Counter()

    @property
    def collection(self):
        return self._collection

    def where(self, field, value):
        self._filters.append(FilterClause(field, "=", value))
        return self

    def limit(self, count):
        self._limit = count
        return self

    def describe(self):
        return QueryDescriptor(
            collection=self._collection,
            filters=list(self._filters),
            limit=self._limit,
        )

    def _matching(self):
        rows = [
            doc
            for doc in self._documents
            if all(doc.get(clause.field) == clause.value for clause in self._filters)
        ]
        return rows[: self._limit] if self._limit is not None else rows

    async def uncached_fetch(self, *columns):
        self.calls["fetch"] += 1
        rows = self._matching()
        if columns:
            rows = [{column: row[column] for column in columns} for row in rows]
        return rows

    async def uncached_first(self):
        self.calls["first"] += 1
        rows = self._matching()
        return rows[0] if rows else None

    async def uncached_count(self):
        self.calls["count"] += 1
        return len(self._matching())

    def uncached_exists(self):
        self.calls["exists"] += 1
        return bool(self._matching())

    async def fetch(self, *columns):
        return await self.get_cached("fetch", *columns)

    async def first(self):
        return await self.get_cached("first")

    async def count(self):
        return await self.get_cached("count")

    async def exists(self):
        return await self.get_cached("exists")


@pytest.fixture
def users(coordinator):
    """Create a cacheable users query."""
    return UserQuery(coordinator)


class TestCachedExecution:
    """Tests for get_cached()."""

    @pytest.mark.asyncio
    async def test_second_call_served_from_cache(self, users):
        """Test the real implementation runs once for identical queries."""
        first = await users.where("active", True).fetch()
        second = await users.fetch()

        assert first == second == [{"id": "u1", "name": "ada", "active": True}]
        assert users.calls["fetch"] == 1

    @pytest.mark.asyncio
    async def test_methods_cached_separately(self, users):
        """Test fetch, count and exists never share an entry."""
        await users.fetch()
        assert await users.count() == 2
        assert await users.exists() is True

        assert users.calls == Counter({"fetch": 1, "count": 1, "exists": 1})

    @pytest.mark.asyncio
    async def test_arguments_cached_separately(self, users):
        """Test different method arguments get different entries."""
        names = await users.fetch("name")
        ids = await users.fetch("id")

        assert names == [{"name": "ada"}, {"name": "bob"}]
        assert ids == [{"id": "u1"}, {"id": "u2"}]
        assert users.calls["fetch"] == 2

    @pytest.mark.asyncio
    async def test_query_state_changes_key(self, users):
        """Test adding a filter produces a new entry."""
        await users.count()
        await users.where("active", False).count()

        assert users.calls["count"] == 2

    @pytest.mark.asyncio
    async def test_cached_none_result(self, users):
        """Test a None result is cached."""
        users.where("name", "nobody")

        assert await users.first() is None
        assert await users.first() is None
        assert users.calls["first"] == 1

    @pytest.mark.asyncio
    async def test_shared_across_instances(self, coordinator):
        """Test equal queries from different executors share the entry."""
        first = UserQuery(coordinator).where("active", True)
        second = UserQuery(coordinator).where("active", True)

        await first.fetch()
        await second.fetch()

        assert first.calls["fetch"] == 1
        assert second.calls["fetch"] == 0

    @pytest.mark.asyncio
    async def test_durable_write_tagged_with_collection(self, users, durable):
        """Test durable entries can be flushed by collection name."""
        await users.fetch()
        key = users.get_cache_key("fetch")

        await durable.flush_tags(["users"])

        assert await durable.has(key) is False

    @pytest.mark.asyncio
    async def test_missing_implementation(self, users):
        """Test an unknown method raises AttributeError."""
        with pytest.raises(AttributeError, match="uncached_pluck"):
            await users.get_cached("pluck")


class TestCacheKeys:
    """Tests for get_cache_key()."""

    def test_key_namespaces(self, users):
        """Test each method maps to its key namespace."""
        assert users.get_cache_key("fetch").startswith("query:users:")
        assert users.get_cache_key("first").startswith("query:users:")
        assert users.get_cache_key("count").startswith("count:users:")
        assert users.get_cache_key("exists").startswith("exists:users:")

    def test_fetch_and_first_differ(self, users):
        """Test the method name is part of the key."""
        assert users.get_cache_key("fetch") != users.get_cache_key("first")

    def test_custom_key(self, users):
        """Test an explicit key overrides derivation."""
        users.cache_key("active-users")

        assert users.get_cache_key("fetch") == "active-users"


class TestFluentConfiguration:
    """Tests for per-instance cache settings."""

    @pytest.mark.asyncio
    async def test_without_cache(self, users):
        """Test disabling caching runs the implementation every time."""
        users.without_cache()

        await users.fetch()
        await users.fetch()

        assert users.calls["fetch"] == 2
        assert users.should_cache() is False

        users.with_cache()
        assert users.should_cache() is True

    def test_fluent_methods_return_self(self, users):
        """Test configuration calls chain."""
        result = (
            users.cache_tags(["a"])
            .cache_ttl(30)
            .cache_store("memory")
            .without_persistent_cache()
            .with_persistent_cache()
            .with_cache()
        )

        assert result is users

    def test_cache_tags_accumulate(self, users):
        """Test tags accumulate without duplicates."""
        users.cache_tags(["a", "b"]).cache_tags(["b", "c"])

        assert users.get_cache_tags() == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_extra_tags_applied(self, users, durable):
        """Test custom tags can flush the entry."""
        await users.cache_tags(["dashboard"]).fetch()
        key = users.get_cache_key("fetch")

        await durable.flush_tags(["dashboard"])

        assert await durable.has(key) is False

    @pytest.mark.asyncio
    async def test_cache_ttl(self, users, durable, clock):
        """Test the instance TTL is applied to durable writes."""
        await users.cache_ttl(5).fetch()
        key = users.get_cache_key("fetch")

        clock.advance(5)

        assert await durable.has(key) is False

    @pytest.mark.asyncio
    async def test_without_persistent_cache(self, users, durable, ephemeral):
        """Test request-only caching skips the durable tier."""
        await users.without_persistent_cache().fetch()
        key = users.get_cache_key("fetch")

        assert ephemeral.has(key)
        assert await durable.has(key) is False

    @pytest.mark.asyncio
    async def test_cache_store(self, users, durable, clock):
        """Test writes go to the chosen store."""
        other = MemoryStore("other", clock=clock)
        durable.register_store(other)

        await users.cache_store("other").fetch()

        assert await other.has(users.get_cache_key("fetch")) is True


class TestInvalidation:
    """Tests for clearing cached results."""

    @pytest.mark.asyncio
    async def test_clear_cache(self, users):
        """Test clear_cache forgets every key the instance produced."""
        await users.fetch()
        await users.count()

        await users.clear_cache()
        await users.fetch()
        await users.count()

        assert users.calls == Counter({"fetch": 2, "count": 2})

    @pytest.mark.asyncio
    async def test_clear_custom_key(self, users, coordinator):
        """Test clear_cache removes a custom key."""
        await users.cache_key("active-users").fetch()

        await users.clear_cache()

        assert await coordinator.has("active-users") is False

    @pytest.mark.asyncio
    async def test_invalidate_selected_methods(self, users):
        """Test invalidate_cache only forgets the named methods."""
        await users.fetch()
        await users.count()

        await users.invalidate_cache(["count"])
        await users.fetch()
        await users.count()

        assert users.calls == Counter({"fetch": 1, "count": 2})

    @pytest.mark.asyncio
    async def test_invalidate_defaults(self, users):
        """Test the default invalidation covers the common methods."""
        await users.fetch()
        await users.exists()

        await users.invalidate_cache()
        await users.fetch()
        await users.exists()

        assert users.calls == Counter({"fetch": 2, "exists": 2})

    @pytest.mark.asyncio
    async def test_flush_cache_whole_collection(self, coordinator, ephemeral, durable):
        """Test flush_cache drops every entry of the collection only."""
        users = UserQuery(coordinator)
        active = UserQuery(coordinator).where("active", True)
        posts = UserQuery(coordinator, collection="posts")

        await users.fetch()
        await active.count()
        await posts.fetch()
        posts_key = posts.get_cache_key("fetch")

        await users.flush_cache()

        remaining = [extract_collection(key) for key in ephemeral.keys()]
        assert remaining == ["posts"]
        assert await durable.has(active.get_cache_key("count")) is False
        assert await durable.has(posts_key) is True


class TestInspection:
    """Tests for is_cached, warm_cache and friends."""

    @pytest.mark.asyncio
    async def test_is_cached(self, users):
        """Test is_cached reflects the cache state."""
        assert await users.is_cached() is False

        await users.fetch()

        assert await users.is_cached() is True
        assert await users.is_cached("count") is False

    @pytest.mark.asyncio
    async def test_is_cached_with_arguments(self, users):
        """Test is_cached derives the key for explicit arguments."""
        await users.fetch("name")

        assert await users.is_cached("fetch", "name") is True
        assert await users.is_cached("fetch", "id") is False

    @pytest.mark.asyncio
    async def test_warm_cache(self, users):
        """Test warming populates the entry."""
        await users.warm_cache("count")

        assert await users.count() == 2
        assert users.calls["count"] == 1

    @pytest.mark.asyncio
    async def test_remember_with_ttl(self, users, durable, clock):
        """Test a one-off TTL applies to that call only."""
        users.cache_ttl(1000)

        await users.remember(10, "count")
        key = users.get_cache_key("count")

        clock.advance(10)

        assert await durable.has(key) is False
        assert (await users.get_cache_debug_info())["cache_ttl"] == 1000

    @pytest.mark.asyncio
    async def test_remember_forever(self, users, durable, clock):
        """Test remember_forever stores without expiry."""
        await users.remember_forever("fetch")

        clock.advance(10**9)

        assert await durable.has(users.get_cache_key("fetch")) is True

    @pytest.mark.asyncio
    async def test_remember_forever_without_cache(self, users):
        """Test remember_forever executes directly when caching is off."""
        users.without_cache()

        await users.remember_forever("fetch")
        await users.remember_forever("fetch")

        assert users.calls["fetch"] == 2

    @pytest.mark.asyncio
    async def test_cache_stats(self, users):
        """Test the combined statistics are exposed."""
        await users.fetch()
        await users.fetch()

        stats = users.get_cache_stats()

        assert stats["hits"] == 1
        assert stats["misses"] == 2

    @pytest.mark.asyncio
    async def test_debug_info(self, users):
        """Test the debug snapshot."""
        await users.cache_tags(["x"]).fetch()

        info = await users.get_cache_debug_info()

        assert info["collection"] == "users"
        assert info["cache_enabled"] is True
        assert info["is_cached"] is True
        assert info["cache_tags"] == ["x"]
        assert info["cache_key"] == users.get_cache_key("fetch")
        assert set(info["cached_keys"]) == {"fetch"}

    @pytest.mark.asyncio
    async def test_no_caching_when_all_tiers_off(self, users, coordinator):
        """Test executors bypass the cache when every tier is off."""
        coordinator.disable_request_cache()
        coordinator.disable_persistent_cache()

        await users.fetch()
        await users.fetch()

        assert users.should_cache() is False
        assert users.calls["fetch"] == 2
