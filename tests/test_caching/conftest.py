"""
Shared fixtures for the caching tests.
"""

from __future__ import annotations

import pytest

from querycache.caching.coordinator import CacheCoordinator
from querycache.caching.durable import DurableCache
from querycache.caching.ephemeral import EphemeralCache
from querycache.caching.stores import MemoryStore
from querycache.config import CacheConfig


class FakeClock:
    """Manually advanced monotonic clock for TTL tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    """Create a controllable clock."""
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    """Create a tag-capable in-memory store."""
    return MemoryStore("memory", clock=clock)


@pytest.fixture
def durable(memory_store):
    """Create a durable cache over the memory store."""
    return DurableCache({"memory": memory_store}, default_store="memory", default_ttl=3600)


@pytest.fixture
def ephemeral():
    """Create an ephemeral cache."""
    return EphemeralCache(max_items=1000)


@pytest.fixture
def cache_config():
    """Create a coordinator config with every tier on."""
    return CacheConfig(default_store="memory")


@pytest.fixture
def coordinator(durable, ephemeral, cache_config):
    """Create a coordinator over fresh tiers."""
    return CacheCoordinator(durable, cache_config, ephemeral)
