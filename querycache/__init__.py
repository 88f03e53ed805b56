"""
querycache - Two-tier query result caching for document stores.
"""

from querycache.caching import (
    Cacheable,
    CacheCoordinator,
    DurableCache,
    EphemeralCache,
    KeyDeriver,
    QueryDescriptor,
    create_cache_coordinator,
)
from querycache.config import CacheConfig, Settings, get_settings
from querycache.types import MISSING

__version__ = "1.0.0"

__all__ = [
    "Cacheable",
    "CacheCoordinator",
    "CacheConfig",
    "DurableCache",
    "EphemeralCache",
    "KeyDeriver",
    "MISSING",
    "QueryDescriptor",
    "Settings",
    "create_cache_coordinator",
    "get_settings",
]
