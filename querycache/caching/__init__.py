"""
querycache Caching System
=========================

Two-tier caching for document-store queries: an ephemeral cache scoped to
one invocation in front of a durable, store-backed cache with TTLs and tags.
"""

from querycache.caching.cacheable import UNCACHED_PREFIX, Cacheable
from querycache.caching.coordinator import CacheCoordinator, create_cache_coordinator
from querycache.caching.descriptor import FilterClause, Ordering, QueryDescriptor
from querycache.caching.durable import DurableCache
from querycache.caching.ephemeral import (
    CacheStats,
    EphemeralCache,
    current_ephemeral_cache,
    ephemeral_scope,
)
from querycache.caching.exceptions import (
    CacheError,
    StoreNotFoundError,
    StoreUnavailableError,
)
from querycache.caching.keys import (
    KEY_ALGORITHM_VERSION,
    CacheKeyKind,
    KeyDeriver,
    collection_pattern,
    derive_batch_key,
    derive_count_key,
    derive_document_key,
    derive_exists_key,
    derive_query_key,
    extract_collection,
    is_valid_key,
)
from querycache.caching.middleware import RequestCacheMiddleware
from querycache.caching.stores import (
    CacheStore,
    MemoryStore,
    RedisStore,
    TaggedCache,
    build_stores,
)

__all__ = [
    # Keys
    "KeyDeriver",
    "CacheKeyKind",
    "KEY_ALGORITHM_VERSION",
    "derive_query_key",
    "derive_document_key",
    "derive_count_key",
    "derive_exists_key",
    "derive_batch_key",
    "extract_collection",
    "is_valid_key",
    "collection_pattern",
    # Descriptors
    "QueryDescriptor",
    "FilterClause",
    "Ordering",
    # Tiers
    "EphemeralCache",
    "CacheStats",
    "ephemeral_scope",
    "current_ephemeral_cache",
    "DurableCache",
    "CacheCoordinator",
    "create_cache_coordinator",
    # Stores
    "CacheStore",
    "TaggedCache",
    "MemoryStore",
    "RedisStore",
    "build_stores",
    # Integration
    "Cacheable",
    "UNCACHED_PREFIX",
    "RequestCacheMiddleware",
    # Errors
    "CacheError",
    "StoreNotFoundError",
    "StoreUnavailableError",
]
