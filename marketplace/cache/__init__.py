"""
Marketplace Caching Layer

Keeps read-heavy marketplace queries off the database:
- Layer 1: Edge Cache (image blobs on local disk, CDN simulation)
- Layer 2: Distributed Cache (Redis, shared by all instances)
- Layer 3: Local Fallback (in-process, used while Redis is unreachable)
- Layer 4: Database (source of truth, guarded by the operation queue)

Key components:
- CacheStore: Redis-primary store with local fallback and degraded mode
- CacheAside: get-or-compute-and-store engine
- MarketplaceCache: cache keys and TTLs per query shape
- CacheInvalidator: event-driven invalidation fan-out
- OperationQueue / QueryExecutor: bounded concurrency for critical queries
- EdgeCache: disk-backed blob cache
- CacheWarmer / CacheMonitor: warm-up and health

Usage:
    services = create_cache_services(categories_fn, stats_fn)
    await services.start()

    outcome = await services.policy.get_assets({"category": 5}, fetch)
    await services.invalidator.handle_event(CacheEvent.ASSET_CREATED)
"""

from marketplace.cache.config import CacheConfig, CacheTTL, get_cache_config
from marketplace.cache.keys import CacheKey, build_key, key_pattern
from marketplace.cache.local import LocalCache
from marketplace.cache.store import CacheStore, CacheLookup, StoreResult, CacheBackend
from marketplace.cache.aside import CacheAside, FetchOutcome
from marketplace.cache.policy import MarketplaceCache, QueryShape, classify_query, ttl_for_query
from marketplace.cache.invalidation import CacheInvalidator, CacheEvent, InvalidationResult
from marketplace.cache.queue import OperationQueue, QueryExecutor, run_with_retry
from marketplace.cache.edge import EdgeCache, EdgeCacheObject, PopularEntity, WarmUpResult
from marketplace.cache.warming import CacheWarmer
from marketplace.cache.monitoring import CacheMonitor, HealthStatus, HealthCheckResult
from marketplace.cache.services import CacheServices, create_cache_services

__all__ = [
    # Config
    "CacheConfig",
    "CacheTTL",
    "get_cache_config",
    # Keys
    "CacheKey",
    "build_key",
    "key_pattern",
    # Store
    "LocalCache",
    "CacheStore",
    "CacheLookup",
    "StoreResult",
    "CacheBackend",
    # Cache-aside
    "CacheAside",
    "FetchOutcome",
    # Policy
    "MarketplaceCache",
    "QueryShape",
    "classify_query",
    "ttl_for_query",
    # Invalidation
    "CacheInvalidator",
    "CacheEvent",
    "InvalidationResult",
    # Queue
    "OperationQueue",
    "QueryExecutor",
    "run_with_retry",
    # Edge
    "EdgeCache",
    "EdgeCacheObject",
    "PopularEntity",
    "WarmUpResult",
    # Warming / Monitoring
    "CacheWarmer",
    "CacheMonitor",
    "HealthStatus",
    "HealthCheckResult",
    # Wiring
    "CacheServices",
    "create_cache_services",
]
