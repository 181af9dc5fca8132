"""
Cache Configuration

Centralized configuration for the caching layer.

Redis is optional: when REDIS_URL is not set the store runs in
fallback-only mode on the in-process cache.
"""

import os
from dataclasses import dataclass, field
from typing import Optional
from functools import lru_cache


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class CacheTTL:
    """
    Cache TTL configuration (seconds) by query shape.

    Narrow result sets churn less than broad ones, search results must
    stay relevant, and newest-first lists must reflect very recent uploads.
    A TTL of 0 means "until explicitly invalidated".
    """

    # Asset listings
    CATEGORY_LISTING: int = 600
    SEARCH: int = 180
    NEWEST: int = 120
    COLLECTIONS: int = 300
    LISTING_DEFAULT: int = 300

    # Taxonomy (rarely changes)
    CATEGORIES: int = 1800

    # Aggregates (expensive to recompute, staleness tolerated)
    GLOBAL_STATS: int = 300
    TOP_UPLOADERS: int = 600


@dataclass
class CacheConfig:
    """
    Main cache configuration.

    Settings can be overridden via environment variables:
    - REDIS_URL: Distributed cache endpoint (unset = local fallback only)
    - CACHE_ENABLED: Enable/disable caching globally
    - CACHE_OPERATION_TIMEOUT: Upper bound for any single Redis call
    - DB_QUEUE_MAX_CONCURRENT: Slots in the critical query queue
    - CDN_CACHE_DIR: Directory of the local edge cache
    """

    # Cache namespace (Redis key prefix)
    namespace: str = field(default_factory=lambda: os.getenv(
        "CACHE_NAMESPACE",
        "marketplace"
    ))

    # Global cache toggle
    enabled: bool = field(default_factory=lambda: _env_bool("CACHE_ENABLED", "true"))

    # Redis connection
    redis_url: Optional[str] = field(default_factory=lambda: os.getenv("REDIS_URL") or None)
    redis_max_connections: int = field(default_factory=lambda: int(os.getenv(
        "REDIS_MAX_CONNECTIONS",
        "50"
    )))
    redis_socket_timeout: float = field(default_factory=lambda: float(os.getenv(
        "REDIS_SOCKET_TIMEOUT",
        "0.5"
    )))
    redis_connect_timeout: float = field(default_factory=lambda: float(os.getenv(
        "REDIS_CONNECT_TIMEOUT",
        "2.0"
    )))
    operation_timeout: float = field(default_factory=lambda: float(os.getenv(
        "CACHE_OPERATION_TIMEOUT",
        "1.0"
    )))
    reconnect_interval: float = field(default_factory=lambda: float(os.getenv(
        "REDIS_RECONNECT_INTERVAL",
        "30"
    )))

    # Compression (Redis payloads only)
    compression_enabled: bool = field(
        default_factory=lambda: _env_bool("CACHE_COMPRESSION_ENABLED", "true")
    )
    compression_threshold: int = field(default_factory=lambda: int(os.getenv(
        "CACHE_COMPRESSION_THRESHOLD",
        "1024"
    )))

    # Non-connection Redis errors tolerated before going degraded
    circuit_breaker_threshold: int = field(default_factory=lambda: int(os.getenv(
        "CACHE_CIRCUIT_BREAKER_THRESHOLD",
        "5"
    )))

    # In-process fallback
    fallback_max_keys: int = field(default_factory=lambda: int(os.getenv(
        "CACHE_FALLBACK_MAX_KEYS",
        "1000"
    )))
    fallback_default_ttl: int = field(default_factory=lambda: int(os.getenv(
        "CACHE_FALLBACK_DEFAULT_TTL",
        "600"
    )))

    # Backing store protection
    queue_max_concurrent: int = field(default_factory=lambda: int(os.getenv(
        "DB_QUEUE_MAX_CONCURRENT",
        "3"
    )))
    query_retries: int = field(default_factory=lambda: int(os.getenv(
        "DB_QUERY_RETRIES",
        "2"
    )))
    retry_base_delay: float = field(default_factory=lambda: float(os.getenv(
        "DB_RETRY_BASE_DELAY",
        "2.0"
    )))

    # Edge cache (CDN simulation)
    edge_cache_dir: str = field(default_factory=lambda: os.getenv(
        "CDN_CACHE_DIR",
        "cdn-cache"
    ))
    edge_base_url: str = field(default_factory=lambda: os.getenv(
        "CDN_BASE_URL",
        "/cdn"
    ))
    edge_max_age_days: float = field(default_factory=lambda: float(os.getenv(
        "CDN_MAX_AGE_DAYS",
        "7"
    )))
    edge_warm_limit: int = field(default_factory=lambda: int(os.getenv(
        "CDN_WARM_LIMIT",
        "50"
    )))

    # Warming
    warm_pause_seconds: float = field(default_factory=lambda: float(os.getenv(
        "CACHE_WARM_PAUSE_SECONDS",
        "0.5"
    )))
    warming_interval_seconds: int = field(default_factory=lambda: int(os.getenv(
        "CACHE_WARMING_INTERVAL",
        "900"
    )))

    # Monitoring thresholds
    min_hit_rate: float = field(default_factory=lambda: float(os.getenv(
        "CACHE_MIN_HIT_RATE",
        "0.8"
    )))
    max_latency_ms: float = field(default_factory=lambda: float(os.getenv(
        "CACHE_MAX_LATENCY_MS",
        "50"
    )))


@lru_cache(maxsize=1)
def get_cache_config() -> CacheConfig:
    """Get singleton cache configuration."""
    return CacheConfig()
