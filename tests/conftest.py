"""
Pytest Configuration and Shared Fixtures

Provides common fixtures and configuration for all test modules.
"""

import fnmatch
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from marketplace.cache.config import CacheConfig
from marketplace.cache.local import LocalCache
from marketplace.cache.store import CacheStore


# ============================================================================
# Clock
# ============================================================================

class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# Redis test double
# ============================================================================

class InMemoryRedis:
    """
    Minimal async Redis double covering the commands the store issues.

    Records the TTL of every SET so tests can assert on it.
    """

    def __init__(self):
        self.data: Dict[str, bytes] = {}
        self.ttls: Dict[str, Optional[int]] = {}
        self.commands = []

    @staticmethod
    def _key(key: Any) -> str:
        return key.decode() if isinstance(key, bytes) else key

    async def ping(self):
        self.commands.append("PING")
        return True

    async def get(self, key):
        self.commands.append("GET")
        return self.data.get(self._key(key))

    async def set(self, key, value, ex=None):
        self.commands.append("SET")
        key = self._key(key)
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        self.commands.append("DEL")
        removed = 0
        for key in keys:
            key = self._key(key)
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def scan_iter(self, match="*", count=None):
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match):
                yield key.encode()

    async def incr(self, key):
        key = self._key(key)
        value = int(self.data.get(key, b"0")) + 1
        self.data[key] = str(value).encode()
        return value

    async def expire(self, key, seconds):
        self.ttls[self._key(key)] = seconds
        return True

    async def exists(self, *keys):
        return sum(1 for key in keys if self._key(key) in self.data)

    async def info(self, section=None):
        if section == "memory":
            return {"used_memory": 2 * 1024 * 1024, "used_memory_peak": 3 * 1024 * 1024}
        return {"redis_version": "7.2.0", "connected_clients": 1}

    async def aclose(self):
        return None


@pytest.fixture
def fake_redis() -> InMemoryRedis:
    return InMemoryRedis()


def unreachable_redis() -> MagicMock:
    """A Redis client whose every command fails with a connection error."""
    redis = MagicMock()
    error = RedisConnectionError("Connection refused")
    for command in ("ping", "get", "set", "delete", "incr", "expire", "exists", "info"):
        setattr(redis, command, AsyncMock(side_effect=error))

    async def scan_iter(*args, **kwargs):
        raise error
        yield  # pragma: no cover

    redis.scan_iter = scan_iter
    redis.aclose = AsyncMock()
    return redis


# ============================================================================
# Cache fixtures
# ============================================================================

@pytest.fixture
def cache_config(tmp_path) -> CacheConfig:
    """Config with no Redis and fast timings."""
    return CacheConfig(
        namespace="test",
        redis_url=None,
        operation_timeout=0.2,
        reconnect_interval=3600,
        warm_pause_seconds=0,
        edge_cache_dir=str(tmp_path / "cdn-cache"),
        query_retries=0,
    )


@pytest.fixture
def local_cache(clock) -> LocalCache:
    return LocalCache(max_keys=100, default_ttl=600, clock=clock)


@pytest_asyncio.fixture
async def local_store(cache_config, local_cache):
    """Fallback-only store (no REDIS_URL)."""
    store = CacheStore(config=cache_config, local=local_cache)
    await store.init()
    yield store
    await store.shutdown()


@pytest_asyncio.fixture
async def redis_store(cache_config, fake_redis, local_cache):
    """Store backed by the in-memory Redis double."""
    store = CacheStore(config=cache_config, redis=fake_redis, local=local_cache)
    await store.init()
    yield store
    await store.shutdown()


@pytest_asyncio.fixture
async def degraded_store(cache_config, local_cache):
    """Store whose Redis refuses every connection."""
    store = CacheStore(config=cache_config, redis=unreachable_redis(), local=local_cache)
    await store.init()
    yield store
    await store.shutdown()


# ============================================================================
# Database fixtures
# ============================================================================

@pytest.fixture
def database(tmp_path):
    """Fresh SQLite database with a small catalogue."""
    from marketplace.database import configure_database, init_db, repository

    configure_database(f"sqlite:///{tmp_path / 'test.db'}")
    init_db()

    alice = repository.create_user("alice", "alice@example.com")
    bob = repository.create_user("bob", "bob@example.com")
    swords = repository.create_category({"name": "Swords", "icon": "sword"})
    avatars = repository.create_category({"name": "Avatars"})

    assets = [
        repository.create_asset({
            "title": "Longsword", "description": "A steel sword",
            "user_id": alice["id"], "category_id": swords["id"],
            "is_approved": True, "download_count": 40,
            "image_url": "https://origin.example.com/longsword.jpg",
        }),
        repository.create_asset({
            "title": "Katana", "description": "Curved sword",
            "user_id": bob["id"], "category_id": swords["id"],
            "is_approved": True, "download_count": 90,
            "tags": ["japan", "blade"],
        }),
        repository.create_asset({
            "title": "Robot avatar", "description": "Shiny",
            "user_id": alice["id"], "category_id": avatars["id"],
            "is_approved": True, "download_count": 5,
        }),
        repository.create_asset({
            "title": "Pending axe", "description": "Not reviewed yet",
            "user_id": bob["id"], "category_id": swords["id"],
            "is_approved": False,
        }),
    ]
    repository.create_collection(alice["id"], {"name": "Favourite swords"})
    repository.create_collection(alice["id"], {"name": "Avatars to try"})
    repository.create_collection(bob["id"], {"name": "Bob's picks"})

    yield {
        "users": {"alice": alice, "bob": bob},
        "categories": {"swords": swords, "avatars": avatars},
        "assets": assets,
    }
