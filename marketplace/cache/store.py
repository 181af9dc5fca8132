"""
Cache Store

Uniform key/value operations with Redis as the primary tier and an
in-process cache as fallback:
- Every write is mirrored locally so a Redis outage never starts cold
- Redis errors are logged and absorbed, never raised to callers
- Every Redis call carries its own timeout
- After a connection failure the store goes degraded, skips Redis
  entirely and retries the connection in the background
- Invalidations issued while degraded are replayed against Redis once
  the connection is back
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import zstandard
from redis.asyncio import Redis, ConnectionPool
from redis.exceptions import (
    RedisError,
    ConnectionError as RedisConnectionError,
    TimeoutError as RedisTimeoutError,
)

from marketplace.cache.config import CacheConfig, get_cache_config
from marketplace.cache.compression import (
    CacheCompressor,
    serialize_value,
    deserialize_value,
)
from marketplace.cache.local import LocalCache


logger = logging.getLogger(__name__)

# asyncio.TimeoutError is raised by wait_for; OSError covers refused sockets
CONNECTION_FAILURES = (RedisConnectionError, RedisTimeoutError, asyncio.TimeoutError, OSError)
DECODE_FAILURES = (ValueError, RuntimeError, zstandard.ZstdError)

DEFAULT_TTL_SECONDS = 300
DELETE_BATCH_SIZE = 500
MAX_PENDING_INVALIDATIONS = 1000


class CacheBackend(Enum):
    """Tier that served or stored a value."""
    REDIS = "distributed"
    LOCAL = "local"


@dataclass
class StoreResult:
    """
    Outcome of a write-side store operation.

    `ok` is True whenever the value reached at least the local tier;
    `degraded` tells the caller Redis was skipped or failed.
    """
    ok: bool = True
    degraded: bool = False
    count: int = 0
    error: Optional[str] = None


@dataclass
class CacheLookup:
    """Outcome of a read. A cached None is a hit."""
    hit: bool
    value: Any = None
    degraded: bool = False
    backend: CacheBackend = CacheBackend.LOCAL


@dataclass
class _RedisReply:
    ok: bool
    value: Any = None
    error: Optional[str] = None


@dataclass
class CacheStats:
    """Cache operation statistics."""
    hits: int = 0
    misses: int = 0
    errors: int = 0
    fallback_reads: int = 0
    reconnects: int = 0
    bytes_written: int = 0
    bytes_read: int = 0
    bytes_saved_compression: int = 0
    latency_samples: List[float] = field(default_factory=list)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    @property
    def avg_latency_ms(self) -> float:
        recent = self.latency_samples[-100:]
        if not recent:
            return 0.0
        return sum(recent) / len(recent) * 1000

    def record_latency(self, seconds: float):
        self.latency_samples.append(seconds)
        if len(self.latency_samples) > 1000:
            self.latency_samples = self.latency_samples[-1000:]


@dataclass
class CircuitBreakerState:
    failures: int = 0
    is_open: bool = False
    opened_at: float = 0.0


class CircuitBreaker:
    """
    Tracks Redis health.

    Connection failures trip the breaker at once; other Redis errors
    open it after `threshold` consecutive failures. Only a successful
    reconnect closes it again.
    """

    def __init__(self, threshold: int = 5):
        self.threshold = threshold
        self.state = CircuitBreakerState()

    @property
    def is_open(self) -> bool:
        return self.state.is_open

    def record_success(self):
        self.state.failures = 0

    def record_failure(self) -> bool:
        """Count a failure. Returns True if this failure opened the circuit."""
        self.state.failures += 1
        if not self.state.is_open and self.state.failures >= self.threshold:
            self.trip()
            return True
        return False

    def trip(self):
        self.state.is_open = True
        self.state.opened_at = time.time()

    def reset(self):
        self.state = CircuitBreakerState()


class CacheStore:
    """
    Redis-primary, local-fallback cache store.

    Construct one per process, call `init()` on startup and `shutdown()`
    on exit, and pass it to consumers explicitly.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        redis: Optional[Redis] = None,
        local: Optional[LocalCache] = None,
    ):
        self.config = config or get_cache_config()
        self._redis = redis
        self._owns_redis = redis is None
        self._pool: Optional[ConnectionPool] = None
        self.local = local if local is not None else LocalCache(
            max_keys=self.config.fallback_max_keys,
            default_ttl=self.config.fallback_default_ttl,
        )
        self._compressor = CacheCompressor(
            enabled=self.config.compression_enabled,
            threshold=self.config.compression_threshold,
        )
        self._breaker = CircuitBreaker(threshold=self.config.circuit_breaker_threshold)
        self._stats = CacheStats()
        self._initialized = False
        self._lock = asyncio.Lock()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._pending_invalidations: List[Tuple[str, str]] = []
        self._pending_overflow = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def init(self):
        """Connect to Redis if configured. Never raises on Redis failure."""
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return
            self._initialized = True

            if self._redis is None and self.config.redis_url:
                self._pool = ConnectionPool.from_url(
                    self.config.redis_url,
                    max_connections=self.config.redis_max_connections,
                    socket_timeout=self.config.redis_socket_timeout,
                    socket_connect_timeout=self.config.redis_connect_timeout,
                    decode_responses=False,
                )
                self._redis = Redis(connection_pool=self._pool)

            if self._redis is None:
                logger.info("REDIS_URL not configured, using in-memory cache only")
                return

            if await self._ping():
                logger.info(f"Redis cache connected (namespace: {self.config.namespace})")
            else:
                self._enter_degraded("initial connection failed")

    async def shutdown(self):
        """Stop reconnect attempts and release the Redis connection."""
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None

        if self._redis is not None and self._owns_redis:
            try:
                await self._redis.aclose()
                if self._pool is not None:
                    await self._pool.disconnect()
            except (RedisError, OSError) as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None
            self._pool = None

        self._initialized = False
        logger.info("Cache store shut down")

    # =========================================================================
    # State
    # =========================================================================

    @property
    def distributed_configured(self) -> bool:
        return self._redis is not None

    @property
    def degraded(self) -> bool:
        """True when Redis is configured but currently unusable."""
        return self._redis is not None and self._breaker.is_open

    @property
    def backend(self) -> CacheBackend:
        if self._redis is not None and not self._breaker.is_open:
            return CacheBackend.REDIS
        return CacheBackend.LOCAL

    def _redis_ready(self) -> bool:
        return self._redis is not None and not self._breaker.is_open

    def _redis_key(self, key: str) -> str:
        return f"{self.config.namespace}:{key}"

    def _strip_namespace(self, raw_key: Any) -> str:
        key = raw_key.decode() if isinstance(raw_key, bytes) else str(raw_key)
        prefix = f"{self.config.namespace}:"
        return key[len(prefix):] if key.startswith(prefix) else key

    # =========================================================================
    # Redis plumbing
    # =========================================================================

    async def _ping(self) -> bool:
        try:
            await asyncio.wait_for(
                self._redis.ping(),
                timeout=self.config.redis_connect_timeout,
            )
            return True
        except (RedisError, *CONNECTION_FAILURES) as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def _call(
        self,
        command: str,
        factory: Callable[[], Awaitable[Any]],
        timeout: Optional[float] = None,
    ) -> _RedisReply:
        """Run one Redis command under a timeout and classify the outcome."""
        start = time.perf_counter()
        try:
            value = await asyncio.wait_for(
                factory(),
                timeout=timeout or self.config.operation_timeout,
            )
        except CONNECTION_FAILURES as e:
            self._stats.errors += 1
            logger.warning(
                f"Redis {command} failed ({type(e).__name__}: {e}), "
                "falling back to local cache"
            )
            self._enter_degraded(f"{command} connection failure")
            return _RedisReply(ok=False, error=f"{type(e).__name__}: {e}")
        except RedisError as e:
            self._stats.errors += 1
            logger.error(f"Redis {command} error: {e}")
            if self._breaker.record_failure():
                self._enter_degraded(f"{self._breaker.threshold} consecutive errors")
            return _RedisReply(ok=False, error=f"{type(e).__name__}: {e}")

        self._stats.record_latency(time.perf_counter() - start)
        self._breaker.record_success()
        return _RedisReply(ok=True, value=value)

    def _enter_degraded(self, reason: str):
        if not self._breaker.is_open:
            self._breaker.trip()
            logger.warning(
                f"Distributed cache unavailable ({reason}); serving from local "
                f"cache, retrying every {self.config.reconnect_interval}s"
            )
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self):
        while self._breaker.is_open:
            await asyncio.sleep(self.config.reconnect_interval)
            await self.reconnect()

    async def reconnect(self) -> bool:
        """
        Try to leave degraded mode now. Returns True if Redis is usable.

        Invalidations recorded while degraded are replayed before the
        breaker closes, so no read reaches Redis ahead of its purge.
        """
        if self._redis is None:
            return False
        if not self._breaker.is_open:
            return True
        if not await self._ping():
            return False

        while self._pending_invalidations or self._pending_overflow:
            if not await self._replay_invalidations():
                return False

        self._breaker.reset()
        self._stats.reconnects += 1
        logger.info("Redis connection restored, leaving degraded mode")
        return True

    def _remember_invalidation(self, kind: str, target: str):
        if len(self._pending_invalidations) >= MAX_PENDING_INVALIDATIONS:
            self._pending_overflow = True
            return
        self._pending_invalidations.append((kind, target))

    async def _replay_invalidations(self) -> bool:
        """Run pending invalidations against Redis; failed ones stay pending."""
        pending, overflow = self._pending_invalidations, self._pending_overflow
        self._pending_invalidations, self._pending_overflow = [], False

        if overflow:
            logger.warning("Too many invalidations while degraded, clearing namespace")
            pending = [("pattern", "*")]

        for index, (kind, target) in enumerate(pending):
            if kind == "pattern":
                reply = await self._call(
                    "SCAN/DEL",
                    lambda t=target: self._scan_delete(t),
                    timeout=self.config.operation_timeout * 10,
                )
            else:
                reply = await self._call("DEL", lambda t=target: self._redis.delete(self._redis_key(t)))

            if not reply.ok:
                for remaining in pending[index:]:
                    self._remember_invalidation(*remaining)
                self._enter_degraded("invalidation replay failed")
                logger.warning(
                    f"Invalidation replay interrupted, "
                    f"{len(pending) - index} kept for the next reconnect"
                )
                return False

        logger.info(f"Replayed {len(pending)} invalidations against Redis")
        return True

    async def _scan_delete(self, pattern: str) -> int:
        deleted = 0
        batch = []
        async for raw_key in self._redis.scan_iter(match=self._redis_key(pattern), count=100):
            batch.append(raw_key)
            if len(batch) >= DELETE_BATCH_SIZE:
                deleted += await self._redis.delete(*batch)
                batch = []
        if batch:
            deleted += await self._redis.delete(*batch)
        return deleted

    async def _scan_keys(self, pattern: str) -> List[str]:
        return [
            self._strip_namespace(raw_key)
            async for raw_key in self._redis.scan_iter(match=self._redis_key(pattern), count=100)
        ]

    def _decode(self, raw: bytes) -> Any:
        return deserialize_value(self._compressor.decompress(raw))

    # =========================================================================
    # Core Operations
    # =========================================================================

    async def lookup(self, key: str) -> CacheLookup:
        """Read a key, falling back to the local tier when Redis is unusable."""
        if not self.config.enabled:
            return CacheLookup(hit=False)

        degraded = self.degraded
        if self._redis_ready():
            reply = await self._call("GET", lambda: self._redis.get(self._redis_key(key)))
            if reply.ok:
                if reply.value is None:
                    self._stats.misses += 1
                    return CacheLookup(hit=False, backend=CacheBackend.REDIS)
                try:
                    value = self._decode(reply.value)
                except DECODE_FAILURES as e:
                    self._stats.errors += 1
                    logger.error(f"Discarding undecodable cache entry {key}: {e}")
                    return CacheLookup(hit=False, backend=CacheBackend.REDIS)
                self._stats.hits += 1
                self._stats.bytes_read += len(reply.value)
                return CacheLookup(hit=True, value=value, backend=CacheBackend.REDIS)
            degraded = True

        self._stats.fallback_reads += int(degraded)
        data = self.local.get(key)
        if data is None:
            self._stats.misses += 1
            return CacheLookup(hit=False, degraded=degraded)

        self._stats.hits += 1
        return CacheLookup(hit=True, value=deserialize_value(data), degraded=degraded)

    async def get(self, key: str) -> Optional[Any]:
        """Get a value, or None if absent."""
        return (await self.lookup(key)).value

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> StoreResult:
        """
        Store a value in Redis and mirror it locally.

        A TTL of 0 keeps the entry until it is explicitly invalidated.
        Succeeds as long as the local write succeeds.
        """
        if ttl_seconds < 0:
            raise ValueError(f"ttl_seconds must be >= 0, got {ttl_seconds}")
        if not self.config.enabled:
            return StoreResult(ok=False)

        serialized = serialize_value(value)
        self.local.set(key, serialized, ttl_seconds)

        if not self._redis_ready():
            return StoreResult(degraded=self.degraded)

        framed, compression = self._compressor.compress(serialized)
        if compression:
            self._stats.bytes_saved_compression += compression.saved_bytes

        redis_key = self._redis_key(key)
        if ttl_seconds > 0:
            reply = await self._call("SET", lambda: self._redis.set(redis_key, framed, ex=ttl_seconds))
        else:
            reply = await self._call("SET", lambda: self._redis.set(redis_key, framed))

        if reply.ok:
            self._stats.bytes_written += len(framed)
        return StoreResult(degraded=not reply.ok, error=reply.error)

    async def delete(self, key: str) -> StoreResult:
        """Delete a key from both tiers."""
        removed = int(self.local.delete(key))

        if not self._redis_ready():
            if self._redis is not None:
                self._remember_invalidation("key", key)
            return StoreResult(count=removed, degraded=self.degraded)

        reply = await self._call("DEL", lambda: self._redis.delete(self._redis_key(key)))
        if not reply.ok:
            self._remember_invalidation("key", key)
            return StoreResult(count=removed, degraded=True, error=reply.error)
        return StoreResult(count=max(int(reply.value), removed))

    async def delete_pattern(self, pattern: str) -> StoreResult:
        """
        Delete every key matching a glob pattern from both tiers.

        Redis keys are found with SCAN MATCH inside the namespace; the
        local tier matches the same glob as a regex.
        """
        removed = self.local.delete_pattern(pattern)

        if not self._redis_ready():
            if self._redis is not None:
                self._remember_invalidation("pattern", pattern)
            return StoreResult(count=removed, degraded=self.degraded)

        reply = await self._call(
            "SCAN/DEL",
            lambda: self._scan_delete(pattern),
            timeout=self.config.operation_timeout * 10,
        )
        if not reply.ok:
            self._remember_invalidation("pattern", pattern)
            return StoreResult(count=removed, degraded=True, error=reply.error)

        if reply.value:
            logger.info(f"Deleted {reply.value} keys matching {pattern}")
        return StoreResult(count=max(reply.value, removed))

    async def increment(self, key: str, ttl_seconds: int = 3600) -> int:
        """Atomically increment a counter; the TTL is set on first write."""
        if self._redis_ready():
            redis_key = self._redis_key(key)

            async def incr():
                value = await self._redis.incr(redis_key)
                if value == 1 and ttl_seconds > 0:
                    await self._redis.expire(redis_key, ttl_seconds)
                return value

            reply = await self._call("INCR", incr)
            if reply.ok:
                self.local.set_counter(key, reply.value, ttl_seconds)
                return reply.value

        return self.local.increment(key, ttl_seconds)

    async def exists(self, key: str) -> bool:
        if self._redis_ready():
            reply = await self._call("EXISTS", lambda: self._redis.exists(self._redis_key(key)))
            if reply.ok:
                return reply.value > 0
        return self.local.exists(key)

    async def keys(self, pattern: str = "*") -> List[str]:
        """List keys (without namespace) matching a glob."""
        if self._redis_ready():
            reply = await self._call(
                "SCAN",
                lambda: self._scan_keys(pattern),
                timeout=self.config.operation_timeout * 10,
            )
            if reply.ok:
                return reply.value
        return self.local.keys(pattern)

    async def clear(self) -> StoreResult:
        """Invalidate everything in this store's namespace (never FLUSHALL)."""
        result = await self.delete_pattern("*")
        result.count = max(result.count, self.local.clear())
        logger.warning(f"Cache cleared: {result.count} keys removed")
        return result

    # =========================================================================
    # Statistics and Health
    # =========================================================================

    async def get_info(self) -> Dict:
        """Get Redis server info."""
        if not self._redis_ready():
            return {"connected": False, "backend": self.backend.value}

        async def info():
            server = await self._redis.info()
            memory = await self._redis.info("memory")
            return server, memory

        reply = await self._call("INFO", info)
        if not reply.ok:
            return {"connected": False, "error": reply.error}

        server, memory = reply.value
        return {
            "connected": True,
            "redis_version": server.get("redis_version"),
            "used_memory_mb": memory.get("used_memory", 0) / 1024 / 1024,
            "used_memory_peak_mb": memory.get("used_memory_peak", 0) / 1024 / 1024,
            "connected_clients": server.get("connected_clients"),
            "keyspace_hits": server.get("keyspace_hits", 0),
            "keyspace_misses": server.get("keyspace_misses", 0),
        }

    def get_stats(self) -> Dict:
        """Get cache statistics."""
        return {
            "enabled": self.config.enabled,
            "backend": self.backend.value,
            "distributed_configured": self.distributed_configured,
            "degraded": self.degraded,
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "errors": self._stats.errors,
            "fallback_reads": self._stats.fallback_reads,
            "reconnects": self._stats.reconnects,
            "hit_rate_percent": round(self._stats.hit_rate * 100, 2),
            "avg_latency_ms": round(self._stats.avg_latency_ms, 2),
            "bytes_written": self._stats.bytes_written,
            "bytes_read": self._stats.bytes_read,
            "bytes_saved_compression": self._stats.bytes_saved_compression,
            "pending_invalidations": len(self._pending_invalidations),
            "local": self.local.get_stats(),
        }

    async def health_check(self) -> Dict:
        """Ping the distributed tier and report status."""
        if not self.distributed_configured:
            return {"healthy": True, "status": "local-only", "stats": self.get_stats()}

        if self.degraded:
            return {"healthy": False, "status": "degraded", "stats": self.get_stats()}

        start = time.perf_counter()
        reply = await self._call("PING", lambda: self._redis.ping())
        if not reply.ok:
            return {
                "healthy": False,
                "status": "error",
                "error": reply.error,
                "stats": self.get_stats(),
            }

        return {
            "healthy": True,
            "status": "connected",
            "latency_ms": round((time.perf_counter() - start) * 1000, 2),
            "stats": self.get_stats(),
        }
