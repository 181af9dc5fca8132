"""
Cache Warming Service

Proactively warms caches so the first requests after a deploy or a
Redis flush do not all land on the database.

Strategies:
1. Startup warming: categories, a short pause, then global stats
2. Edge warming: pre-cache images of the most popular assets
3. Periodic warming: repeat both on an interval in the background

Categories and stats are written with `store.set` rather than through
the cache-aside engine, so a warm-up always refreshes them.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Optional

from marketplace.cache.config import CacheConfig, CacheTTL, get_cache_config
from marketplace.cache.edge import EdgeCache, PopularSource
from marketplace.cache.keys import CacheKey
from marketplace.cache.policy import CATEGORIES_KEY, GLOBAL_STATS_KEY
from marketplace.cache.store import CacheStore


logger = logging.getLogger(__name__)


async def _call(fetch_fn: Callable[[], Any]) -> Any:
    if inspect.iscoroutinefunction(fetch_fn):
        return await fetch_fn()
    return await asyncio.to_thread(fetch_fn)


class CacheWarmer:
    """
    Proactive cache warming.

    Features:
    - Startup warm-up of the most requested aggregate keys
    - Optional edge cache warm-up from the popular assets list
    - Background refresh loop
    """

    def __init__(
        self,
        store: CacheStore,
        categories_fn: Callable[[], Any],
        stats_fn: Callable[[], Any],
        edge: Optional[EdgeCache] = None,
        popular_source: Optional[PopularSource] = None,
        config: Optional[CacheConfig] = None,
    ):
        self.store = store
        self.categories_fn = categories_fn
        self.stats_fn = stats_fn
        self.edge = edge
        self.popular_source = popular_source
        self._config = config or get_cache_config()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def _warm_key(self, key: str, fetch_fn: Callable[[], Any], ttl: int) -> bool:
        try:
            value = await _call(fetch_fn)
        except Exception as e:
            logger.error(f"Failed to warm {key}: {e}")
            return False

        result = await self.store.set(key, value, ttl)
        logger.debug(f"Warmed {key} (degraded: {result.degraded})")
        return result.ok

    async def warm_up(self, include_edge: bool = False) -> Dict[str, Any]:
        """
        Warm the aggregate keys, and optionally the edge cache.

        Returns:
            Dict of step -> success status (edge: its counts)
        """
        logger.info("Warming up cache...")
        results: Dict[str, Any] = {}

        results["categories"] = await self._warm_key(
            CacheKey.build(CATEGORIES_KEY).render(),
            self.categories_fn,
            CacheTTL.CATEGORIES,
        )

        # spread the startup load on the database
        await asyncio.sleep(self._config.warm_pause_seconds)

        results["stats"] = await self._warm_key(
            CacheKey.build(GLOBAL_STATS_KEY).render(),
            self.stats_fn,
            CacheTTL.GLOBAL_STATS,
        )

        if include_edge and self.edge is not None and self.popular_source is not None:
            try:
                edge = await self.edge.warm_up(
                    self.popular_source,
                    limit=self._config.edge_warm_limit,
                )
                results["edge"] = {
                    "cached": len(edge.cached),
                    "failed": len(edge.failed),
                    "skipped": len(edge.skipped),
                }
            except Exception as e:
                logger.error(f"Edge cache warm-up failed: {e}")
                results["edge"] = {"error": str(e)}

        success_count = sum(1 for k in ("categories", "stats") if results[k])
        logger.info(f"Cache warm-up complete: {success_count}/2 keys")
        return results

    async def start_background_warmer(
        self,
        interval_seconds: Optional[int] = None,
    ):
        """Start the periodic warming task."""
        if self._running:
            logger.warning("Background warmer already running")
            return

        interval = interval_seconds or self._config.warming_interval_seconds
        self._running = True

        async def warming_loop():
            while self._running:
                await asyncio.sleep(interval)
                try:
                    logger.info("Running background cache warming...")
                    await self.warm_up(include_edge=self.edge is not None)
                except Exception as e:
                    logger.error(f"Background warming error: {e}")

        self._task = asyncio.create_task(warming_loop())
        logger.info(f"Background cache warmer started (interval: {interval}s)")

    async def stop_background_warmer(self):
        """Stop the periodic warming task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Background cache warmer stopped")

    @property
    def running(self) -> bool:
        return self._running
