"""
Cache service wiring.

Builds every cache component from one CacheConfig and owns their
lifecycle. The FastAPI app creates one CacheServices at startup and
passes it to request handlers; nothing here is a module-level singleton.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

import httpx

from marketplace.cache.aside import CacheAside
from marketplace.cache.config import CacheConfig, get_cache_config
from marketplace.cache.edge import EdgeCache, PopularSource
from marketplace.cache.invalidation import CacheInvalidator
from marketplace.cache.monitoring import CacheMonitor
from marketplace.cache.policy import MarketplaceCache
from marketplace.cache.queue import OperationQueue, QueryExecutor
from marketplace.cache.store import CacheStore
from marketplace.cache.warming import CacheWarmer


logger = logging.getLogger(__name__)


@dataclass
class CacheServices:
    config: CacheConfig
    store: CacheStore
    engine: CacheAside
    policy: MarketplaceCache
    invalidator: CacheInvalidator
    queue: OperationQueue
    edge: EdgeCache
    warmer: CacheWarmer
    monitor: CacheMonitor
    http_client: Optional[httpx.AsyncClient] = None
    on_query_timeout: Optional[Callable[[], Awaitable[None]]] = None

    def executor(self, critical: bool = False) -> QueryExecutor:
        return QueryExecutor(
            self.queue,
            critical=critical,
            retries=self.config.query_retries,
            base_delay=self.config.retry_base_delay,
            on_timeout=self.on_query_timeout,
        )

    async def start(self, warm: bool = True, background: bool = False):
        """Connect the store, prepare the edge directory and warm up."""
        await self.store.init()
        await self.edge.init()
        if warm:
            await self.warmer.warm_up()
        if background:
            await self.warmer.start_background_warmer()
        logger.info(f"Cache services started (backend: {self.store.backend.value})")

    async def shutdown(self):
        await self.warmer.stop_background_warmer()
        await self.store.shutdown()
        if self.http_client is not None:
            await self.http_client.aclose()
        logger.info("Cache services stopped")


def create_cache_services(
    categories_fn: Callable[[], Any],
    stats_fn: Callable[[], Any],
    popular_source: Optional[PopularSource] = None,
    config: Optional[CacheConfig] = None,
    store: Optional[CacheStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    on_query_timeout: Optional[Callable[[], Awaitable[None]]] = None,
) -> CacheServices:
    """
    Construct the cache layer.

    `categories_fn` and `stats_fn` are the backing-store queries used for
    warm-up; `popular_source` feeds the edge cache warm-up.
    `on_query_timeout` runs before a timed-out query is retried.
    """
    config = config or get_cache_config()
    store = store or CacheStore(config=config)
    engine = CacheAside(store)
    queue = OperationQueue(max_concurrent=config.queue_max_concurrent)
    edge = EdgeCache(
        directory=config.edge_cache_dir,
        max_age=timedelta(days=config.edge_max_age_days),
        base_url=config.edge_base_url,
        http_client=http_client,
    )
    warmer = CacheWarmer(
        store,
        categories_fn=categories_fn,
        stats_fn=stats_fn,
        edge=edge,
        popular_source=popular_source,
        config=config,
    )

    return CacheServices(
        config=config,
        store=store,
        engine=engine,
        policy=MarketplaceCache(store, engine=engine),
        invalidator=CacheInvalidator(store),
        queue=queue,
        edge=edge,
        warmer=warmer,
        monitor=CacheMonitor(store, queue=queue, config=config),
        http_client=http_client,
        on_query_timeout=on_query_timeout,
    )
