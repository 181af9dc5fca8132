"""
Tests for cache warming, monitoring and service wiring.
"""

import asyncio

import pytest

from marketplace.cache.config import CacheTTL
from marketplace.cache.edge import PopularEntity, WarmUpResult
from marketplace.cache.monitoring import CacheMonitor, HealthStatus, region_of
from marketplace.cache.queue import OperationQueue
from marketplace.cache.services import create_cache_services
from marketplace.cache.warming import CacheWarmer


# =============================================================================
# WARMING
# =============================================================================

class TestCacheWarmer:

    @pytest.mark.asyncio
    async def test_warm_up_writes_aggregate_keys(self, redis_store, fake_redis, cache_config):
        warmer = CacheWarmer(
            redis_store,
            categories_fn=lambda: [{"id": 1, "name": "Swords"}],
            stats_fn=lambda: {"total_assets": 3},
            config=cache_config,
        )

        results = await warmer.warm_up()

        assert results == {"categories": True, "stats": True}
        assert await redis_store.get("all_categories") == [{"id": 1, "name": "Swords"}]
        assert fake_redis.ttls["test:all_categories"] == CacheTTL.CATEGORIES
        assert fake_redis.ttls["test:global_stats"] == CacheTTL.GLOBAL_STATS

    @pytest.mark.asyncio
    async def test_warm_up_refreshes_existing_keys(self, local_store, cache_config):
        await local_store.set("global_stats", {"total_assets": 1}, 300)
        warmer = CacheWarmer(
            local_store,
            categories_fn=lambda: [],
            stats_fn=lambda: {"total_assets": 2},
            config=cache_config,
        )

        await warmer.warm_up()

        assert await local_store.get("global_stats") == {"total_assets": 2}

    @pytest.mark.asyncio
    async def test_failed_fetch_is_reported(self, local_store, cache_config):
        def broken():
            raise RuntimeError("database down")

        async def stats():
            return {"total_assets": 0}

        warmer = CacheWarmer(local_store, broken, stats, config=cache_config)
        results = await warmer.warm_up()

        assert results == {"categories": False, "stats": True}
        assert not await local_store.exists("all_categories")

    @pytest.mark.asyncio
    async def test_edge_warm_up_included_on_request(self, local_store, cache_config):
        class RecordingEdge:
            def __init__(self):
                self.limits = []

            async def warm_up(self, source, limit):
                self.limits.append(limit)
                entities = await source(limit)
                return WarmUpResult(skipped=[str(e.entity_id) for e in entities])

        async def popular(limit):
            return [PopularEntity(1, None)]

        edge = RecordingEdge()
        cache_config.edge_warm_limit = 7
        warmer = CacheWarmer(
            local_store, lambda: [], lambda: {}, edge=edge,
            popular_source=popular, config=cache_config,
        )

        results = await warmer.warm_up(include_edge=True)

        assert edge.limits == [7]
        assert results["edge"] == {"cached": 0, "failed": 0, "skipped": 1}

    @pytest.mark.asyncio
    async def test_background_warmer_lifecycle(self, local_store, cache_config):
        warmer = CacheWarmer(local_store, lambda: [], lambda: {}, config=cache_config)

        await warmer.start_background_warmer(interval_seconds=3600)
        assert warmer.running is True

        await warmer.stop_background_warmer()
        assert warmer.running is False


# =============================================================================
# MONITORING
# =============================================================================

class TestRegions:

    @pytest.mark.parametrize("key,region", [
        ("listing", "listing"),
        ("listing_category_5_page_1", "listing"),
        ("search_search_sword", "search"),
        ("search_suggestions_search_sw", "search"),
        ("all_categories", "categories"),
        ("global_stats", "stats"),
        ("collections_user_9", "collections"),
        ("collections_search_user_9_search_x", "collections"),
        ("top_uploaders_limit_10", "other"),
    ])
    def test_region_of(self, key, region):
        assert region_of(key) == region


class TestCacheMonitor:

    @pytest.mark.asyncio
    async def test_region_stats(self, redis_store, cache_config):
        await redis_store.set("listing_page_1", 1, 60)
        await redis_store.set("listing_page_2", 1, 60)
        await redis_store.set("global_stats", 1, 60)

        regions = await CacheMonitor(redis_store, config=cache_config).region_stats()

        assert regions["listing"] == {"keys": 2, "status": "distributed"}
        assert regions["stats"]["keys"] == 1
        assert regions["search"]["keys"] == 0

    @pytest.mark.asyncio
    async def test_region_stats_report_local_tier_when_degraded(self, degraded_store, cache_config):
        await degraded_store.set("all_categories", [], 60)

        regions = await CacheMonitor(degraded_store, config=cache_config).region_stats()

        assert regions["categories"] == {"keys": 1, "status": "local"}

    @pytest.mark.asyncio
    async def test_healthy(self, redis_store, cache_config):
        result = await CacheMonitor(redis_store, OperationQueue(), cache_config).health_check()

        assert result.status == HealthStatus.HEALTHY
        assert result.checks["connectivity"] is True
        assert result.issues == []
        assert result.to_dict()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_fallback_only_is_healthy(self, local_store, cache_config):
        result = await CacheMonitor(local_store, config=cache_config).health_check()

        assert result.status == HealthStatus.HEALTHY
        assert "connectivity" not in result.checks

    @pytest.mark.asyncio
    async def test_unreachable_redis_is_unhealthy(self, degraded_store, cache_config):
        result = await CacheMonitor(degraded_store, config=cache_config).health_check()

        assert result.status == HealthStatus.UNHEALTHY
        assert {issue["type"] for issue in result.issues} == {"connectivity", "degraded"}

    @pytest.mark.asyncio
    async def test_low_hit_rate_needs_traffic(self, local_store, cache_config):
        monitor = CacheMonitor(local_store, config=cache_config)

        for _ in range(50):
            await local_store.lookup("missing")
        assert (await monitor.health_check()).status == HealthStatus.HEALTHY

        for _ in range(100):
            await local_store.lookup("missing")
        result = await monitor.health_check()
        assert result.status == HealthStatus.DEGRADED
        assert result.checks["hit_rate"] is False

    @pytest.mark.asyncio
    async def test_queue_backlog_is_degraded(self, local_store, cache_config):
        queue = OperationQueue(max_concurrent=1)
        release = asyncio.Event()
        tasks = [asyncio.create_task(queue.add(release.wait)) for _ in range(2)]
        await asyncio.sleep(0.01)

        result = await CacheMonitor(local_store, queue, cache_config).health_check()

        assert result.status == HealthStatus.DEGRADED
        assert result.checks["queue"] is False

        release.set()
        await asyncio.gather(*tasks)


# =============================================================================
# SERVICE WIRING
# =============================================================================

class TestCacheServices:

    @pytest.mark.asyncio
    async def test_start_warms_and_shuts_down(self, cache_config, local_store):
        services = create_cache_services(
            categories_fn=lambda: [{"id": 1}],
            stats_fn=lambda: {"total_assets": 1},
            config=cache_config,
            store=local_store,
        )

        await services.start(warm=True)
        try:
            assert await local_store.get("all_categories") == [{"id": 1}]
            assert services.edge.images_dir.exists()
        finally:
            await services.shutdown()

    def test_executor_carries_retry_settings(self, cache_config, local_store):
        cache_config.query_retries = 4
        services = create_cache_services(
            lambda: [], lambda: {}, config=cache_config, store=local_store,
        )

        executor = services.executor(critical=True)

        assert executor.critical is True
        assert executor.retries == 4
        assert executor.queue is services.queue
