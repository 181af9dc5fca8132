"""
Tests for cache keys, the cache-aside engine and the marketplace cache policy.
"""

import asyncio

import pytest

from marketplace.cache.aside import CacheAside, FetchOutcome
from marketplace.cache.config import CacheTTL
from marketplace.cache.invalidation import CacheEvent, CacheInvalidator
from marketplace.cache.keys import CacheKey, build_key, canonicalize, key_pattern
from marketplace.cache.policy import (
    MarketplaceCache,
    QueryShape,
    classify_query,
    listing_key,
    ttl_for_query,
)
from marketplace.cache.queue import OperationQueue, QueryExecutor


# =============================================================================
# CACHE KEYS
# =============================================================================

class TestCacheKeys:
    """Tests for canonical key construction."""

    def test_category_listing_key(self):
        assert build_key("listing", {"category": 5, "page": 1}) == "listing_category_5_page_1"

    def test_parameter_order_does_not_matter(self):
        a = build_key("listing", {"page": 1, "category": 5, "sort": "newest"})
        b = build_key("listing", {"sort": "newest", "category": 5, "page": 1})
        assert a == b

    def test_aliases_render_the_same_key(self):
        a = build_key("listing", {"categoryId": 5, "sortBy": "popular"})
        b = build_key("listing", {"category_id": 5, "sort_by": "popular"})
        c = build_key("listing", {"category": 5, "sort": "popular"})
        assert a == b == c

    def test_conflicting_aliases_rejected(self):
        with pytest.raises(ValueError):
            canonicalize({"categoryId": 5, "category_id": 6})

    def test_agreeing_aliases_accepted(self):
        assert canonicalize({"categoryId": 5, "category_id": "5"}) == (("category", "5"),)

    def test_empty_values_dropped(self):
        assert build_key("listing", {"category": None, "search": "  ", "tags": []}) == "listing"

    def test_search_is_case_and_whitespace_insensitive(self):
        a = build_key("search", {"search": "  Sword   Fight "})
        b = build_key("search", {"search": "sword fight"})
        assert a == b == "search_search_sword%20fight"

    def test_glob_metacharacters_are_escaped(self):
        key = build_key("search", {"search": "a*b?[c]"})
        assert "*" not in key
        assert "?" not in key
        assert "[" not in key

    def test_sequences_are_sorted(self):
        assert build_key("listing", {"tags": ["blade", "anime"]}) == "listing_tags_anime,blade"

    def test_booleans(self):
        assert build_key("listing", {"featured": True}) == "listing_featured_true"

    def test_separator_inside_values_is_escaped(self):
        literal = build_key("search", {"search": "sword_sort_newest"})
        split = build_key("search", {"search": "sword", "sort": "newest"})
        assert literal != split
        assert literal == "search_search_sword%5Fsort%5Fnewest"

    def test_separator_inside_names_is_escaped(self):
        a = build_key("listing", {"a_b": "c", "d": "e"})
        b = build_key("listing", {"a": "b", "c_d": "e"})
        assert a != b

    @pytest.mark.parametrize("params", [
        {"search": "x_y"},
        {"search": "x", "y": "1"},
        {"search": "x%5Fy"},
        {"tags": ["x", "y"]},
        {"tags": ["x_y"]},
    ])
    def test_distinct_queries_render_distinct_keys(self, params):
        others = [
            {"search": "x_y"},
            {"search": "x", "y": "1"},
            {"search": "x%5Fy"},
            {"tags": ["x", "y"]},
            {"tags": ["x_y"]},
        ]
        key = build_key("search", params)
        assert [build_key("search", other) == key for other in others].count(True) == 1

    def test_scope_comes_before_params(self):
        key = CacheKey.build("collections", {"page": 2}, user=9)
        assert key.base == "collections_user_9"
        assert key.render() == "collections_user_9_page_2"
        assert key.pattern() == "collections_user_9_*"

    def test_key_pattern(self):
        assert key_pattern("listing") == "listing_*"
        assert key_pattern("collections_search", user=3) == "collections_search_user_3_*"


# =============================================================================
# TTL POLICY
# =============================================================================

class TestQueryClassification:
    """First matching rule wins."""

    @pytest.mark.parametrize("operation,filters,shape", [
        ("listing", {"category": 5}, QueryShape.CATEGORY_FILTERED),
        ("listing", {"categoryId": 5}, QueryShape.CATEGORY_FILTERED),
        ("search", {"category": 5, "search": "sword"}, QueryShape.CATEGORY_FILTERED),
        ("search", {"search": "sword"}, QueryShape.SEARCH),
        ("search", {"search": "sword", "sort": "newest"}, QueryShape.SEARCH),
        ("listing", {"sort": "newest"}, QueryShape.NEWEST),
        ("collections", {"page": 1}, QueryShape.COLLECTIONS),
        ("collections_search", {"search": "fav"}, QueryShape.SEARCH),
        ("all_categories", None, QueryShape.TAXONOMY),
        ("global_stats", None, QueryShape.GLOBAL_STATS),
        ("listing", {"page": 2}, QueryShape.DEFAULT),
        ("listing", {"category": ""}, QueryShape.DEFAULT),
    ])
    def test_classify(self, operation, filters, shape):
        assert classify_query(operation, filters) == shape

    def test_ttls(self):
        assert ttl_for_query("listing", {"category": 5}) == 600
        assert ttl_for_query("search", {"search": "sword"}) == 180
        assert ttl_for_query("listing", {"sort": "newest"}) == 120
        assert ttl_for_query("collections") == 300
        assert ttl_for_query("all_categories") == 1800
        assert ttl_for_query("global_stats") == 300
        assert ttl_for_query("listing") == 300

    def test_free_text_listings_use_search_prefix(self):
        assert listing_key({"search": "Sword", "page": 1}) == "search_page_1_search_sword"
        assert listing_key({"page": 1}) == "listing_page_1"


# =============================================================================
# CACHE-ASIDE ENGINE
# =============================================================================

class TestCacheAside:

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, local_store):
        engine = CacheAside(local_store)
        calls = []

        def fetch():
            calls.append(1)
            return {"assets": [1, 2]}

        first = await engine.get_or_set("k", fetch, 60)
        second = await engine.get_or_set("k", fetch, 60)

        assert first.was_cached is False
        assert second.was_cached is True
        assert second.value == {"assets": [1, 2]}
        assert len(calls) == 1
        assert engine.get_stats() == {"hits": 1, "misses": 1, "fetch_errors": 0}

    @pytest.mark.asyncio
    async def test_async_fetch(self, local_store):
        engine = CacheAside(local_store)

        async def fetch():
            return [1, 2, 3]

        outcome = await engine.get_or_set("k", fetch, 60)
        assert outcome.value == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_fetch_error_propagates_and_nothing_is_cached(self, local_store):
        engine = CacheAside(local_store)

        def broken():
            raise RuntimeError("database down")

        with pytest.raises(RuntimeError):
            await engine.get_or_set("k", broken, 60)

        assert not await local_store.exists("k")
        assert engine.fetch_errors == 1

    @pytest.mark.asyncio
    async def test_cached_none_is_not_refetched(self, local_store):
        engine = CacheAside(local_store)
        calls = []

        def fetch():
            calls.append(1)
            return None

        await engine.get_or_set("k", fetch, 60)
        outcome = await engine.get_or_set("k", fetch, 60)

        assert outcome.was_cached is True
        assert outcome.value is None
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_misses_all_fetch(self, local_store):
        """No single-flight: every concurrent cold caller runs the fetch."""
        engine = CacheAside(local_store)
        calls = []

        async def slow_fetch():
            calls.append(1)
            await asyncio.sleep(0.01)
            return {"total": 42}

        outcomes = await asyncio.gather(*[
            engine.get_or_set("global_stats", slow_fetch, 60) for _ in range(5)
        ])

        assert len(calls) == 5
        assert all(o.value == {"total": 42} for o in outcomes)
        assert all(not o.was_cached for o in outcomes)

        after = await engine.get_or_set("global_stats", slow_fetch, 60)
        assert after.was_cached is True
        assert len(calls) == 5

    @pytest.mark.asyncio
    async def test_degraded_store_still_serves(self, degraded_store):
        engine = CacheAside(degraded_store)

        first = await engine.get_or_set("k", lambda: {"a": 1}, 60)
        second = await engine.get_or_set("k", lambda: {"a": 2}, 60)

        assert first.degraded is True
        assert second.was_cached is True
        assert second.value == {"a": 1}


class TestFetchOutcome:

    def test_dict_payload_gains_source(self):
        payload = FetchOutcome(value={"assets": []}, was_cached=True).as_payload()
        assert payload == {"assets": [], "cached": True, "source": "cache"}

    def test_list_payload_is_wrapped(self):
        payload = FetchOutcome(value=[1], was_cached=False).as_payload()
        assert payload == {"data": [1], "cached": False, "source": "database"}

    def test_payload_does_not_mutate_value(self):
        value = {"assets": []}
        FetchOutcome(value=value, was_cached=False).as_payload()
        assert value == {"assets": []}


# =============================================================================
# MARKETPLACE CACHE
# =============================================================================

class TestMarketplaceCache:
    """End-to-end behaviour of cached marketplace queries."""

    @pytest.mark.asyncio
    async def test_category_listing_cached_for_ten_minutes(self, redis_store, fake_redis):
        cache = MarketplaceCache(redis_store)
        calls = []

        def fetch():
            calls.append(1)
            return {"assets": [{"id": 1}], "pagination": {"page": 1, "total": 1}}

        first = await cache.get_assets({"category": 5, "page": 1}, fetch)
        assert first.was_cached is False
        assert fake_redis.ttls["test:listing_category_5_page_1"] == CacheTTL.CATEGORY_LISTING == 600

        second = await cache.get_assets({"categoryId": 5, "page": 1}, fetch)
        assert second.was_cached is True
        assert second.value == first.value
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_underscored_search_does_not_share_a_filtered_entry(self, local_store):
        cache = MarketplaceCache(local_store)

        await cache.get_assets({"search": "sword", "sort": "newest"}, lambda: {"q": "sword/newest"})
        literal = await cache.get_assets({"search": "sword_sort_newest"}, lambda: {"q": "literal"})

        assert literal.was_cached is False
        assert literal.value == {"q": "literal"}

    @pytest.mark.asyncio
    async def test_asset_mutation_invalidates_listing(self, redis_store):
        cache = MarketplaceCache(redis_store)
        invalidator = CacheInvalidator(redis_store)
        fetch = lambda: {"assets": []}

        await cache.get_assets({"category": 5, "page": 1}, fetch)
        await cache.get_assets({}, fetch)
        await invalidator.handle_event(CacheEvent.ASSET_CREATED)

        assert (await cache.get_assets({"category": 5, "page": 1}, fetch)).was_cached is False
        assert (await cache.get_assets({}, fetch)).was_cached is False

    @pytest.mark.asyncio
    async def test_search_uses_shorter_ttl(self, redis_store, fake_redis):
        cache = MarketplaceCache(redis_store)

        await cache.get_assets({"search": "sword", "page": 1}, lambda: {"assets": []})
        await cache.get_assets({"category": 5}, lambda: {"assets": []})

        assert fake_redis.ttls["test:search_page_1_search_sword"] == 180
        assert fake_redis.ttls["test:listing_category_5"] == 600

    @pytest.mark.asyncio
    async def test_taxonomy_and_stats_keys(self, redis_store, fake_redis):
        cache = MarketplaceCache(redis_store)

        await cache.get_categories(lambda: [{"id": 1, "name": "Swords"}])
        await cache.get_stats(lambda: {"total_assets": 3})

        assert fake_redis.ttls["test:all_categories"] == 1800
        assert fake_redis.ttls["test:global_stats"] == 300

    @pytest.mark.asyncio
    async def test_collections_are_user_scoped(self, local_store):
        cache = MarketplaceCache(local_store)

        await cache.get_user_collections(9, {"page": 1}, lambda: {"collections": ["a"]})
        other = await cache.get_user_collections(10, {"page": 1}, lambda: {"collections": ["b"]})

        assert other.was_cached is False
        assert other.value == {"collections": ["b"]}
        assert await local_store.exists("collections_user_9_page_1")

    @pytest.mark.asyncio
    async def test_recent_and_related_have_distinct_keys(self, local_store):
        cache = MarketplaceCache(local_store)

        await cache.get_recent_assets(10, lambda: {"assets": ["recent"]})
        related = await cache.get_related_assets(1, 6, lambda: {"assets": ["related"]})

        assert related.was_cached is False
        assert related.value == {"assets": ["related"]}

    @pytest.mark.asyncio
    async def test_critical_fetch_goes_through_queue(self, local_store):
        cache = MarketplaceCache(local_store)
        queue = OperationQueue(max_concurrent=3)
        executor = QueryExecutor(queue, critical=True)

        outcome = await cache.get_assets({"page": 1}, lambda: {"assets": []}, executor=executor)

        assert outcome.value == {"assets": []}
        assert queue.completed == 1

    @pytest.mark.asyncio
    async def test_non_critical_fetch_bypasses_queue(self, local_store):
        cache = MarketplaceCache(local_store)
        queue = OperationQueue(max_concurrent=3)
        executor = QueryExecutor(queue, critical=False)

        await cache.get_assets({"page": 1}, lambda: {"assets": []}, executor=executor)

        assert queue.completed == 0
