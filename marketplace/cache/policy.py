"""
Marketplace Cache Policy

Maps each kind of marketplace query to a cache key and a TTL, and runs
it through the cache-aside engine:

    cache = MarketplaceCache(store)
    outcome = await cache.get_assets({"category": 5, "page": 1}, fetch)
    outcome.value, outcome.was_cached

TTL rules are evaluated in order; the first matching rule wins.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from marketplace.cache.aside import CacheAside, FetchOutcome
from marketplace.cache.config import CacheTTL
from marketplace.cache.keys import CacheKey, canonical_name
from marketplace.cache.queue import QueryExecutor
from marketplace.cache.store import CacheStore


logger = logging.getLogger(__name__)


# Operation tags (key prefixes)
LISTING = "listing"
SEARCH = "search"
COLLECTIONS = "collections"
COLLECTIONS_SEARCH = "collections_search"
CATEGORIES_KEY = "all_categories"
GLOBAL_STATS_KEY = "global_stats"
TOP_UPLOADERS = "top_uploaders"

# Prefixes of every cached query derived from the asset table
ASSET_LISTING_OPERATIONS = (LISTING, SEARCH)
COLLECTION_OPERATIONS = (COLLECTIONS, COLLECTIONS_SEARCH)


class QueryShape(Enum):
    """Query shapes with distinct staleness tolerance."""
    CATEGORY_FILTERED = "category_filtered"
    SEARCH = "search"
    NEWEST = "newest"
    COLLECTIONS = "collections"
    TAXONOMY = "taxonomy"
    GLOBAL_STATS = "global_stats"
    DEFAULT = "default"


TTL_TABLE: Dict[QueryShape, int] = {
    QueryShape.CATEGORY_FILTERED: CacheTTL.CATEGORY_LISTING,
    QueryShape.SEARCH: CacheTTL.SEARCH,
    QueryShape.NEWEST: CacheTTL.NEWEST,
    QueryShape.COLLECTIONS: CacheTTL.COLLECTIONS,
    QueryShape.TAXONOMY: CacheTTL.CATEGORIES,
    QueryShape.GLOBAL_STATS: CacheTTL.GLOBAL_STATS,
    QueryShape.DEFAULT: CacheTTL.LISTING_DEFAULT,
}


def _normalized(filters: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    normalized = {}
    for name, value in (filters or {}).items():
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        normalized[canonical_name(name)] = value
    return normalized


def _has_category(operation: str, f: Dict[str, Any]) -> bool:
    return "category" in f


def _has_search(operation: str, f: Dict[str, Any]) -> bool:
    return operation in (SEARCH, COLLECTIONS_SEARCH) or "search" in f


def _is_newest(operation: str, f: Dict[str, Any]) -> bool:
    return str(f.get("sort", "")).lower() == "newest"


def _is_collections(operation: str, f: Dict[str, Any]) -> bool:
    return operation in COLLECTION_OPERATIONS or bool(f.get("collections"))


def _is_taxonomy(operation: str, f: Dict[str, Any]) -> bool:
    return operation == CATEGORIES_KEY


def _is_global_stats(operation: str, f: Dict[str, Any]) -> bool:
    return operation == GLOBAL_STATS_KEY


TTL_RULES: List[Tuple[QueryShape, Callable[[str, Dict[str, Any]], bool]]] = [
    (QueryShape.CATEGORY_FILTERED, _has_category),
    (QueryShape.SEARCH, _has_search),
    (QueryShape.NEWEST, _is_newest),
    (QueryShape.COLLECTIONS, _is_collections),
    (QueryShape.TAXONOMY, _is_taxonomy),
    (QueryShape.GLOBAL_STATS, _is_global_stats),
]


def classify_query(operation: str, filters: Optional[Mapping[str, Any]] = None) -> QueryShape:
    """Return the shape of the first rule that matches."""
    normalized = _normalized(filters)
    for shape, matches in TTL_RULES:
        if matches(operation, normalized):
            return shape
    return QueryShape.DEFAULT


def ttl_for_query(operation: str, filters: Optional[Mapping[str, Any]] = None) -> int:
    return TTL_TABLE[classify_query(operation, filters)]


def listing_operation(filters: Optional[Mapping[str, Any]]) -> str:
    """Asset listings with free text are cached under the search prefix."""
    return SEARCH if "search" in _normalized(filters) else LISTING


def listing_key(filters: Optional[Mapping[str, Any]]) -> str:
    return CacheKey.build(listing_operation(filters), filters).render()


class MarketplaceCache:
    """
    Cached marketplace queries.

    Every method takes the fetch function that produces fresh data and an
    optional QueryExecutor; with a critical executor the fetch runs
    through the shared operation queue.
    """

    def __init__(self, store: CacheStore, engine: Optional[CacheAside] = None):
        self.store = store
        self.engine = engine or CacheAside(store)

    async def _cached(
        self,
        key: CacheKey,
        fetch_fn: Callable[[], Any],
        ttl_seconds: int,
        executor: Optional[QueryExecutor] = None,
    ) -> FetchOutcome:
        if executor is not None:
            return await self.engine.get_or_set(
                key.render(),
                lambda: executor.run(fetch_fn),
                ttl_seconds,
            )
        return await self.engine.get_or_set(key.render(), fetch_fn, ttl_seconds)

    # =========================================================================
    # Asset listings
    # =========================================================================

    async def get_assets(
        self,
        filters: Mapping[str, Any],
        fetch_fn: Callable[[], Any],
        executor: Optional[QueryExecutor] = None,
    ) -> FetchOutcome:
        """Filtered/sorted/paginated asset listing (or search)."""
        operation = listing_operation(filters)
        key = CacheKey.build(operation, filters)
        return await self._cached(key, fetch_fn, ttl_for_query(operation, filters), executor)

    async def get_recent_assets(
        self,
        limit: int,
        fetch_fn: Callable[[], Any],
        executor: Optional[QueryExecutor] = None,
    ) -> FetchOutcome:
        filters = {"sort": "newest", "limit": limit, "view": "recent"}
        key = CacheKey.build(LISTING, filters)
        return await self._cached(key, fetch_fn, ttl_for_query(LISTING, filters), executor)

    async def get_related_assets(
        self,
        asset_id: int,
        limit: int,
        fetch_fn: Callable[[], Any],
        executor: Optional[QueryExecutor] = None,
    ) -> FetchOutcome:
        filters = {"related": asset_id, "limit": limit}
        key = CacheKey.build(LISTING, filters)
        return await self._cached(key, fetch_fn, ttl_for_query(LISTING, filters), executor)

    # =========================================================================
    # Taxonomy and aggregates
    # =========================================================================

    async def get_categories(
        self,
        fetch_fn: Callable[[], Any],
        executor: Optional[QueryExecutor] = None,
    ) -> FetchOutcome:
        key = CacheKey.build(CATEGORIES_KEY)
        return await self._cached(key, fetch_fn, ttl_for_query(CATEGORIES_KEY), executor)

    async def get_stats(
        self,
        fetch_fn: Callable[[], Any],
        executor: Optional[QueryExecutor] = None,
    ) -> FetchOutcome:
        key = CacheKey.build(GLOBAL_STATS_KEY)
        return await self._cached(key, fetch_fn, ttl_for_query(GLOBAL_STATS_KEY), executor)

    async def get_top_uploaders(
        self,
        limit: int,
        fetch_fn: Callable[[], Any],
        executor: Optional[QueryExecutor] = None,
    ) -> FetchOutcome:
        key = CacheKey.build(TOP_UPLOADERS, {"limit": limit})
        return await self._cached(key, fetch_fn, CacheTTL.TOP_UPLOADERS, executor)

    # =========================================================================
    # User-scoped collections
    # =========================================================================

    async def get_user_collections(
        self,
        user_id: int,
        params: Mapping[str, Any],
        fetch_fn: Callable[[], Any],
        executor: Optional[QueryExecutor] = None,
    ) -> FetchOutcome:
        key = CacheKey.build(COLLECTIONS, params, user=user_id)
        return await self._cached(key, fetch_fn, ttl_for_query(COLLECTIONS, params), executor)

    async def search_user_collections(
        self,
        user_id: int,
        query: str,
        params: Mapping[str, Any],
        fetch_fn: Callable[[], Any],
        executor: Optional[QueryExecutor] = None,
    ) -> FetchOutcome:
        filters = {**params, "search": query}
        key = CacheKey.build(COLLECTIONS_SEARCH, filters, user=user_id)
        return await self._cached(
            key, fetch_fn, ttl_for_query(COLLECTIONS_SEARCH, filters), executor
        )
