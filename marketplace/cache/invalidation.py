"""
Cache Invalidation Service

Event-driven cache invalidation. Mutation handlers raise an event and
await it before responding, so the next read cannot be served stale
data from the cache.

Fan-out per entity type:
- Asset changes: every asset listing/search key + global stats.
  Item detail keys are left to expire on their own.
- Category changes: the category list key.
- Collection changes: only the owning user's collection keys.
- User changes: top uploaders + global stats.

Invalidation never fails the mutation that triggered it. Errors are
logged and reported on the InvalidationResult; the worst case is a
stale entry that lives until its TTL runs out.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from marketplace.cache.keys import CacheKey, key_pattern
from marketplace.cache.policy import (
    ASSET_LISTING_OPERATIONS,
    CATEGORIES_KEY,
    COLLECTIONS,
    COLLECTIONS_SEARCH,
    GLOBAL_STATS_KEY,
    TOP_UPLOADERS,
)
from marketplace.cache.store import CacheStore


logger = logging.getLogger(__name__)


class CacheEvent(Enum):
    """Events that trigger cache invalidation."""

    # Asset lifecycle
    ASSET_CREATED = "asset_created"
    ASSET_UPDATED = "asset_updated"
    ASSET_DELETED = "asset_deleted"
    ASSET_APPROVED = "asset_approved"
    ASSET_REJECTED = "asset_rejected"

    # Taxonomy
    CATEGORY_CREATED = "category_created"
    CATEGORY_UPDATED = "category_updated"
    CATEGORY_DELETED = "category_deleted"

    # User-scoped collections
    COLLECTION_CREATED = "collection_created"
    COLLECTION_UPDATED = "collection_updated"
    COLLECTION_DELETED = "collection_deleted"

    # Users
    USER_UPDATED = "user_updated"

    # Manual invalidation
    MANUAL_INVALIDATE_PATTERN = "manual_invalidate_pattern"
    MANUAL_INVALIDATE_ALL = "manual_invalidate_all"


ASSET_EVENTS = {
    CacheEvent.ASSET_CREATED,
    CacheEvent.ASSET_UPDATED,
    CacheEvent.ASSET_DELETED,
    CacheEvent.ASSET_APPROVED,
    CacheEvent.ASSET_REJECTED,
}
CATEGORY_EVENTS = {
    CacheEvent.CATEGORY_CREATED,
    CacheEvent.CATEGORY_UPDATED,
    CacheEvent.CATEGORY_DELETED,
}
COLLECTION_EVENTS = {
    CacheEvent.COLLECTION_CREATED,
    CacheEvent.COLLECTION_UPDATED,
    CacheEvent.COLLECTION_DELETED,
}


@dataclass
class InvalidationResult:
    """Result of a cache invalidation operation."""
    event: CacheEvent
    success: bool
    keys_invalidated: int
    patterns: List[str]
    degraded: bool = False
    duration_ms: float = 0.0
    errors: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        """Some patterns were purged everywhere, others only locally or not at all."""
        return bool(self.errors) or self.degraded


def patterns_for(
    event: CacheEvent,
    user_id: Optional[int] = None,
    pattern: Optional[str] = None,
) -> List[str]:
    """Key patterns (globs or exact keys) to purge for an event."""
    if event in ASSET_EVENTS:
        patterns = []
        for op in ASSET_LISTING_OPERATIONS:
            # an unfiltered listing renders as the bare operation tag
            patterns += [op, key_pattern(op)]
        return patterns + [GLOBAL_STATS_KEY]

    if event in CATEGORY_EVENTS:
        return [CATEGORIES_KEY]

    if event in COLLECTION_EVENTS:
        if user_id is None:
            raise ValueError(f"{event.value} requires user_id")
        collections = CacheKey.build(COLLECTIONS, user=user_id)
        return [
            collections.base,
            collections.pattern(),
            key_pattern(COLLECTIONS_SEARCH, user=user_id),
        ]

    if event == CacheEvent.USER_UPDATED:
        return [key_pattern(TOP_UPLOADERS), GLOBAL_STATS_KEY]

    if event == CacheEvent.MANUAL_INVALIDATE_PATTERN:
        if not pattern:
            raise ValueError("manual pattern invalidation requires a pattern")
        return [pattern]

    if event == CacheEvent.MANUAL_INVALIDATE_ALL:
        return ["*"]

    return []


def _is_glob(pattern: str) -> bool:
    return any(ch in pattern for ch in "*?[")


class CacheInvalidator:
    """
    Handles cache invalidation based on events.

    Principle: invalidate as narrowly as the data dependencies allow.
    """

    def __init__(self, store: CacheStore):
        self.store = store

    async def handle_event(
        self,
        event: CacheEvent,
        user_id: Optional[int] = None,
        pattern: Optional[str] = None,
    ) -> InvalidationResult:
        """Purge every key affected by `event`. Never raises."""
        start = time.perf_counter()
        errors: List[str] = []
        keys_invalidated = 0
        degraded = False

        try:
            patterns = patterns_for(event, user_id=user_id, pattern=pattern)
        except ValueError as e:
            logger.error(f"Cache invalidation rejected: {e}")
            return InvalidationResult(
                event=event,
                success=False,
                keys_invalidated=0,
                patterns=[],
                errors=[str(e)],
            )

        logger.info(f"Cache invalidation event: {event.value}, patterns={patterns}")

        for target in patterns:
            try:
                if target == "*":
                    outcome = await self.store.clear()
                elif _is_glob(target):
                    outcome = await self.store.delete_pattern(target)
                else:
                    outcome = await self.store.delete(target)
            except Exception as e:
                errors.append(f"{target}: {e}")
                logger.error(f"Cache invalidation error for {target}: {e}")
                continue

            keys_invalidated += outcome.count
            if outcome.degraded:
                degraded = True
            if outcome.error:
                errors.append(f"{target}: {outcome.error}")

        duration = (time.perf_counter() - start) * 1000
        result = InvalidationResult(
            event=event,
            success=not errors,
            keys_invalidated=keys_invalidated,
            patterns=patterns,
            degraded=degraded,
            duration_ms=duration,
            errors=errors,
        )

        log = logger.warning if result.partial else logger.info
        log(
            f"Invalidation complete: {keys_invalidated} keys, "
            f"degraded: {degraded}, duration: {duration:.2f}ms"
        )
        return result

    async def invalidate_assets(self) -> InvalidationResult:
        return await self.handle_event(CacheEvent.ASSET_UPDATED)

    async def invalidate_categories(self) -> InvalidationResult:
        return await self.handle_event(CacheEvent.CATEGORY_UPDATED)

    async def invalidate_users(self) -> InvalidationResult:
        return await self.handle_event(CacheEvent.USER_UPDATED)

    async def invalidate_collections(self, user_id: int) -> InvalidationResult:
        return await self.handle_event(CacheEvent.COLLECTION_UPDATED, user_id=user_id)

    async def invalidate_pattern(self, pattern: str) -> InvalidationResult:
        return await self.handle_event(CacheEvent.MANUAL_INVALIDATE_PATTERN, pattern=pattern)

    async def invalidate_all(self) -> InvalidationResult:
        return await self.handle_event(CacheEvent.MANUAL_INVALIDATE_ALL)
