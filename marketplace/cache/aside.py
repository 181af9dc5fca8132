"""
Cache-aside engine.

The single place where "cached or fresh" is decided: look the key up,
and on a miss run the caller's fetch function, store its result and
return it.

There is no per-key locking. Concurrent callers that all miss the same
cold key will all run the fetch function (thundering herd); the result
of the last one to finish is what stays cached.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, TypeVar, Union

from marketplace.cache.store import CacheStore


logger = logging.getLogger(__name__)

T = TypeVar('T')

FetchFn = Callable[[], Union[T, Awaitable[T]]]


@dataclass
class FetchOutcome(Generic[T]):
    """A value plus where it came from. Created per call, never stored."""
    value: T
    was_cached: bool
    degraded: bool = False

    @property
    def source(self) -> str:
        return "cache" if self.was_cached else "database"

    def as_payload(self) -> Dict[str, Any]:
        """API response shape: dict payloads gain `cached` and `source`."""
        if isinstance(self.value, dict):
            payload = dict(self.value)
        else:
            payload = {"data": self.value}
        payload["cached"] = self.was_cached
        payload["source"] = self.source
        return payload


class CacheAside:
    """get-or-compute-and-store over a CacheStore."""

    def __init__(self, store: CacheStore):
        self.store = store
        self.hits = 0
        self.misses = 0
        self.fetch_errors = 0

    async def get_or_set(
        self,
        key: str,
        fetch_fn: FetchFn,
        ttl_seconds: int,
    ) -> FetchOutcome:
        """
        Return the cached value for `key`, computing and storing it on a miss.

        Errors raised by `fetch_fn` propagate and nothing is cached.
        """
        lookup = await self.store.lookup(key)
        if lookup.hit:
            self.hits += 1
            return FetchOutcome(value=lookup.value, was_cached=True, degraded=lookup.degraded)

        self.misses += 1
        try:
            result = fetch_fn()
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            self.fetch_errors += 1
            logger.warning(f"Fetch for {key} failed, nothing cached")
            raise

        stored = await self.store.set(key, result, ttl_seconds)
        return FetchOutcome(
            value=result,
            was_cached=False,
            degraded=lookup.degraded or stored.degraded,
        )

    def get_stats(self) -> Dict[str, int]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "fetch_errors": self.fetch_errors,
        }
