"""
In-process fallback cache.

Holds serialized payloads with per-key expiry. None of the methods await,
so every operation is atomic with respect to other coroutines on the loop.
"""

import fnmatch
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional


logger = logging.getLogger(__name__)


@dataclass
class LocalEntry:
    value: bytes
    expires_at: Optional[float]  # None = no expiry

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


def glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Translate a Redis-style glob into a compiled regex."""
    return re.compile(fnmatch.translate(pattern))


class LocalCache:
    """
    Bounded TTL cache.

    Expired entries are indistinguishable from absent ones and are dropped
    lazily when touched. When `max_keys` is reached, expired entries are
    purged first and then the entry closest to expiry is evicted.
    """

    def __init__(
        self,
        max_keys: int = 1000,
        default_ttl: int = 600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_keys = max_keys
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, LocalEntry] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def _live(self, key: str) -> Optional[LocalEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Optional[bytes]:
        entry = self._live(key)
        if entry is None:
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def set(self, key: str, value: bytes, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is None:
            ttl_seconds = self.default_ttl
        if ttl_seconds < 0:
            raise ValueError(f"ttl_seconds must be >= 0, got {ttl_seconds}")

        if key not in self._entries and len(self._entries) >= self.max_keys:
            self._make_room()

        expires_at = self._clock() + ttl_seconds if ttl_seconds > 0 else None
        self._entries[key] = LocalEntry(value=value, expires_at=expires_at)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def delete_pattern(self, pattern: str) -> int:
        matching = self.keys(pattern)
        for key in matching:
            del self._entries[key]
        return len(matching)

    def increment(self, key: str, ttl_seconds: int) -> int:
        """Increment an integer counter; the TTL applies only on first write."""
        entry = self._live(key)
        if entry is None:
            self.set(key, b"1", ttl_seconds)
            return 1
        value = int(entry.value) + 1
        entry.value = str(value).encode()
        return value

    def set_counter(self, key: str, value: int, ttl_seconds: int) -> None:
        """Mirror a counter value, keeping the expiry of a live entry."""
        entry = self._live(key)
        if entry is None:
            self.set(key, str(value).encode(), ttl_seconds)
        else:
            entry.value = str(value).encode()

    def exists(self, key: str) -> bool:
        return self._live(key) is not None

    def keys(self, pattern: str = "*") -> List[str]:
        self.purge_expired()
        regex = glob_to_regex(pattern)
        return [key for key in self._entries if regex.match(key)]

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def _make_room(self) -> None:
        if self.purge_expired():
            return
        victim = min(
            self._entries,
            key=lambda k: self._entries[k].expires_at or float("inf"),
        )
        del self._entries[victim]
        self.evictions += 1
        logger.debug(f"Local cache full ({self.max_keys} keys), evicted {victim}")

    def __len__(self) -> int:
        self.purge_expired()
        return len(self._entries)

    def get_stats(self) -> Dict[str, int]:
        return {
            "keys": len(self),
            "max_keys": self.max_keys,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
        }
