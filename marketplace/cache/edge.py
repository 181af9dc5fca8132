"""
Edge Cache (CDN simulation)

Disk-backed cache of immutable image blobs keyed by entity id, standing
in for a CDN edge until a real one is wired up.

- Objects are valid while `now - stored_at < max_age`; stored_at is the
  file mtime. Expired objects are deleted when next requested, or by an
  explicit `cleanup()` pass.
- Disk errors are logged and treated as a miss. Callers fall back to the
  origin URL.
- File I/O runs in worker threads so the event loop never blocks on disk.
"""

import asyncio
import hashlib
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Union

import httpx


logger = logging.getLogger(__name__)

ENTITY_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
IMAGE_SUFFIX = ".jpg"


@dataclass
class EdgeCacheObject:
    """A cached blob on disk."""
    entity_id: str
    path: Path
    url: str
    size_bytes: int
    stored_at: float


@dataclass
class PopularEntity:
    """Warm-up candidate: an entity id and the origin URL of its image."""
    entity_id: Union[int, str]
    source_url: Optional[str]


@dataclass
class WarmUpResult:
    cached: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


PopularSource = Callable[[int], Awaitable[List[PopularEntity]]]


class EdgeCache:
    """Local blob cache with age-based expiry."""

    def __init__(
        self,
        directory: Union[str, Path],
        max_age: timedelta = timedelta(days=7),
        base_url: str = "/cdn",
        clock: Callable[[], float] = time.time,
        http_client: Optional[httpx.AsyncClient] = None,
        fetch_timeout: float = 10.0,
    ):
        self.root = Path(directory)
        self.images_dir = self.root / "images"
        self.max_age = max_age
        self.base_url = base_url.rstrip("/")
        self._clock = clock
        self._http_client = http_client
        self._fetch_timeout = fetch_timeout
        self.hits = 0
        self.misses = 0

    async def init(self):
        """Create the cache directories if absent."""
        await asyncio.to_thread(self.images_dir.mkdir, parents=True, exist_ok=True)
        logger.info(f"Edge cache ready at {self.root}")

    # =========================================================================
    # Paths and URLs
    # =========================================================================

    def _path(self, entity_id: Union[int, str]) -> Path:
        entity = str(entity_id)
        if not ENTITY_ID_RE.match(entity):
            raise ValueError(f"Invalid entity id for edge cache: {entity!r}")
        return self.images_dir / f"{entity}{IMAGE_SUFFIX}"

    def local_url(self, entity_id: Union[int, str]) -> str:
        return f"{self.base_url}/images/{entity_id}{IMAGE_SUFFIX}"

    def cdn_url(
        self,
        entity_id: Union[int, str],
        kind: str = "image",
        size: str = "original",
    ) -> str:
        """Versioned CDN-style URL for an entity."""
        digest = hashlib.md5(f"{entity_id}-{kind}-{size}".encode()).hexdigest()
        return f"{self.base_url}/{kind}/{size}/{entity_id}/{digest}"

    def _is_expired(self, mtime: float, max_age: Optional[timedelta] = None) -> bool:
        age = self._clock() - mtime
        return age >= (max_age or self.max_age).total_seconds()

    # =========================================================================
    # Reads
    # =========================================================================

    def _read_object(self, path: Path) -> Optional[bytes]:
        try:
            stat = path.stat()
        except FileNotFoundError:
            return None

        if self._is_expired(stat.st_mtime):
            path.unlink(missing_ok=True)
            logger.debug(f"Edge cache entry expired: {path.name}")
            return None

        return path.read_bytes()

    async def get(self, entity_id: Union[int, str]) -> Optional[bytes]:
        """Return the cached blob, or None if absent, expired or unreadable."""
        try:
            path = self._path(entity_id)
            data = await asyncio.to_thread(self._read_object, path)
        except (OSError, ValueError) as e:
            logger.error(f"Edge cache read error for {entity_id}: {e}")
            data = None

        if data is None:
            self.misses += 1
        else:
            self.hits += 1
        return data

    def _stat_object(self, entity_id: str, path: Path) -> Optional[EdgeCacheObject]:
        try:
            stat = path.stat()
        except FileNotFoundError:
            return None

        if self._is_expired(stat.st_mtime):
            path.unlink(missing_ok=True)
            return None

        return EdgeCacheObject(
            entity_id=entity_id,
            path=path,
            url=self.local_url(entity_id),
            size_bytes=stat.st_size,
            stored_at=stat.st_mtime,
        )

    async def get_object(self, entity_id: Union[int, str]) -> Optional[EdgeCacheObject]:
        """Metadata of a valid cached object (for serving it from disk)."""
        try:
            path = self._path(entity_id)
            return await asyncio.to_thread(self._stat_object, str(entity_id), path)
        except (OSError, ValueError) as e:
            logger.error(f"Edge cache stat error for {entity_id}: {e}")
            return None

    # =========================================================================
    # Writes
    # =========================================================================

    def _write_object(self, path: Path, data: bytes):
        path.parent.mkdir(parents=True, exist_ok=True)
        # unique per write, so concurrent puts of one id never share a temp file
        with tempfile.NamedTemporaryFile(
            dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp", delete=False
        ) as tmp:
            tmp.write(data)
        try:
            os.replace(tmp.name, path)
        finally:
            Path(tmp.name).unlink(missing_ok=True)

    async def put(self, entity_id: Union[int, str], data: bytes) -> bool:
        """Store (or overwrite) a blob. Returns False on disk errors."""
        try:
            path = self._path(entity_id)
            await asyncio.to_thread(self._write_object, path, data)
        except (OSError, ValueError) as e:
            logger.error(f"Edge cache write error for {entity_id}: {e}")
            return False

        logger.debug(f"Cached image for entity {entity_id} ({len(data)} bytes)")
        return True

    async def delete(self, entity_id: Union[int, str]) -> bool:
        try:
            path = self._path(entity_id)
            existed = await asyncio.to_thread(path.exists)
            await asyncio.to_thread(path.unlink, missing_ok=True)
            return existed
        except (OSError, ValueError) as e:
            logger.error(f"Edge cache delete error for {entity_id}: {e}")
            return False

    # =========================================================================
    # Origin fetch and warm-up
    # =========================================================================

    async def _download(self, client: httpx.AsyncClient, url: str) -> Optional[bytes]:
        response = await client.get(url, timeout=self._fetch_timeout, follow_redirects=True)
        if response.status_code != 200:
            logger.warning(f"Origin returned {response.status_code} for {url}")
            return None
        return response.content

    async def fetch_and_store(
        self,
        entity_id: Union[int, str],
        source_url: Optional[str],
    ) -> bool:
        """Download an entity's image from the origin and cache it."""
        if not source_url or not source_url.startswith(("http://", "https://")):
            return False

        try:
            if self._http_client is not None:
                data = await self._download(self._http_client, source_url)
            else:
                async with httpx.AsyncClient() as client:
                    data = await self._download(client, source_url)
        except httpx.HTTPError as e:
            logger.error(f"Error fetching image for entity {entity_id}: {e}")
            return False

        if data is None:
            return False
        return await self.put(entity_id, data)

    async def warm_up(
        self,
        source: PopularSource,
        limit: int = 50,
    ) -> WarmUpResult:
        """
        Pre-cache images of the `limit` most popular entities.

        Individual download failures are recorded and the batch goes on.
        """
        start = time.perf_counter()
        result = WarmUpResult()

        entities = await source(limit)
        logger.info(f"Pre-caching {len(entities)} popular images...")

        for entity in entities:
            entity_id = str(entity.entity_id)
            if not entity.source_url or not entity.source_url.startswith(("http://", "https://")):
                result.skipped.append(entity_id)
                continue

            if await self.fetch_and_store(entity.entity_id, entity.source_url):
                result.cached.append(entity_id)
            else:
                result.failed.append(entity_id)

        result.duration_seconds = time.perf_counter() - start
        logger.info(
            f"Edge warm-up complete: {len(result.cached)} cached, "
            f"{len(result.failed)} failed, {len(result.skipped)} skipped"
        )
        return result

    # =========================================================================
    # Maintenance
    # =========================================================================

    def _cleanup(self, max_age: Optional[timedelta]) -> int:
        deleted = 0
        if not self.images_dir.exists():
            return 0
        for path in self.images_dir.iterdir():
            if not path.is_file():
                continue
            if self._is_expired(path.stat().st_mtime, max_age):
                path.unlink(missing_ok=True)
                deleted += 1
        return deleted

    async def cleanup(self, max_age: Optional[timedelta] = None) -> int:
        """Delete every object older than `max_age` (default: the cache max age)."""
        try:
            deleted = await asyncio.to_thread(self._cleanup, max_age)
        except OSError as e:
            logger.error(f"Edge cache cleanup error: {e}")
            return 0

        logger.info(f"Cleaned up {deleted} old cached files")
        return deleted

    def _stats(self) -> Dict:
        files = 0
        total = 0
        if self.images_dir.exists():
            for path in self.images_dir.iterdir():
                if path.is_file() and path.suffix == IMAGE_SUFFIX:
                    files += 1
                    total += path.stat().st_size
        return {
            "total_files": files,
            "total_size_bytes": total,
            "total_size_mb": round(total / 1024 / 1024, 2),
        }

    async def stats(self) -> Dict:
        try:
            stats = await asyncio.to_thread(self._stats)
        except OSError as e:
            logger.error(f"Edge cache stats error: {e}")
            stats = {"total_files": 0, "total_size_bytes": 0, "total_size_mb": 0.0}
        stats.update({"hits": self.hits, "misses": self.misses})
        return stats
