"""
Cache Monitoring

Health checks and per-region statistics for the cache layer.
Region stats are computed from live key listings of the tier that is
currently serving reads.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from marketplace.cache.config import CacheConfig, get_cache_config
from marketplace.cache.policy import (
    CATEGORIES_KEY,
    COLLECTIONS,
    GLOBAL_STATS_KEY,
    LISTING,
    SEARCH,
)
from marketplace.cache.queue import OperationQueue
from marketplace.cache.store import CacheStore


logger = logging.getLogger(__name__)

# region name -> key prefix; "other" collects the rest
REGIONS = {
    "listing": LISTING,
    "search": SEARCH,
    "categories": CATEGORIES_KEY,
    "stats": GLOBAL_STATS_KEY,
    "collections": COLLECTIONS,
}


class HealthStatus(Enum):
    """Health check status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthCheckResult:
    """Result of a health check."""
    status: HealthStatus
    latency_ms: float
    checks: Dict[str, bool]
    issues: List[Dict[str, Any]]
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
            "checks": self.checks,
            "issues": self.issues,
            "timestamp": self.timestamp.isoformat(),
        }


def region_of(key: str) -> str:
    for region, prefix in REGIONS.items():
        if key == prefix or key.startswith(f"{prefix}_"):
            return region
    return "other"


class CacheMonitor:
    """
    Monitors cache health and key distribution.

    Checks:
    - Distributed tier connectivity
    - Degraded mode
    - Hit rate (once there is enough traffic to judge)
    - Average Redis latency
    - Queue saturation
    """

    def __init__(
        self,
        store: CacheStore,
        queue: Optional[OperationQueue] = None,
        config: Optional[CacheConfig] = None,
    ):
        self.store = store
        self.queue = queue
        self._config = config or get_cache_config()

    async def region_stats(self) -> Dict[str, Dict[str, Any]]:
        """Key counts per cache region, plus which tier served the listing."""
        status = self.store.backend.value
        counts = {region: 0 for region in [*REGIONS, "other"]}

        for key in await self.store.keys("*"):
            counts[region_of(key)] += 1

        return {
            region: {"keys": count, "status": status}
            for region, count in counts.items()
        }

    async def health_check(self) -> HealthCheckResult:
        """
        Perform a health check.

        Returns:
            HealthCheckResult with status, latency and issues
        """
        start_time = time.perf_counter()
        checks: Dict[str, bool] = {}
        issues: List[Dict[str, Any]] = []

        store_health = await self.store.health_check()
        stats = store_health["stats"]

        # Check 1: Connectivity
        if self.store.distributed_configured:
            checks["connectivity"] = store_health["status"] == "connected"
            if not checks["connectivity"]:
                issues.append({
                    "type": "connectivity",
                    "severity": "critical",
                    "message": f"Redis unavailable ({store_health['status']})",
                    "action": "Check Redis server status and network connectivity",
                })

        # Check 2: Degraded mode
        checks["degraded"] = not self.store.degraded
        if self.store.degraded:
            issues.append({
                "type": "degraded",
                "severity": "warning",
                "message": "Serving from local fallback cache",
                "action": "Reads may be stale on other instances until Redis returns",
            })

        # Check 3: Hit rate
        hit_rate = stats.get("hit_rate_percent", 0) / 100
        enough_traffic = (stats["hits"] + stats["misses"]) > 100
        checks["hit_rate"] = not enough_traffic or hit_rate >= self._config.min_hit_rate
        if not checks["hit_rate"]:
            issues.append({
                "type": "hit_rate",
                "severity": "warning",
                "message": f"Low cache hit rate: {hit_rate*100:.1f}%",
                "threshold": self._config.min_hit_rate * 100,
                "action": "Review cache TTLs and warm-up coverage",
            })

        # Check 4: Latency
        latency_ms = stats.get("avg_latency_ms", 0.0)
        checks["latency"] = latency_ms < self._config.max_latency_ms
        if not checks["latency"]:
            issues.append({
                "type": "latency",
                "severity": "warning",
                "message": f"High cache latency: {latency_ms:.2f}ms",
                "threshold": self._config.max_latency_ms,
                "action": "Check Redis server load and network conditions",
            })

        # Check 5: Queue saturation
        if self.queue is not None:
            queue_stats = self.queue.stats()
            checks["queue"] = queue_stats["pending"] == 0
            if not checks["queue"]:
                issues.append({
                    "type": "queue",
                    "severity": "warning",
                    "message": (
                        f"{queue_stats['pending']} critical queries waiting, "
                        f"oldest running for {queue_stats['oldest_running_seconds']}s"
                    ),
                    "action": "Check database load and slow queries",
                })

        if checks.get("connectivity") is False:
            status = HealthStatus.UNHEALTHY
        elif not all(checks.values()):
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        if status != HealthStatus.HEALTHY:
            logger.warning(f"Cache health {status.value}: {[i['type'] for i in issues]}")

        return HealthCheckResult(
            status=status,
            latency_ms=(time.perf_counter() - start_time) * 1000,
            checks=checks,
            issues=issues,
        )
