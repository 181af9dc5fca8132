"""
Cache Management API

Provides endpoints for cache monitoring and manual operations.

Endpoints:
- Health check for monitoring/alerting
- Statistics per tier, per region and for the database queue
- Manual invalidation for debugging
- Warm-up and edge cache cleanup triggers
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from marketplace.cache import CacheServices, InvalidationResult

from api.dependencies import get_cache_services


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cache", tags=["Cache Management"])


# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================

class CacheHealthResponse(BaseModel):
    """Cache health check response."""
    status: str = Field(..., description="healthy, degraded or unhealthy")
    backend: str = Field(..., description="Tier currently serving reads: distributed or local")
    degraded: bool
    checks: Dict[str, bool]
    issues: List[Dict[str, Any]] = []
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class CacheStatsResponse(BaseModel):
    """Cache statistics response."""
    store: Dict[str, Any]
    engine: Dict[str, int]
    regions: Dict[str, Dict[str, Any]]
    queue: Dict[str, Any]
    edge: Dict[str, Any]


class InvalidationResponse(BaseModel):
    """Cache invalidation response."""
    success: bool
    keys_invalidated: int
    patterns: List[str]
    degraded: bool
    duration_ms: float
    errors: List[str] = []

    @classmethod
    def from_result(cls, result: InvalidationResult) -> "InvalidationResponse":
        return cls(
            success=result.success,
            keys_invalidated=result.keys_invalidated,
            patterns=result.patterns,
            degraded=result.degraded,
            duration_ms=result.duration_ms,
            errors=result.errors,
        )


class PatternInvalidationRequest(BaseModel):
    pattern: str = Field(..., min_length=1, description="Glob over un-namespaced keys, e.g. listing_*")


class WarmRequest(BaseModel):
    include_edge: bool = False


class EdgeCleanupRequest(BaseModel):
    max_age_days: Optional[float] = Field(default=None, gt=0)


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/health", response_model=CacheHealthResponse)
async def cache_health_check(services: CacheServices = Depends(get_cache_services)):
    """
    Check cache infrastructure health.

    Use this endpoint for monitoring and alerting systems.
    """
    health = await services.monitor.health_check()
    return CacheHealthResponse(
        status=health.status.value,
        backend=services.store.backend.value,
        degraded=services.store.degraded,
        checks=health.checks,
        issues=health.issues,
        timestamp=health.timestamp,
    )


@router.get("/stats", response_model=CacheStatsResponse)
async def get_cache_stats(services: CacheServices = Depends(get_cache_services)):
    """
    Get current cache statistics.

    Note: Stats are reset on application restart.
    """
    return CacheStatsResponse(
        store=services.store.get_stats(),
        engine=services.engine.get_stats(),
        regions=await services.monitor.region_stats(),
        queue=services.queue.stats(),
        edge=await services.edge.stats(),
    )


@router.post("/invalidate/all", response_model=InvalidationResponse)
async def invalidate_all_cache(services: CacheServices = Depends(get_cache_services)):
    """
    Invalidate ALL cache data in this application's namespace.

    CAUTION: Performance degrades until caches are repopulated.
    """
    result = await services.invalidator.invalidate_all()
    return InvalidationResponse.from_result(result)


@router.post("/invalidate/pattern", response_model=InvalidationResponse)
async def invalidate_pattern(
    body: PatternInvalidationRequest,
    services: CacheServices = Depends(get_cache_services),
):
    """Invalidate every key matching a glob pattern."""
    result = await services.invalidator.invalidate_pattern(body.pattern)
    return InvalidationResponse.from_result(result)


@router.post("/warm")
async def warm_cache(
    body: Optional[WarmRequest] = None,
    services: CacheServices = Depends(get_cache_services),
):
    """Re-run the startup warm-up now."""
    include_edge = body.include_edge if body else False
    results = await services.warmer.warm_up(include_edge=include_edge)
    return {"success": all(results.get(k) for k in ("categories", "stats")), "results": results}


@router.post("/edge/cleanup")
async def cleanup_edge_cache(
    body: Optional[EdgeCleanupRequest] = None,
    services: CacheServices = Depends(get_cache_services),
):
    """Delete edge cache files older than the given age (default: the configured max age)."""
    max_age = None
    if body and body.max_age_days:
        max_age = timedelta(days=body.max_age_days)

    deleted = await services.edge.cleanup(max_age)
    logger.info(f"Edge cleanup via API removed {deleted} files")
    return {"deleted": deleted, "stats": await services.edge.stats()}
