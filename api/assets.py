"""
Marketplace API

Read endpoints are served through the cache layer; each response says
whether it came from the cache or the database. Mutation endpoints
write to the database and then run cache invalidation to completion
before responding, so the next read sees the change.

Listing, recent, stats and category responses also carry Cache-Control,
ETag and Last-Modified headers and answer conditional GETs with 304.

Endpoints:
- Asset listings, recent assets, related assets, global stats, top uploaders
- Categories
- User collections
- Asset images through the edge cache
"""

import logging
from functools import partial
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import FileResponse, RedirectResponse
from pydantic import BaseModel, Field

from marketplace.cache import CacheEvent, CacheServices, InvalidationResult, QueryExecutor
from marketplace.cache.headers import cached_json_response, static_blob
from marketplace.database import repository
from marketplace.utils.config import get_settings

from api.dependencies import get_cache_services, get_query_executor


logger = logging.getLogger(__name__)
router = APIRouter(tags=["Marketplace"])


# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================

class AssetCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    image_url: Optional[str] = None
    tags: List[str] = []
    user_id: int
    category_id: int
    is_approved: bool = False


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    icon: Optional[str] = None


class CollectionCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    is_public: bool = False


class InvalidationSummary(BaseModel):
    """What the mutation purged from the cache."""
    event: str
    success: bool
    keys_invalidated: int
    degraded: bool
    errors: List[str] = []

    @classmethod
    def from_result(cls, result: InvalidationResult) -> "InvalidationSummary":
        return cls(
            event=result.event.value,
            success=result.success,
            keys_invalidated=result.keys_invalidated,
            degraded=result.degraded,
            errors=result.errors,
        )


def _listing_filters(**params: Any) -> Dict[str, Any]:
    """Only the filters the client actually sent; defaults stay out of the key."""
    return {name: value for name, value in params.items() if value not in (None, "", [])}


# =============================================================================
# ASSETS
# =============================================================================

@router.get("/api/assets")
async def list_assets(
    request: Request,
    page: Optional[int] = Query(default=None, ge=1),
    limit: Optional[int] = Query(default=None, ge=1, le=repository.MAX_PAGE_SIZE),
    search: Optional[str] = None,
    category: Optional[int] = Query(default=None, alias="categoryId"),
    user: Optional[int] = Query(default=None, alias="userId"),
    sort: Optional[str] = Query(default=None, alias="sortBy"),
    order: Optional[str] = Query(default=None, alias="sortOrder", pattern="^(asc|desc)$"),
    tags: Optional[List[str]] = Query(default=None),
    services: CacheServices = Depends(get_cache_services),
    executor: QueryExecutor = Depends(get_query_executor),
):
    """Filtered, sorted, paginated asset listing."""
    filters = _listing_filters(
        page=page, limit=limit, search=search, category=category,
        user=user, sort=sort, order=order, tags=tags,
    )
    outcome = await services.policy.get_assets(
        filters,
        partial(repository.find_assets, filters),
        executor=executor,
    )
    return cached_json_response(request, outcome.as_payload(), minutes=3)


@router.get("/api/assets/recent")
async def recent_assets(
    request: Request,
    limit: Optional[int] = Query(default=None, ge=1, le=50),
    services: CacheServices = Depends(get_cache_services),
    executor: QueryExecutor = Depends(get_query_executor),
):
    limit = limit or get_settings().RECENT_ASSETS_LIMIT
    outcome = await services.policy.get_recent_assets(
        limit,
        partial(repository.find_recent, limit),
        executor=executor,
    )
    return cached_json_response(request, outcome.as_payload(), minutes=2)


@router.get("/api/assets/stats")
async def marketplace_stats(
    request: Request,
    services: CacheServices = Depends(get_cache_services),
    executor: QueryExecutor = Depends(get_query_executor),
):
    outcome = await services.policy.get_stats(repository.get_stats, executor=executor)
    return cached_json_response(request, outcome.as_payload(), minutes=5)


@router.get("/api/users/top-uploaders")
async def top_uploaders(
    limit: int = Query(default=10, ge=1, le=50),
    services: CacheServices = Depends(get_cache_services),
    executor: QueryExecutor = Depends(get_query_executor),
):
    outcome = await services.policy.get_top_uploaders(
        limit,
        partial(repository.find_top_uploaders, limit),
        executor=executor,
    )
    return outcome.as_payload()


@router.get("/api/assets/{asset_id}/related")
async def related_assets(
    asset_id: int,
    limit: Optional[int] = Query(default=None, ge=1, le=50),
    services: CacheServices = Depends(get_cache_services),
    executor: QueryExecutor = Depends(get_query_executor),
):
    limit = limit or get_settings().RELATED_ASSETS_LIMIT
    outcome = await services.policy.get_related_assets(
        asset_id,
        limit,
        partial(repository.find_related, asset_id, limit),
        executor=executor,
    )
    return outcome.as_payload()


@router.post("/api/assets", status_code=201)
async def create_asset(
    body: AssetCreate,
    services: CacheServices = Depends(get_cache_services),
    executor: QueryExecutor = Depends(get_query_executor),
):
    """
    Create an asset.

    Listing, search and stats keys are invalidated before responding.
    """
    try:
        asset = await executor.run(partial(repository.create_asset, body.model_dump()))
    except Exception as e:
        logger.error(f"Failed to create asset: {e}")
        raise HTTPException(status_code=400, detail="Could not create asset")

    result = await services.invalidator.handle_event(CacheEvent.ASSET_CREATED)
    return {"asset": asset, "invalidation": InvalidationSummary.from_result(result)}


@router.delete("/api/assets/{asset_id}")
async def delete_asset(
    asset_id: int,
    services: CacheServices = Depends(get_cache_services),
    executor: QueryExecutor = Depends(get_query_executor),
):
    deleted = await executor.run(partial(repository.delete_asset, asset_id))
    if not deleted:
        raise HTTPException(status_code=404, detail="Asset not found")

    result = await services.invalidator.handle_event(CacheEvent.ASSET_DELETED)
    await services.edge.delete(asset_id)
    return {"deleted": True, "invalidation": InvalidationSummary.from_result(result)}


# =============================================================================
# CATEGORIES
# =============================================================================

@router.get("/api/categories")
async def list_categories(
    request: Request,
    services: CacheServices = Depends(get_cache_services),
    executor: QueryExecutor = Depends(get_query_executor),
):
    outcome = await services.policy.get_categories(repository.find_all_categories, executor=executor)
    return cached_json_response(request, outcome.as_payload(), minutes=30)


@router.post("/api/categories", status_code=201)
async def create_category(
    body: CategoryCreate,
    services: CacheServices = Depends(get_cache_services),
    executor: QueryExecutor = Depends(get_query_executor),
):
    try:
        category = await executor.run(partial(repository.create_category, body.model_dump()))
    except Exception as e:
        logger.error(f"Failed to create category: {e}")
        raise HTTPException(status_code=400, detail="Could not create category")

    result = await services.invalidator.handle_event(CacheEvent.CATEGORY_CREATED)
    return {"category": category, "invalidation": InvalidationSummary.from_result(result)}


# =============================================================================
# COLLECTIONS
# =============================================================================

@router.get("/api/collections/users/{user_id}")
async def user_collections(
    user_id: int,
    page: Optional[int] = Query(default=None, ge=1),
    limit: Optional[int] = Query(default=None, ge=1, le=repository.MAX_PAGE_SIZE),
    search: Optional[str] = None,
    services: CacheServices = Depends(get_cache_services),
    executor: QueryExecutor = Depends(get_query_executor),
):
    """A user's collections; with `search`, only those whose name or description match."""
    params = _listing_filters(page=page, limit=limit)

    if search and search.strip():
        outcome = await services.policy.search_user_collections(
            user_id,
            search,
            params,
            partial(repository.search_user_collections, user_id, search, params),
            executor=executor,
        )
    else:
        outcome = await services.policy.get_user_collections(
            user_id,
            params,
            partial(repository.find_user_collections, user_id, params),
            executor=executor,
        )
    return outcome.as_payload()


@router.post("/api/collections/users/{user_id}", status_code=201)
async def create_collection(
    user_id: int,
    body: CollectionCreate,
    services: CacheServices = Depends(get_cache_services),
    executor: QueryExecutor = Depends(get_query_executor),
):
    try:
        collection = await executor.run(
            partial(repository.create_collection, user_id, body.model_dump())
        )
    except Exception as e:
        logger.error(f"Failed to create collection for user {user_id}: {e}")
        raise HTTPException(status_code=400, detail="Could not create collection")

    result = await services.invalidator.handle_event(CacheEvent.COLLECTION_CREATED, user_id=user_id)
    return {"collection": collection, "invalidation": InvalidationSummary.from_result(result)}


# =============================================================================
# EDGE CACHE (images)
# =============================================================================

@router.get("/cdn/images/{asset_id}")
async def asset_image(
    asset_id: str,
    services: CacheServices = Depends(get_cache_services),
):
    """
    Serve an asset image from the edge cache.

    On a miss the image is fetched from its origin URL and cached; if that
    fails the client is redirected to the origin.
    """
    headers = static_blob(int(services.edge.max_age.total_seconds())).build()

    cached = await services.edge.get_object(asset_id)
    if cached is not None:
        return FileResponse(cached.path, media_type="image/jpeg", headers=headers)

    if not asset_id.isdigit():
        raise HTTPException(status_code=404, detail="Image not found")

    asset = await services.executor().run(partial(repository.find_asset, int(asset_id)))
    if asset is None or not asset.get("image_url"):
        raise HTTPException(status_code=404, detail="Image not found")

    if await services.edge.fetch_and_store(asset_id, asset["image_url"]):
        cached = await services.edge.get_object(asset_id)
        if cached is not None:
            return FileResponse(cached.path, media_type="image/jpeg", headers=headers)

    return RedirectResponse(asset["image_url"], status_code=302)
