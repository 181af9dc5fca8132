"""
Repository Layer - Clean Interface for Data Operations

Plain synchronous functions over SQLAlchemy sessions. Read functions
return JSON-ready dicts, so their results can be cached as-is; the
cache layer runs them in worker threads.

Filters use the canonical parameter names of the cache keys:
page, limit, search, category, user, exclude, sort, order, tags.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import String, cast, func, or_, select

from .models import Asset, AssetDownload, Category, Collection, CollectionItem, User
from .session import get_db_context

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# sort alias -> (column, default direction)
SORT_FIELDS = {
    "newest": (Asset.created_at, "desc"),
    "oldest": (Asset.created_at, "asc"),
    "popular": (Asset.download_count, "desc"),
    "downloads": (Asset.download_count, "desc"),
    "name": (Asset.title, "asc"),
    "created_at": (Asset.created_at, "desc"),
    "title": (Asset.title, "asc"),
}


# =============================================================================
# SERIALIZATION
# =============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def asset_to_dict(asset: Asset) -> Dict[str, Any]:
    return {
        "id": asset.id,
        "title": asset.title,
        "description": asset.description,
        "image_url": asset.image_url,
        "tags": list(asset.tags or []),
        "user_id": asset.user_id,
        "category_id": asset.category_id,
        "is_approved": asset.is_approved,
        "download_count": asset.download_count or 0,
        "created_at": _iso(asset.created_at),
    }


def category_to_dict(category: Category, asset_count: int = 0) -> Dict[str, Any]:
    return {
        "id": category.id,
        "name": category.name,
        "description": category.description,
        "icon": category.icon,
        "asset_count": asset_count,
    }


def collection_to_dict(collection: Collection, item_count: int = 0) -> Dict[str, Any]:
    return {
        "id": collection.id,
        "user_id": collection.user_id,
        "name": collection.name,
        "description": collection.description,
        "is_public": collection.is_public,
        "item_count": item_count,
        "updated_at": _iso(collection.updated_at),
    }


def _pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit if limit else 0,
    }


def _page_args(filters: Mapping[str, Any]):
    page = max(1, int(filters.get("page") or 1))
    limit = min(MAX_PAGE_SIZE, max(1, int(filters.get("limit") or DEFAULT_PAGE_SIZE)))
    return page, limit


# =============================================================================
# ASSET QUERIES
# =============================================================================

def _visible_assets():
    return select(Asset).where(Asset.is_active.is_(True), Asset.is_approved.is_(True))


def find_assets(filters: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """
    Filtered, sorted, paginated listing of approved assets.

    Returns:
        {"assets": [...], "pagination": {...}}
    """
    filters = filters or {}
    page, limit = _page_args(filters)

    query = _visible_assets()
    if filters.get("category"):
        query = query.where(Asset.category_id == int(filters["category"]))
    if filters.get("user"):
        query = query.where(Asset.user_id == int(filters["user"]))
    if filters.get("exclude"):
        query = query.where(Asset.id != int(filters["exclude"]))

    search = (filters.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        query = query.where(or_(Asset.title.ilike(like), Asset.description.ilike(like)))

    tags = filters.get("tags")
    if tags:
        if isinstance(tags, str):
            tags = [t for t in tags.split(",") if t]
        query = query.where(or_(*[func.lower(cast(Asset.tags, String)).contains(t.lower()) for t in tags]))

    sort = str(filters.get("sort") or "newest").lower()
    column, direction = SORT_FIELDS.get(sort, SORT_FIELDS["newest"])
    direction = str(filters.get("order") or direction).lower()
    ordering = column.asc() if direction == "asc" else column.desc()

    with get_db_context() as db:
        total = db.scalar(select(func.count()).select_from(query.subquery())) or 0
        assets = db.scalars(
            query.order_by(ordering, Asset.id.desc()).offset((page - 1) * limit).limit(limit)
        ).all()
        return {
            "assets": [asset_to_dict(a) for a in assets],
            "pagination": _pagination(page, limit, total),
        }


def find_asset(asset_id: int) -> Optional[Dict[str, Any]]:
    with get_db_context() as db:
        asset = db.get(Asset, asset_id)
        if asset is None or not asset.is_active:
            return None
        return asset_to_dict(asset)


def find_recent(limit: int = 10) -> List[Dict[str, Any]]:
    with get_db_context() as db:
        assets = db.scalars(
            _visible_assets().order_by(Asset.created_at.desc(), Asset.id.desc()).limit(limit)
        ).all()
        return [asset_to_dict(a) for a in assets]


def find_popular_assets(limit: int = 50) -> List[Dict[str, Any]]:
    """Most downloaded approved assets."""
    with get_db_context() as db:
        assets = db.scalars(
            _visible_assets().order_by(Asset.download_count.desc(), Asset.id).limit(limit)
        ).all()
        return [asset_to_dict(a) for a in assets]


def find_related(asset_id: int, limit: int = 6) -> List[Dict[str, Any]]:
    """Approved assets in the same category, most downloaded first."""
    with get_db_context() as db:
        asset = db.get(Asset, asset_id)
        if asset is None:
            return []
        related = db.scalars(
            _visible_assets()
            .where(Asset.category_id == asset.category_id, Asset.id != asset_id)
            .order_by(Asset.download_count.desc(), Asset.id)
            .limit(limit)
        ).all()
        return [asset_to_dict(a) for a in related]


def get_stats() -> Dict[str, Any]:
    """Marketplace-wide aggregates."""
    week_ago = datetime.utcnow() - timedelta(days=7)
    with get_db_context() as db:
        active = Asset.is_active.is_(True)
        return {
            "total_assets": db.scalar(select(func.count(Asset.id)).where(active)) or 0,
            "total_approved": db.scalar(
                select(func.count(Asset.id)).where(active, Asset.is_approved.is_(True))
            ) or 0,
            "total_pending": db.scalar(
                select(func.count(Asset.id)).where(active, Asset.is_approved.is_(False))
            ) or 0,
            "total_downloads": db.scalar(select(func.count(AssetDownload.id))) or 0,
            "total_users": db.scalar(select(func.count(User.id))) or 0,
            "recent_uploads": db.scalar(
                select(func.count(Asset.id)).where(active, Asset.created_at >= week_ago)
            ) or 0,
        }


def find_top_uploaders(limit: int = 10) -> List[Dict[str, Any]]:
    with get_db_context() as db:
        rows = db.execute(
            select(User.id, User.username, func.count(Asset.id).label("asset_count"))
            .join(Asset, Asset.user_id == User.id)
            .where(Asset.is_active.is_(True), Asset.is_approved.is_(True))
            .group_by(User.id, User.username)
            .order_by(func.count(Asset.id).desc(), User.id)
            .limit(limit)
        ).all()
        return [
            {"id": row.id, "username": row.username, "asset_count": row.asset_count}
            for row in rows
        ]


# =============================================================================
# CATEGORIES
# =============================================================================

def find_all_categories() -> List[Dict[str, Any]]:
    """All categories with their approved asset counts, by name."""
    with get_db_context() as db:
        counts = dict(db.execute(
            select(Asset.category_id, func.count(Asset.id))
            .where(Asset.is_active.is_(True), Asset.is_approved.is_(True))
            .group_by(Asset.category_id)
        ).all())
        categories = db.scalars(select(Category).order_by(Category.name)).all()
        return [category_to_dict(c, counts.get(c.id, 0)) for c in categories]


# =============================================================================
# COLLECTIONS
# =============================================================================

def _collections_page(db, query, page: int, limit: int) -> Dict[str, Any]:
    total = db.scalar(select(func.count()).select_from(query.subquery())) or 0
    collections = db.scalars(
        query.order_by(Collection.updated_at.desc(), Collection.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    ids = [c.id for c in collections]
    counts = {}
    if ids:
        counts = dict(db.execute(
            select(CollectionItem.collection_id, func.count(CollectionItem.id))
            .where(CollectionItem.collection_id.in_(ids))
            .group_by(CollectionItem.collection_id)
        ).all())

    return {
        "collections": [collection_to_dict(c, counts.get(c.id, 0)) for c in collections],
        "pagination": _pagination(page, limit, total),
    }


def find_user_collections(user_id: int, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    page, limit = _page_args(params or {})
    with get_db_context() as db:
        query = select(Collection).where(Collection.user_id == user_id)
        return _collections_page(db, query, page, limit)


def search_user_collections(
    user_id: int,
    search: str,
    params: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    page, limit = _page_args(params or {})
    like = f"%{search.strip()}%"
    with get_db_context() as db:
        query = select(Collection).where(
            Collection.user_id == user_id,
            or_(Collection.name.ilike(like), Collection.description.ilike(like)),
        )
        return _collections_page(db, query, page, limit)


# =============================================================================
# MUTATIONS
# =============================================================================

def create_user(username: str, email: str) -> Dict[str, Any]:
    with get_db_context() as db:
        user = User(username=username, email=email)
        db.add(user)
        db.flush()
        return {"id": user.id, "username": user.username, "email": user.email}


def create_category(data: Mapping[str, Any]) -> Dict[str, Any]:
    with get_db_context() as db:
        category = Category(
            name=data["name"],
            description=data.get("description"),
            icon=data.get("icon"),
        )
        db.add(category)
        db.flush()
        logger.info(f"Created category {category.id}: {category.name}")
        return category_to_dict(category)


def create_asset(data: Mapping[str, Any]) -> Dict[str, Any]:
    with get_db_context() as db:
        asset = Asset(
            title=data["title"],
            description=data.get("description"),
            image_url=data.get("image_url"),
            tags=list(data.get("tags") or []),
            user_id=data["user_id"],
            category_id=data["category_id"],
            is_approved=bool(data.get("is_approved", False)),
            download_count=int(data.get("download_count", 0)),
        )
        db.add(asset)
        db.flush()
        logger.info(f"Created asset {asset.id}: {asset.title}")
        return asset_to_dict(asset)


def delete_asset(asset_id: int) -> bool:
    """Soft delete. Returns False if the asset does not exist."""
    with get_db_context() as db:
        asset = db.get(Asset, asset_id)
        if asset is None or not asset.is_active:
            return False
        asset.is_active = False
        logger.info(f"Deleted asset {asset_id}")
        return True


def create_collection(user_id: int, data: Mapping[str, Any]) -> Dict[str, Any]:
    with get_db_context() as db:
        collection = Collection(
            user_id=user_id,
            name=data["name"],
            description=data.get("description"),
            is_public=bool(data.get("is_public", False)),
        )
        db.add(collection)
        db.flush()
        return collection_to_dict(collection)
