"""
Marketplace Database Layer

Usage:
    from marketplace.database import init_db, get_db_context, repository

    init_db()
    listing = repository.find_assets({"category": 5, "page": 1})
"""

# Models
from .models import (
    Base,
    User,
    Category,
    Asset,
    AssetDownload,
    Collection,
    CollectionItem,
)

# Session management
from .session import (
    get_database_url,
    create_db_engine,
    get_engine,
    configure_database,
    get_db_context,
    init_db,
    check_db_connection,
    reset_pool,
)

from . import repository

__all__ = [
    # Models
    "Base",
    "User",
    "Category",
    "Asset",
    "AssetDownload",
    "Collection",
    "CollectionItem",
    # Session
    "get_database_url",
    "create_db_engine",
    "get_engine",
    "configure_database",
    "get_db_context",
    "init_db",
    "check_db_connection",
    "reset_pool",
    # Repository
    "repository",
]
