"""
SQLAlchemy Models for the Marketplace

The backing store behind the cache layer: assets, their categories,
the users who upload them, and user-scoped collections.

Column types are kept portable so the same models run on PostgreSQL
in production and SQLite in development and tests.
"""

from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Text,
    ForeignKey, Index, UniqueConstraint, JSON,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


# =============================================================================
# USERS AND TAXONOMY
# =============================================================================

class User(Base):
    """Marketplace user (uploader and collector)."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(100), unique=True, nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    avatar_url = Column(String(500))
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    assets = relationship("Asset", back_populates="user")
    collections = relationship("Collection", back_populates="user", cascade="all, delete-orphan")


class Category(Base):
    """Asset category."""
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text)
    icon = Column(String(100))

    created_at = Column(DateTime, default=datetime.utcnow)

    assets = relationship("Asset", back_populates="category")


# =============================================================================
# ASSETS
# =============================================================================

class Asset(Base):
    """An uploaded marketplace asset."""
    __tablename__ = "assets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    image_url = Column(String(1000))
    tags = Column(JSON, default=list)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False)

    is_approved = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    download_count = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="assets")
    category = relationship("Category", back_populates="assets")
    downloads = relationship("AssetDownload", back_populates="asset", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_assets_listing", "is_active", "is_approved", "created_at"),
        Index("idx_assets_category", "category_id", "is_active", "is_approved"),
        Index("idx_assets_downloads", "download_count"),
    )


class AssetDownload(Base):
    """One download of an asset."""
    __tablename__ = "asset_downloads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    asset_id = Column(Integer, ForeignKey("assets.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    downloaded_at = Column(DateTime, default=datetime.utcnow)

    asset = relationship("Asset", back_populates="downloads")


# =============================================================================
# COLLECTIONS (user-scoped)
# =============================================================================

class Collection(Base):
    """A user's named set of assets."""
    __tablename__ = "collections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    is_public = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="collections")
    items = relationship("CollectionItem", back_populates="collection", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_collections_user", "user_id", "updated_at"),
    )


class CollectionItem(Base):
    __tablename__ = "collection_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    collection_id = Column(Integer, ForeignKey("collections.id", ondelete="CASCADE"), nullable=False)
    asset_id = Column(Integer, ForeignKey("assets.id", ondelete="CASCADE"), nullable=False)
    added_at = Column(DateTime, default=datetime.utcnow)

    collection = relationship("Collection", back_populates="items")
    asset = relationship("Asset")

    __table_args__ = (
        UniqueConstraint("collection_id", "asset_id", name="uq_collection_asset"),
    )
