"""
Marketplace Backend

Read-heavy asset marketplace API with:
1. A Redis-backed cache layer with an in-process fallback
2. Event-driven cache invalidation on every mutation
3. A bounded queue protecting the database from critical-query bursts
4. A disk-backed edge cache for asset images
"""

__version__ = "0.1.0"
