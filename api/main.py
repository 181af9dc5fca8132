"""
Marketplace API application.

Wires the database, the cache layer and the routers together:
1. Creates tables and verifies the database connection
2. Connects the cache store (Redis if configured, local fallback otherwise)
3. Warms the category and stats keys
4. Serves the marketplace and cache management routers
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import List

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI

from marketplace.cache import PopularEntity, create_cache_services
from marketplace.database import check_db_connection, init_db, repository, reset_pool
from marketplace.utils.config import get_settings

from api.assets import router as assets_router
from api.cache import router as cache_router

# CacheConfig reads os.environ directly; make .env values visible to it
load_dotenv()


# Configure logging to stdout (hosting platforms treat stderr as errors)
logging.basicConfig(
    level=get_settings().LOG_LEVEL.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
    force=True,
)

logger = logging.getLogger(__name__)

# Quiet down chatty loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


async def popular_assets(limit: int) -> List[PopularEntity]:
    """Edge warm-up source: the most downloaded assets and their image URLs."""
    assets = await asyncio.to_thread(repository.find_popular_assets, limit)
    return [PopularEntity(entity_id=a["id"], source_url=a.get("image_url")) for a in assets]


async def reset_database_pool():
    await asyncio.to_thread(reset_pool)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    logger.info("Initializing database...")
    try:
        init_db()
        if not check_db_connection():
            logger.warning("Database connection check failed - continuing anyway")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")

    services = create_cache_services(
        categories_fn=repository.find_all_categories,
        stats_fn=repository.get_stats,
        popular_source=popular_assets,
        http_client=httpx.AsyncClient(timeout=settings.ORIGIN_FETCH_TIMEOUT),
        on_query_timeout=reset_database_pool,
    )
    app.state.cache = services

    await services.start(
        warm=settings.CACHE_WARM_ON_STARTUP,
        background=settings.CACHE_BACKGROUND_WARMING,
    )
    if settings.CDN_WARM_ON_STARTUP:
        await services.edge.warm_up(popular_assets, limit=services.config.edge_warm_limit)

    try:
        yield
    finally:
        await services.shutdown()


app = FastAPI(
    title=get_settings().APP_NAME,
    description="Asset marketplace API with distributed caching",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(assets_router)
app.include_router(cache_router)


@app.get("/api/health")
async def health_check():
    """Liveness probe; cache details live under /api/cache/health."""
    services = app.state.cache
    return {
        "status": "healthy",
        "cache_backend": services.store.backend.value,
        "cache_degraded": services.store.degraded,
    }


# ============================================================================
# RUN SERVER
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",
        port=8000,
        log_level=get_settings().LOG_LEVEL.lower(),
    )
