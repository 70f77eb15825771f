"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from prophezeiung.badges.catalog import get_catalog
from prophezeiung.badges.router import admin_router, router as badges_router
from prophezeiung.badges.service import sync_catalog
from prophezeiung.config import get_settings
from prophezeiung.database import close_db, get_session_factory, init_db
from prophezeiung.health.router import router as health_router
from prophezeiung.middleware import setup_middleware
from prophezeiung.redis_client import close_redis, init_redis

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle.

    A malformed catalog raises CatalogLoadError here and aborts startup.
    """
    settings = get_settings()
    catalog = get_catalog()

    await init_db(settings.database_url)
    await init_redis(settings.redis_url)

    async with get_session_factory()() as db:
        await sync_catalog(db, catalog)
    logger.info("Badge service started with %d badges", len(catalog))

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Prophezeiung Badge Service",
        description="Badge evaluation and award engine for Prophezeiung",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(badges_router)
    app.include_router(admin_router)

    return app


app = create_app()
