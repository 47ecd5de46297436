"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from hoodie.config import get_settings
from hoodie.database import close_db, init_db
from hoodie.health.router import router as health_router
from hoodie.middleware import setup_middleware
from hoodie.redis_client import close_redis, init_redis
from hoodie.xp.router import router as xp_router

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Open the database engine and Redis pool for the life of the process."""
    settings = get_settings()
    await init_db(settings.database_url)
    if settings.redis_url:
        await init_redis(settings.redis_url)
    logger.info("app_started", environment=settings.environment, version=settings.app_version)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Hoodie Academy XP API",
        description="XP awards, daily caps and leveling for Hoodie Academy",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(xp_router)

    return app


app = create_app()
