"""
Fiscalismia - FastAPI Application

Main application entry point. Creates the FastAPI app, wires up routers and
initializes the database pool on startup.

Run with: uvicorn fiscalismia.main:app --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .core.config import API_ADDRESS, configure_logging, get_settings
from .core.errors import setup_error_handlers
from .core.middleware import RateLimitMiddleware, RequestLoggingMiddleware, default_rate_limits
from .db import check_db_ready, close_db_pool, init_db_pool
from .routers import admin_router, health_router, root_router

# Configure logging before anything else
configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    - Startup: Initialize database pool (degraded mode on failure)
    - Shutdown: Close database pool
    """
    settings = get_settings()
    logger.info(f"Starting Fiscalismia backend v{__version__} ({settings.ENVIRONMENT})")

    await init_db_pool(settings)
    ready, detail = await check_db_ready()
    if ready:
        logger.info("Database ready")
    else:
        logger.warning(f"Starting in degraded mode, database not ready: {detail}")

    yield

    logger.info("Shutting down Fiscalismia backend...")
    await close_db_pool()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """
    Application factory.

    Middleware added last runs first, so CORS is registered last and wraps
    rate limiting and request logging.
    """
    settings = get_settings()

    app = FastAPI(
        title="Fiscalismia Backend",
        description="Personal finance REST API and raw data ETL orchestration.",
        version=__version__,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
        lifespan=lifespan,
    )

    app.add_middleware(RequestLoggingMiddleware)

    if settings.is_production:
        app.add_middleware(
            RateLimitMiddleware,
            configs=default_rate_limits(settings.RATE_LIMIT_MULTIPLICATOR),
        )
        logger.info("Rate limiting enabled for production")

    logger.info(f"[CORS] Allowed origins: {settings.cors_allowed_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
    )

    setup_error_handlers(app)

    app.include_router(root_router)
    app.include_router(health_router, prefix=API_ADDRESS)
    app.include_router(admin_router, prefix=API_ADDRESS)

    logger.info(f"FastAPI app created: {app.title}")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "fiscalismia.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.is_development,
        log_level=settings.LOG_LEVEL.lower(),
    )
