"""FastAPI application factory."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI

from deedboard.api.middleware import setup_middleware
from deedboard.core.config import Settings
from deedboard.core.database import close_pool, init_pool
from deedboard.core.logging import setup_logging
from deedboard.services.engine import Engine, build_engine

logger = logging.getLogger(__name__)


def _start_engine(settings: Settings) -> tuple[Engine, Any]:
    """Build the engine; outside production a missing Oracle falls back to memory."""
    if settings.is_testing or settings.store_backend == "memory":
        return build_engine(settings, backend="memory"), None
    try:
        pool = init_pool(settings)
    except Exception:
        if settings.is_production:
            raise
        logger.warning(
            "Could not connect to Oracle: API will start on the in-memory store. "
            "Totals will not survive a restart."
        )
        return build_engine(settings, backend="memory"), None
    return build_engine(settings, pool=pool), pool


def create_app(settings: Settings | None = None, engine: Engine | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Pass *engine* to serve a prebuilt engine (tests, embedding).
    """
    if settings is None:
        settings = Settings()

    if not settings.is_testing:
        setup_logging(level=settings.log_level, log_format=settings.log_format)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "Starting Deedboard API (env=%s, timezone=%s)",
            settings.app_env,
            settings.reference_timezone,
        )
        if getattr(app.state, "engine", None) is None:
            app.state.engine, app.state.db_pool = _start_engine(settings)
        yield
        logger.info("Shutting down Deedboard API")
        if app.state.db_pool is not None:
            close_pool()

    application = FastAPI(
        title="Deedboard API",
        description="Deed points aggregation and leaderboards",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    application.state.settings = settings
    application.state.engine = engine
    application.state.db_pool = None

    setup_middleware(application)
    _register_routes(application)
    return application


def _register_routes(app: FastAPI) -> None:
    """Register all API route modules."""
    from deedboard.api.routes.admin import router as admin_router
    from deedboard.api.routes.deeds import router as deeds_router
    from deedboard.api.routes.health import router as health_router
    from deedboard.api.routes.leaderboards import router as leaderboards_router
    from deedboard.api.routes.users import router as users_router

    app.include_router(health_router, tags=["health"])
    app.include_router(deeds_router)
    app.include_router(leaderboards_router)
    app.include_router(users_router)
    app.include_router(admin_router)


# Module-level app instance for uvicorn (uvicorn deedboard.main:app)
app = create_app()
