"""Site License Gateway FastAPI application — entry point for the API server."""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.settings import get_settings
from src.api.middleware import register_error_handlers
from src.core.logging import get_logger, setup_logging
from src.data.db import close_engine, get_engine

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup/shutdown lifecycle — open the DB engine when Postgres backs the store."""
    settings = get_settings()
    log.info("api_starting", env=settings.gateway_env, store=settings.store_backend)
    if settings.store_backend == "postgres":
        await get_engine()
    yield
    await close_engine()
    log.info("api_shutdown")


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    settings = get_settings()
    setup_logging()

    app = FastAPI(
        title="Site License Gateway",
        description="License, quota and credit gateway for the WordPress generation plugin",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    # Register routers
    from src.api.routes.auth import router as auth_router
    from src.api.routes.credits import router as credits_router
    from src.api.routes.generate import router as generate_router
    from src.api.routes.health import router as health_router
    from src.api.routes.license import router as license_router
    from src.api.routes.organization import router as organization_router
    from src.api.routes.usage import router as usage_router

    app.include_router(health_router, prefix="/api")
    app.include_router(auth_router, prefix="/api")
    app.include_router(generate_router, prefix="/api")
    app.include_router(usage_router, prefix="/api")
    app.include_router(license_router, prefix="/api")
    app.include_router(credits_router, prefix="/api")
    app.include_router(organization_router, prefix="/api")

    return app


app = create_app()
