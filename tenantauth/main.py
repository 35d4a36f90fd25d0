"""FastAPI application factory for the tenantauth service."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from tenantauth.api import auth, models, workspaces
from tenantauth.api.errors import register_exception_handlers
from tenantauth.config import get_settings
from tenantauth.context import AppContext
from tenantauth.db.models import Base
from tenantauth.logging_config import configure_logging
from tenantauth.middleware.auth import AuthMiddleware
from tenantauth.middleware.timeout import RequestTimeoutMiddleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: optional schema creation + Redis. Shutdown: release connections."""
    context: AppContext = app.state.context
    if context.settings.auto_create_schema:
        async with context.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ensured")

    await context.connect_redis()

    yield

    await context.close()


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        context: Pre-built application context. Built from environment
            settings (and logging configured) when omitted.

    Raises:
        ConfigurationError: If the settings are unusable, e.g. no JWT secret.
    """
    if context is None:
        settings = get_settings()
        configure_logging(settings.log_level, settings.log_format)
        context = AppContext.build(settings)
    settings = context.settings

    app = FastAPI(
        title="tenantauth",
        version="1.0.0",
        description="Tenant-scoped authentication, workspaces and model access.",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    app.state.context = context

    register_exception_handlers(app)

    # Last added runs first: CORS -> timeout -> auth -> routes.
    app.add_middleware(AuthMiddleware)
    app.add_middleware(
        RequestTimeoutMiddleware, timeout_seconds=settings.request_timeout_seconds
    )
    origins = settings.get_cors_origins()
    allow_credentials = origins != ["*"]
    if not allow_credentials:
        logger.warning("CORS_ORIGINS=* disables credentials; use exact origins in production")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(auth.router, prefix="/auth", tags=["auth"])
    app.include_router(workspaces.router, prefix="/workspaces", tags=["workspaces"])
    app.include_router(models.workspace_router, prefix="/workspaces", tags=["models"])
    app.include_router(models.router, prefix="/models", tags=["models"])

    @app.get("/health")
    async def health():
        database_ok = True
        try:
            async with context.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception:
            logger.warning("Health check: database unreachable")
            database_ok = False

        redis_ok = False
        if context.redis is not None:
            try:
                await context.redis.ping()
                redis_ok = True
            except Exception:
                logger.warning("Health check: redis unreachable")

        return {
            "status": "ok" if database_ok else "degraded",
            "version": "1.0.0",
            "database": "connected" if database_ok else "unavailable",
            "redis": "connected" if redis_ok else "unavailable",
        }

    return app


app = create_app()
