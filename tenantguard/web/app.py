"""FastAPI application factory."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog
from fastapi import FastAPI

from tenantguard import __version__
from tenantguard.config.logging import setup_logging
from tenantguard.config.settings import Settings, get_settings
from tenantguard.storage.database import get_engine, init_db
from tenantguard.web.dependencies import build_services
from tenantguard.web.errors import install_error_handlers
from tenantguard.web.health import check_health
from tenantguard.web.middleware import (
    RateLimitMiddleware,
    RequestIDMiddleware,
    TenantContextMiddleware,
)
from tenantguard.web.routes.security import router as security_router
from tenantguard.web.routes.tenants import router as tenants_router

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)


def create_app(settings: Settings | None = None, db_engine: AsyncEngine | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    setup_logging(
        log_level=settings.log_level,
        json_output=not settings.debug,
        security_log_level=settings.security_log_level,
    )
    db_engine = db_engine or get_engine()

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if not settings.use_database:
            # Development mode: schema from the models, events kept in memory
            await init_db(db_engine)
        yield

    app = FastAPI(
        title="tenantguard",
        description="Tenant isolation, authorization and security audit",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = build_services(settings, db_engine)
    install_error_handlers(app)

    # Middleware (order matters: last added runs first)
    app.add_middleware(TenantContextMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    app.add_middleware(RequestIDMiddleware)

    @app.get("/api/health")
    async def health_check() -> dict[str, object]:
        return await check_health(db_engine)

    app.include_router(tenants_router)
    app.include_router(security_router)

    logger.info("app_created", base_domain=settings.base_domain)
    return app
