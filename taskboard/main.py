"""
Taskboard API Server

Entry point for the FastAPI application.
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskboard.api.v1 import router as api_v1_router
from taskboard.api.v1.auth import router as auth_router
from taskboard.core.config import get_settings
from taskboard.core.database import Database
from taskboard.core.errors import StoreUnavailable
from taskboard.core.logging import configure_logging
from taskboard.core.middleware import CSRFMiddleware, SecurityHeadersMiddleware
from taskboard.core.notifications import NotificationDispatcher, Notifier

settings = get_settings()
log = structlog.get_logger()


def create_app(db: Database | None = None, notifier: Notifier | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``db`` defaults to engines built from settings; tests pass their own.
    """
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="Taskboard",
        description="Multi-tenant task management: tenant isolation and membership authority.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.db = db or Database.from_settings(settings)
    app.state.notifications = NotificationDispatcher(notifier)

    # Middleware (last added runs outermost)
    app.add_middleware(SecurityHeadersMiddleware, hsts=not settings.debug)
    app.add_middleware(
        CSRFMiddleware,
        session_cookie=settings.session_cookie_name,
        csrf_cookie=settings.csrf_cookie_name,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-CSRF-Token"],
    )

    # Auth routes (not tenant-scoped)
    app.include_router(auth_router, prefix="/auth", tags=["Authentication"])

    # API routes
    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness probes."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check():
        """Readiness check: the application database answers."""
        try:
            await app.state.db.ping()
        except StoreUnavailable:
            raise
        except Exception as exc:
            log.warning("ready.database_unreachable", error=str(exc))
            raise StoreUnavailable("Database not ready") from exc
        return {"status": "ready"}

    @app.on_event("startup")
    async def on_startup():
        log.info("taskboard.starting", debug=settings.debug)

    @app.on_event("shutdown")
    async def on_shutdown():
        log.info("taskboard.shutting_down")
        await app.state.notifications.drain()
        await app.state.db.dispose()

    return app


app = create_app()
