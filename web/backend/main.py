"""
Bulk Actions Service - FastAPI Application.

Hosts the REST API, the WebSocket progress endpoint, the queue workers
and the scheduler for bulk actions.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from shared.logger import setup_logging
from web.backend.core.config import get_web_settings
from web.backend.core.rate_limit import configure_limiter, limiter
from web.backend.api.v2 import bulk_actions, bulk_status, websocket
from web.backend.schemas.common import HealthResponse

SERVICE_NAME = "bulk-actions"
VERSION = "1.0.0"

setup_logging()
logger = logging.getLogger("web")


# ── FastAPI app ───────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_web_settings()
    logger.info("🚀 Bulk actions API starting on %s:%s", settings.host, settings.port)

    from shared.database import db_service

    # Connect to database and start the pipeline
    database_url = os.environ.get("DATABASE_URL") or settings.database_url
    if database_url:
        connected = await db_service.connect(database_url=database_url)
        if connected:
            from web.backend.core.bulk.runtime import build_runtime
            runtime = build_runtime(settings, db_service)
            await runtime.start()
            app.state.bulk = runtime
        else:
            logger.warning("Database connection failed, bulk endpoints unavailable")
    else:
        logger.info("No DATABASE_URL, bulk endpoints unavailable")

    # Upgrade rate limiter to Redis backend (optional)
    configure_limiter(settings.redis_url)

    yield

    # Shutdown
    runtime = getattr(app.state, "bulk", None)
    if runtime is not None:
        try:
            await runtime.stop()
        except Exception as e:
            logger.warning("Bulk pipeline shutdown error: %s", e)
        app.state.bulk = None
    if db_service.is_connected:
        await db_service.disconnect()
    logger.info("👋 Bulk actions API stopped")


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_web_settings()

    app = FastAPI(
        title="Bulk Actions API",
        description="Asynchronous bulk mutation of large entity sets",
        version=VERSION,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
        lifespan=lifespan,
        redirect_slashes=False,
    )
    app.state.bulk = None

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # CORS middleware (restricted methods and headers)
    # Prevent insecure "*" with allow_credentials=True
    cors_origins = [o for o in settings.cors_origins if o != "*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Account-Id"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    # Include routers (status before the catch-all /{action_id})
    app.include_router(bulk_status.router, prefix="/api/v2/bulk-actions/status", tags=["bulk-actions-status"])
    app.include_router(bulk_actions.router, prefix="/api/v2/bulk-actions", tags=["bulk-actions"])
    app.include_router(websocket.router, prefix="/api/v2", tags=["websocket"])

    # Health check endpoint
    @app.get("/api/v2/health", tags=["health"], response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint."""
        from shared.database import db_service

        runtime = getattr(request.app.state, "bulk", None)
        services = {
            "database": db_service.is_connected,
            "workers": sum(1 for w in runtime.workers if w.is_running) if runtime else 0,
            "scheduler": bool(runtime and runtime.scheduler and runtime.scheduler.is_running),
        }
        return {
            "status": "ok" if runtime is not None else "degraded",
            "version": VERSION,
            "service": SERVICE_NAME,
            "services": services,
        }

    # Root endpoint
    @app.get("/", tags=["health"])
    async def root():
        """Root endpoint."""
        return {
            "service": SERVICE_NAME,
            "version": VERSION,
            "docs": "/api/docs" if settings.debug else None,
        }

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_web_settings()
    uvicorn.run(
        "web.backend.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        ws="websockets",
    )
