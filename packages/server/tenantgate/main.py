"""
TenantGate API Server

Entry point for the FastAPI application.
"""

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from tenantgate.api.v1 import router as api_v1_router
from tenantgate.core.config import get_settings
from tenantgate.core.database import async_session_factory
from tenantgate.core.errors import AccessControlError, access_control_error_handler
from tenantgate.core.logging_config import configure_logging
from tenantgate.core.redis import close_redis, get_redis

settings = get_settings()
log = structlog.get_logger()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="TenantGate",
        description="Hierarchical multi-tenant authorization service.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.add_exception_handler(AccessControlError, access_control_error_handler)

    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness probes."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check():
        """Readiness check: database and Redis both answer."""
        checks = {}
        try:
            async with async_session_factory() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception as exc:
            log.warning("ready.database_failed", error=str(exc))
            checks["database"] = "unavailable"
        try:
            client = await get_redis()
            await client.ping()
            checks["redis"] = "ok"
        except Exception as exc:
            log.warning("ready.redis_failed", error=str(exc))
            checks["redis"] = "unavailable"

        ready = all(v == "ok" for v in checks.values())
        return {"status": "ready" if ready else "degraded", "checks": checks}

    @app.on_event("startup")
    async def on_startup():
        configure_logging(settings.log_level, settings.log_format)
        log.info("TenantGate starting", debug=settings.debug)

    @app.on_event("shutdown")
    async def on_shutdown():
        log.info("TenantGate shutting down")
        await close_redis()

    return app


app = create_app()
