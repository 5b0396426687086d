"""
Main FastAPI application.

Idempotent processing API with:
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from processing_core import __version__
from processing_core.config import Settings, get_settings
from processing_core.database.connection import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from processing_core.monitoring.logging import setup_logging

from .dependencies import build_services
from .routes import (
    admin_router,
    cron_router,
    job_router,
    monitoring_router,
    redemption_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Settings are resolved when the app starts, so importing this module
    does not require a configured environment.

    Args:
        settings: Settings override (tests); defaults to get_settings()

    Returns:
        FastAPI: Configured application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Builds the engine and services on startup, disposes them on shutdown.
        """
        app_settings = settings or get_settings()
        setup_logging(app_settings)

        logger.info(
            "application_startup",
            app_name=app_settings.app_name,
            env=app_settings.app_env,
        )

        engine = create_engine_from_settings(app_settings)
        try:
            await init_db(engine)
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

        services = build_services(app_settings, create_session_factory(engine))
        app.state.services = services

        yield

        logger.info("application_shutdown")
        try:
            await services.close()
            await close_db(engine)
            logger.info("database_connections_closed")
        except Exception as e:
            logger.error("shutdown_error", error=str(e))

    app = FastAPI(
        title="Processing Core",
        description=(
            "Idempotent event and work processing: webhook event ledger, "
            "background job queue and one-time redemption ledger."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    app.include_router(webhook_router)
    app.include_router(job_router)
    app.include_router(cron_router)
    app.include_router(redemption_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": "processing-core",
            "version": __version__,
            "status": "operational",
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "processing_core.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
