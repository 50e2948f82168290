"""FastAPI application entry point.

This is the main application module that configures and starts
the Pipeline Control Plane API server.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from pipeline_control_plane import __version__
from pipeline_control_plane.api.argocd import router as argocd_router
from pipeline_control_plane.api.health import router as health_router
from pipeline_control_plane.api.metrics import router as metrics_router
from pipeline_control_plane.api.pipelines import router as pipelines_router
from pipeline_control_plane.config import get_settings
from pipeline_control_plane.control_plane import ControlPlane
from pipeline_control_plane.core.logging import setup_logging
from pipeline_control_plane.errors import ConfigurationError, ControlPlaneError
from pipeline_control_plane.observability.middleware import (
    CorrelationIdMiddleware,
    PrometheusMetricsMiddleware,
)
from pipeline_control_plane.providers import register_all_providers

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    setup_logging()
    settings = get_settings()
    logger.info(
        "Pipeline Control Plane starting",
        extra={
            "version": __version__,
            "environment": settings.environment,
        },
    )

    if getattr(app.state, "control_plane", None) is None:
        app.state.control_plane = ControlPlane(settings)

    yield

    # Shutdown
    logger.info("Pipeline Control Plane shutting down")
    await app.state.control_plane.close()
    logger.info("Pipeline Control Plane shutdown complete")


def create_app() -> FastAPI:
    """
    Application factory for creating the FastAPI app.

    Returns:
        Configured FastAPI application
    """
    settings = get_settings()
    register_all_providers()

    app = FastAPI(
        title="Pipeline Control Plane",
        description="Uniform control over CI providers and ArgoCD deployments",
        version=__version__,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        openapi_url="/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(PrometheusMetricsMiddleware)
    app.add_middleware(CorrelationIdMiddleware)

    # Exception handlers
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        """Handle Pydantic validation errors."""
        logger.warning(
            "Request validation failed",
            extra={"errors": exc.errors(), "path": request.url.path},
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": exc.errors()},
        )

    @app.exception_handler(ConfigurationError)
    async def configuration_exception_handler(
        request: Request,
        exc: ConfigurationError,
    ) -> JSONResponse:
        logger.error(
            "Configuration error",
            extra={"error": exc.message, "path": request.url.path},
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": exc.message, "error": "configuration_error"},
        )

    @app.exception_handler(ControlPlaneError)
    async def control_plane_exception_handler(
        request: Request,
        exc: ControlPlaneError,
    ) -> JSONResponse:
        logger.error(
            "Upstream provider error",
            extra={
                "error": exc.message,
                "status_code": exc.status_code,
                "path": request.url.path,
            },
        )
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={
                "detail": exc.message,
                "error": type(exc).__name__,
                "upstream_status": exc.status_code,
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(pipelines_router, prefix=settings.api_prefix)
    app.include_router(argocd_router, prefix=settings.api_prefix)

    # Root endpoint
    @app.get("/")
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": "Pipeline Control Plane",
            "version": __version__,
            "docs": "/docs" if not settings.is_production else None,
        }

    return app


# Create the application instance
app = create_app()


def run() -> None:
    """Serve the API with uvicorn using the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "pipeline_control_plane.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_config=None,
    )


if __name__ == "__main__":
    run()
