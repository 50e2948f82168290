"""Health check endpoints for monitoring and load balancer probes."""
import logging
from typing import Literal

from fastapi import APIRouter
from pydantic import BaseModel

from pipeline_control_plane.providers import ProviderRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthStatus(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy", "degraded"]
    version: str
    providers: list[str]


@router.get("/health", response_model=HealthStatus)
async def health_check() -> HealthStatus:
    """
    Basic health check endpoint.

    Used by load balancers and container orchestrators.
    Returns 200 if the service is running.
    """
    from pipeline_control_plane import __version__

    return HealthStatus(
        status="healthy",
        version=__version__,
        providers=sorted(kind.value for kind in ProviderRegistry.list_registered()),
    )


@router.get("/health/live")
async def liveness_check() -> dict:
    """
    Liveness check - minimal endpoint.

    Used by Kubernetes liveness probes. Returns 200 if process is alive.
    """
    return {"alive": True}
