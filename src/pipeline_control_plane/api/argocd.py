"""ArgoCD application endpoints."""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from pipeline_control_plane.api.deps import get_control_plane
from pipeline_control_plane.control_plane import ControlPlane
from pipeline_control_plane.schemas.argocd import ApplicationSyncResult, SyncOptions, SyncWaitResult

router = APIRouter(prefix="/argocd", tags=["argocd"])


class WaitSyncedRequest(BaseModel):
    revision: Optional[str] = Field(default=None, description="Expected sync revision")
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    namespace: Optional[str] = None


class SyncRequest(BaseModel):
    options: SyncOptions = Field(default_factory=SyncOptions)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    namespace: Optional[str] = None


class ApplicationSummary(BaseModel):
    name: str
    summary: str


@router.get("/applications/{name}", response_model=ApplicationSummary)
async def describe_application(
    name: str,
    namespace: Optional[str] = None,
    control_plane: ControlPlane = Depends(get_control_plane),
) -> ApplicationSummary:
    summary = await control_plane.describe_application(name, namespace)
    return ApplicationSummary(name=name, summary=summary)


@router.post("/applications/{name}/wait", response_model=SyncWaitResult)
async def wait_for_synced(
    name: str,
    request: WaitSyncedRequest,
    control_plane: ControlPlane = Depends(get_control_plane),
) -> SyncWaitResult:
    """Wait until the application is Synced and Healthy at the revision."""
    return await control_plane.wait_for_synced(
        name,
        request.revision,
        request.timeout_seconds,
        namespace=request.namespace,
    )


@router.post("/applications/{name}/sync", response_model=ApplicationSyncResult)
async def sync_application(
    name: str,
    request: SyncRequest,
    control_plane: ControlPlane = Depends(get_control_plane),
) -> ApplicationSyncResult:
    """Trigger a sync through the ArgoCD CLI and monitor it."""
    return await control_plane.sync_application(
        name,
        request.options,
        request.timeout_seconds,
        namespace=request.namespace,
    )
