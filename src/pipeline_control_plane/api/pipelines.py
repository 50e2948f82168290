"""Pipeline endpoints: match, wait, logs and batch cancellation."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from pipeline_control_plane.api.deps import get_control_plane
from pipeline_control_plane.control_plane import ControlPlane
from pipeline_control_plane.schemas.cancellation import CancelOptions, CancelResult
from pipeline_control_plane.schemas.pipeline import (
    EventType,
    Pipeline,
    PipelineStatus,
    ProviderKind,
    PullRequestRef,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pipelines", tags=["pipelines"])


class MatchRequest(BaseModel):
    """Find the run triggered by a pull request or push."""

    provider: ProviderKind
    repository: str = Field(..., min_length=1)
    sha: str = ""
    pull_number: int = Field(default=0, ge=0)
    desired_status: PipelineStatus = PipelineStatus.UNKNOWN
    event_type: Optional[EventType] = None


class MatchResponse(BaseModel):
    found: bool
    pipeline: Optional[Pipeline] = None


class WaitRequest(BaseModel):
    pipeline: Pipeline
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class WaitResponse(BaseModel):
    pipeline_id: str
    status: PipelineStatus


class LogsRequest(BaseModel):
    pipeline: Pipeline


class LogsResponse(BaseModel):
    pipeline_id: str
    logs: str


class CancelRequest(BaseModel):
    """Cancel active runs of a component and its GitOps repository."""

    provider: ProviderKind
    component: str = Field(..., min_length=1)
    exclude_patterns: list[str] = Field(default_factory=list)
    include_completed: bool = False
    event_type: Optional[EventType] = None
    branch: Optional[str] = None
    concurrency: Optional[int] = Field(default=None, ge=1)
    dry_run: bool = False


@router.post("/match", response_model=MatchResponse)
async def match_pipeline(
    request: MatchRequest,
    control_plane: ControlPlane = Depends(get_control_plane),
) -> MatchResponse:
    """Return the latest run matching the reference, if any."""
    ref = PullRequestRef(
        repository=request.repository,
        sha=request.sha,
        pull_number=request.pull_number,
    )
    pipeline = await control_plane.get_pipeline(
        request.provider, ref, request.desired_status, request.event_type
    )
    return MatchResponse(found=pipeline is not None, pipeline=pipeline)


@router.post("/wait", response_model=WaitResponse)
async def wait_for_pipeline(
    request: WaitRequest,
    control_plane: ControlPlane = Depends(get_control_plane),
) -> WaitResponse:
    """Block until the run is terminal; ``unknown`` on timeout."""
    status = await control_plane.wait_for_terminal(request.pipeline, request.timeout_seconds)
    return WaitResponse(pipeline_id=request.pipeline.id, status=status)


@router.post("/logs", response_model=LogsResponse)
async def pipeline_logs(
    request: LogsRequest,
    control_plane: ControlPlane = Depends(get_control_plane),
) -> LogsResponse:
    logs = await control_plane.get_logs(request.pipeline)
    return LogsResponse(pipeline_id=request.pipeline.id, logs=logs)


@router.post("/cancel", response_model=CancelResult)
async def cancel_pipelines(
    request: CancelRequest,
    control_plane: ControlPlane = Depends(get_control_plane),
) -> CancelResult:
    options = CancelOptions(
        exclude_patterns=request.exclude_patterns,
        include_completed=request.include_completed,
        event_type=request.event_type,
        branch=request.branch,
        concurrency=request.concurrency or control_plane.settings.cancel_concurrency,
        dry_run=request.dry_run,
    )
    logger.info(
        f"Cancel requested for {request.component}",
        extra={"provider": request.provider.value, "dry_run": request.dry_run},
    )
    return await control_plane.cancel_all(request.provider, request.component, options)
