"""Normalized pipeline schemas - provider-agnostic representations.

These schemas are the canonical form of a CI run once it has crossed the
status normalizer. Raw provider payloads never travel past the adapters.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ProviderKind(str, Enum):
    """Supported CI providers."""

    TEKTON = "tekton"
    GITHUB_ACTIONS = "github_actions"
    GITLAB_CI = "gitlab_ci"
    JENKINS = "jenkins"
    AZURE = "azure"


class PipelineStatus(str, Enum):
    """Canonical run status shared by every provider."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in (PipelineStatus.PENDING, PipelineStatus.RUNNING)


TERMINAL_STATUSES = frozenset(
    {PipelineStatus.SUCCESS, PipelineStatus.FAILURE, PipelineStatus.CANCELLED}
)


class EventType(str, Enum):
    """Canonical trigger type. Manual and scheduled triggers map to neither."""

    PUSH = "push"
    PULL_REQUEST = "pull_request"


class Pipeline(BaseModel):
    """
    Snapshot of a single CI run.

    A non-terminal snapshot is stale the moment it is returned; callers that
    need progress must fetch it again through the adapter.
    """

    model_config = ConfigDict(frozen=True)

    provider: ProviderKind = Field(..., description="CI system that owns the run")
    id: str = Field(..., description="Provider-native run identifier", examples=["1234567"])
    repository_name: str = Field(
        ...,
        description="Repository the run belongs to; routes later cancel/get calls",
        examples=["my-component", "my-component-gitops"],
    )
    status: PipelineStatus = Field(..., description="Normalized status")

    build_number: int | None = Field(
        default=None,
        description="Build number for providers that split job and build",
    )
    name: str | None = Field(default=None, description="Run or workflow name")
    job_name: str | None = Field(default=None, description="Jenkins job name")
    url: str | None = Field(default=None, description="Link to the run in the provider UI")
    sha: str | None = Field(default=None, description="Head commit of the run")
    branch: str | None = Field(default=None, description="Source branch or ref")
    event_type: EventType | None = Field(default=None, description="Canonical trigger")

    created_at: datetime | None = Field(default=None, description="Creation timestamp")
    start_time: datetime | None = None
    end_time: datetime | None = None

    finished: bool = Field(
        default=False,
        description="Provider-level completion signal used by cancellation filters",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def display_name(self) -> str:
        if self.provider == ProviderKind.JENKINS and self.job_name:
            return f"{self.job_name} #{self.build_number}"
        return self.name or self.id


class PullRequestRef(BaseModel):
    """Identifies the change a run is expected for."""

    model_config = ConfigDict(frozen=True)

    repository: str = Field(..., description="Repository name", examples=["my-component"])
    sha: str = Field(default="", description="Head commit SHA")
    pull_number: int = Field(
        default=0,
        ge=0,
        description="Pull request number; 0 means any run, without sha filtering",
    )


class RunFilter(BaseModel):
    """Server/client side filters accepted by ``list_runs``."""

    model_config = ConfigDict(frozen=True)

    sha: str | None = None
    branch: str | None = None
    event: EventType | None = None
    status: PipelineStatus | None = None
    since: datetime | None = None
    page_limit: int | None = Field(
        default=None,
        ge=1,
        description="Maximum number of runs to collect; None pages exhaustively",
    )
