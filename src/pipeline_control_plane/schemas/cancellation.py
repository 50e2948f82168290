"""Schemas for batch pipeline cancellation."""

import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pipeline_control_plane.schemas.pipeline import EventType, PipelineStatus

ACCOUNTING_ERROR_ID = "ACCOUNTING_ERROR"

CancelOutcome = Literal["cancelled", "failed", "skipped"]


class CancelOptions(BaseModel):
    """Filtering and behaviour knobs for ``cancel_all``."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    exclude_patterns: tuple[re.Pattern[str], ...] = Field(
        default=(),
        description="Runs whose name or branch matches any pattern are left alone",
        examples=[["^prod-", "^release/"]],
    )
    include_completed: bool = Field(
        default=False,
        description="Also submit runs the provider already reports as finished",
    )
    event_type: EventType | None = None
    branch: str | None = None
    concurrency: int = Field(default=10, ge=1, description="Cancellations in flight per batch")
    dry_run: bool = Field(default=False, description="Report what would be cancelled")

    @field_validator("exclude_patterns", mode="before")
    @classmethod
    def compile_patterns(cls, value: object) -> tuple[re.Pattern[str], ...]:
        if value is None:
            return ()
        if isinstance(value, (str, re.Pattern)):
            value = [value]
        compiled = []
        for pattern in value:  # type: ignore[union-attr]
            if isinstance(pattern, re.Pattern):
                compiled.append(pattern)
            else:
                try:
                    compiled.append(re.compile(str(pattern)))
                except re.error as exc:
                    raise ValueError(f"Invalid exclude pattern {pattern!r}: {exc}") from exc
        return tuple(compiled)


class PipelineCancelDetail(BaseModel):
    """Outcome for a single run that reached the batching stage."""

    model_config = ConfigDict(frozen=True)

    pipeline_id: str
    name: str
    status: PipelineStatus = Field(..., description="Status before the cancellation attempt")
    result: CancelOutcome
    reason: str | None = None
    event_type: EventType | None = None
    branch: str | None = None
    repository_name: str | None = None


class CancelError(BaseModel):
    """Classified failure recorded for a run or for the engine itself."""

    model_config = ConfigDict(frozen=True)

    pipeline_id: str
    message: str
    status_code: int | None = None
    provider_error_code: str | None = None


class CancelResult(BaseModel):
    """Immutable snapshot returned by ``cancel_all``.

    ``cancelled + failed + skipped == total`` holds unless an
    ``ACCOUNTING_ERROR`` entry is present in ``errors``.
    """

    model_config = ConfigDict(frozen=True)

    total: int = 0
    cancelled: int = 0
    failed: int = 0
    skipped: int = 0
    details: tuple[PipelineCancelDetail, ...] = ()
    errors: tuple[CancelError, ...] = ()

    @property
    def is_balanced(self) -> bool:
        return self.cancelled + self.failed + self.skipped == self.total

    @property
    def has_accounting_error(self) -> bool:
        return any(error.pipeline_id == ACCOUNTING_ERROR_ID for error in self.errors)
