"""Batch cancellation of a component's CI runs with strict accounting.

Phases:
1. Fetch runs of the source and ``<component>-gitops`` repositories
2. Filter (completed, exclude patterns, event type, branch)
3. Cancel in serial batches of ``concurrency`` concurrent requests
4. Account one detail per surviving run, in input order
5. Audit ``cancelled + failed + skipped == total``
"""

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any, Optional, TypeVar

from pipeline_control_plane.config import Settings, get_settings
from pipeline_control_plane.core.logging import component_ctx
from pipeline_control_plane.errors import (
    AuthError,
    ConflictError,
    ControlPlaneError,
    NotFoundError,
    NotSupportedError,
)
from pipeline_control_plane.observability.metrics import METRICS
from pipeline_control_plane.ops.retry_policy import OperationCancelledError, bind_cancel_event
from pipeline_control_plane.providers.base_provider import BaseCIProvider
from pipeline_control_plane.schemas.cancellation import (
    ACCOUNTING_ERROR_ID,
    CancelError,
    CancelOptions,
    CancelOutcome,
    CancelResult,
    PipelineCancelDetail,
)
from pipeline_control_plane.schemas.pipeline import Pipeline, RunFilter

logger = logging.getLogger(__name__)

T = TypeVar("T")

DRY_RUN_REASON = "Dry run mode"


def chunk(items: Sequence[T], size: int) -> list[list[T]]:
    """Split ``items`` into consecutive batches of at most ``size``."""
    if size < 1:
        raise ValueError("Batch size must be at least 1")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def normalize_options(
    options: CancelOptions | Mapping[str, Any] | None,
    *,
    default_concurrency: int = 10,
) -> CancelOptions:
    """Fill defaults and compile patterns for caller-supplied options."""
    if isinstance(options, CancelOptions):
        return options
    values = dict(options or {})
    values.setdefault("concurrency", default_concurrency)
    return CancelOptions.model_validate(values)


def gitops_repository(component: str) -> str:
    return f"{component}-gitops"


def failure_reason(error: ControlPlaneError) -> str:
    if isinstance(error, NotFoundError):
        return "not found"
    if isinstance(error, ConflictError):
        return "already completed or not cancellable"
    if isinstance(error, AuthError):
        return "insufficient permissions"
    if isinstance(error, NotSupportedError):
        return "cancellation not supported"
    return f"cancellation failed: {error.message}"


def apply_cancel_filters(runs: Sequence[Pipeline], options: CancelOptions) -> list[Pipeline]:
    """Drop runs that must not be cancelled; order is preserved."""
    survivors = []
    for run in runs:
        if run.finished and not options.include_completed:
            continue
        if any(
            pattern.search(run.name or "") or pattern.search(run.branch or "")
            for pattern in options.exclude_patterns
        ):
            continue
        if options.event_type is not None and run.event_type != options.event_type:
            continue
        if options.branch is not None and run.branch != options.branch:
            continue
        survivors.append(run)
    return survivors


class _ResultBuilder:
    """Mutable result under construction; ``snapshot`` freezes it."""

    def __init__(self, total: int):
        self.total = total
        self.cancelled = 0
        self.failed = 0
        self.skipped = 0
        self.details: list[Optional[PipelineCancelDetail]] = [None] * total
        self.errors: list[CancelError] = []
        self._lock = asyncio.Lock()

    async def record(
        self,
        index: int,
        detail: PipelineCancelDetail,
        error: Optional[CancelError] = None,
    ) -> None:
        # Each index has a single writer; only counters and errors are shared
        self.details[index] = detail
        async with self._lock:
            if detail.result == "cancelled":
                self.cancelled += 1
            elif detail.result == "failed":
                self.failed += 1
            else:
                self.skipped += 1
            if error is not None:
                self.errors.append(error)

    def audit(self) -> None:
        accounted = self.cancelled + self.failed + self.skipped
        if accounted != self.total:
            missing = self.total - accounted
            logger.error(
                f"ACCOUNTING ERROR: {missing} runs unaccounted for "
                f"(total: {self.total}, accounted: {accounted})"
            )
            self.errors.append(
                CancelError(
                    pipeline_id=ACCOUNTING_ERROR_ID,
                    message=f"{missing} runs lost in processing; result counts do not add up",
                )
            )

    def snapshot(self) -> CancelResult:
        return CancelResult(
            total=self.total,
            cancelled=self.cancelled,
            failed=self.failed,
            skipped=self.skipped,
            details=tuple(d for d in self.details if d is not None),
            errors=tuple(self.errors),
        )


class CancellationEngine:
    """
    Cancels every active run of a component across its two repositories.

    Args:
        provider: Adapter owning the runs
        settings: Application settings
    """

    def __init__(self, provider: BaseCIProvider, *, settings: Optional[Settings] = None):
        self.provider = provider
        self.settings = settings or get_settings()

    async def _list_or_empty(self, repository: str) -> list[Pipeline]:
        try:
            return await self.provider.list_runs(repository, RunFilter())
        except NotFoundError:
            logger.info(f"Repository {repository} not found or has no runs")
            return []

    async def fetch_runs(self, component: str) -> list[Pipeline]:
        """List runs of the source and GitOps repositories concurrently."""
        source, gitops = await asyncio.gather(
            self._list_or_empty(component),
            self._list_or_empty(gitops_repository(component)),
        )
        return [*source, *gitops]

    async def cancel_all(
        self,
        component: str,
        options: CancelOptions | Mapping[str, Any] | None = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> CancelResult:
        """Cancel matching runs and return the frozen result.

        Individual failures are values in the result. Only a failure to list
        the source repository raises. ``cancel_event`` interrupts adapter
        retry sleeps; runs interrupted that way are reported as failed, and
        no further batch starts once it is set.
        """
        opts = normalize_options(options, default_concurrency=self.settings.cancel_concurrency)
        token = component_ctx.set(component)
        try:
            with bind_cancel_event(cancel_event) as bound:
                return await self._cancel_all(component, opts, bound)
        finally:
            component_ctx.reset(token)

    async def _cancel_all(
        self,
        component: str,
        opts: CancelOptions,
        cancel_event: Optional[asyncio.Event],
    ) -> CancelResult:
        runs = await self.fetch_runs(component)
        to_cancel = apply_cancel_filters(runs, opts)
        logger.info(
            f"Starting cancellation for {component}: {len(to_cancel)} of {len(runs)} runs match filters",
            extra={"dry_run": opts.dry_run, "concurrency": opts.concurrency},
        )

        builder = _ResultBuilder(len(to_cancel))
        for batch_number, batch in enumerate(chunk(to_cancel, opts.concurrency)):
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError(
                    f"Cancellation of {component} stopped by caller after {batch_number} batch(es)"
                )
            offset = batch_number * opts.concurrency
            await self._run_batch(batch, offset, opts, builder)

        builder.audit()
        result = builder.snapshot()
        logger.info(
            f"Cancellation complete for {component}",
            extra={
                "total": result.total,
                "cancelled": result.cancelled,
                "failed": result.failed,
                "skipped": result.skipped,
            },
        )
        return result

    async def _run_batch(
        self,
        batch: list[Pipeline],
        offset: int,
        options: CancelOptions,
        builder: _ResultBuilder,
    ) -> None:
        outcomes = await asyncio.gather(
            *(
                self._cancel_one(offset + i, run, options, builder)
                for i, run in enumerate(batch)
            ),
            return_exceptions=True,
        )

        rejected = 0
        for run, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                rejected += 1
                logger.error(
                    f"Unexpected error cancelling {run.display_name}: {outcome!r}",
                    extra={"pipeline_id": run.id, "repository": run.repository_name},
                )
            elif outcome == "failed":
                rejected += 1

        if batch and rejected == len(batch):
            logger.warning(
                f"Entire batch of {len(batch)} cancellations failed; "
                "this usually means an auth, network or provider outage"
            )

    def _detail(
        self,
        run: Pipeline,
        result: CancelOutcome,
        reason: Optional[str] = None,
    ) -> PipelineCancelDetail:
        return PipelineCancelDetail(
            pipeline_id=run.id,
            name=run.display_name,
            status=run.status,
            result=result,
            reason=reason,
            event_type=run.event_type,
            branch=run.branch,
            repository_name=run.repository_name,
        )

    async def _cancel_one(
        self,
        index: int,
        run: Pipeline,
        options: CancelOptions,
        builder: _ResultBuilder,
    ) -> CancelOutcome:
        provider = self.provider.kind.value

        if options.dry_run:
            logger.info(f"[DRY RUN] Would cancel {run.display_name} in {run.repository_name}")
            await builder.record(index, self._detail(run, "skipped", DRY_RUN_REASON))
            METRICS.cancel_outcomes_total.labels(provider=provider, result="skipped").inc()
            return "skipped"

        try:
            await self.provider.cancel(run)
        except ControlPlaneError as e:
            reason = failure_reason(e)
            logger.warning(
                f"Failed to cancel {run.display_name}: {reason}",
                extra={"pipeline_id": run.id, "status_code": e.status_code},
            )
            await builder.record(
                index,
                self._detail(run, "failed", reason),
                CancelError(
                    pipeline_id=run.id,
                    message=f"{reason}: {e.message}",
                    status_code=e.status_code,
                    provider_error_code=e.provider_error_code,
                ),
            )
            METRICS.cancel_outcomes_total.labels(provider=provider, result="failed").inc()
            return "failed"
        except Exception as e:
            reason = f"cancellation failed: {e}"
            logger.warning(
                f"Failed to cancel {run.display_name}: {e!r}",
                extra={"pipeline_id": run.id},
            )
            await builder.record(
                index,
                self._detail(run, "failed", reason),
                CancelError(pipeline_id=run.id, message=reason),
            )
            METRICS.cancel_outcomes_total.labels(provider=provider, result="failed").inc()
            return "failed"

        logger.info(f"Cancelled {run.display_name} in {run.repository_name}")
        await builder.record(index, self._detail(run, "cancelled"))
        METRICS.cancel_outcomes_total.labels(provider=provider, result="cancelled").inc()
        return "cancelled"
