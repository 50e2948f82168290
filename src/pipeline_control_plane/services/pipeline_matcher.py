"""Match a pull request (or push) to the CI run it triggered.

A single match attempt either finds the latest run, decides that no run will
ever match, or reports "not yet": the run may still be launching, or is still
running towards the requested status. "Not yet" drives a bounded backoff.
"""

import asyncio
import logging
from datetime import UTC, datetime

from pipeline_control_plane.config import Settings, get_settings
from pipeline_control_plane.errors import NotFoundError
from pipeline_control_plane.observability.metrics import METRICS
from pipeline_control_plane.ops.retry_policy import (
    RetryableOperationError,
    RetryExhaustedError,
    RetryPolicy,
    retry_async,
)
from pipeline_control_plane.providers.base_provider import BaseCIProvider
from pipeline_control_plane.schemas.pipeline import (
    EventType,
    Pipeline,
    PipelineStatus,
    PullRequestRef,
    RunFilter,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=UTC)


class PipelineNotReadyError(RetryableOperationError):
    """No decisive answer yet; the caller should try again later."""

    pass


def latest_first(pipelines: list[Pipeline], event_type: EventType | None = None) -> list[Pipeline]:
    """Order by creation time, then matching event type, then id, newest first."""
    return sorted(
        pipelines,
        key=lambda p: (
            p.created_at or _EPOCH,
            event_type is not None and p.event_type == event_type,
            p.id,
        ),
        reverse=True,
    )


class PipelineMatcher:
    """
    Finds the latest run of a repository matching a pull request.

    Args:
        provider: Adapter used to list runs
        settings: Application settings (page ceiling and retry budget)
        policy: Override of the "not yet" retry policy
    """

    def __init__(
        self,
        provider: BaseCIProvider,
        *,
        settings: Settings | None = None,
        policy: RetryPolicy | None = None,
    ):
        self.provider = provider
        self.settings = settings or get_settings()
        self.policy = policy or RetryPolicy(
            retries=self.settings.match_retries,
            min_timeout=self.settings.match_min_backoff_seconds,
            max_timeout=self.settings.match_max_backoff_seconds,
            factor=1.5,
        )

    async def match_once(
        self,
        ref: PullRequestRef,
        desired_status: PipelineStatus,
        event_type: EventType | None = None,
    ) -> Pipeline | None:
        """
        Run one match attempt.

        Returns:
            The latest matching run, or None when no run will match

        Raises:
            PipelineNotReadyError: If a match may still appear
        """
        filter_by_sha = ref.pull_number != 0 and bool(ref.sha)
        run_filter = RunFilter(
            sha=ref.sha if filter_by_sha else None,
            event=event_type,
            page_limit=self.settings.match_page_ceiling,
        )

        try:
            runs = await self.provider.list_runs(ref.repository, run_filter)
        except NotFoundError:
            logger.info(f"No runs collection for {ref.repository} yet")
            runs = []

        survivors = runs
        if filter_by_sha:
            wanted = ref.sha.lower()
            survivors = [p for p in survivors if (p.sha or "").lower() == wanted]
        if event_type is not None:
            survivors = [p for p in survivors if p.event_type == event_type]

        if not survivors:
            raise PipelineNotReadyError(
                f"no run for {ref.repository} (sha={ref.sha or '*'}, event={event_type}) yet"
            )

        matches = survivors
        if desired_status != PipelineStatus.UNKNOWN:
            matches = [p for p in survivors if p.status == desired_status]

        if not matches:
            waiting_for = desired_status.is_terminal or desired_status == PipelineStatus.RUNNING
            in_flight = [p for p in survivors if p.status.is_active]
            if waiting_for and in_flight:
                raise PipelineNotReadyError(
                    f"{len(in_flight)} run(s) of {ref.repository} still in flight, "
                    f"waiting for {desired_status.value}"
                )
            return None

        return latest_first(matches, event_type)[0]

    async def get_pipeline(
        self,
        ref: PullRequestRef,
        desired_status: PipelineStatus,
        event_type: EventType | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> Pipeline | None:
        """Match with bounded retry; exhaustion and definitive misses return None."""
        provider = self.provider.kind.value

        async def attempt(_: int) -> Pipeline | None:
            return await self.match_once(ref, desired_status, event_type)

        try:
            pipeline = await retry_async(
                attempt,
                self.policy,
                cancel_event=cancel_event,
                label=f"{provider}.match",
            )
        except RetryExhaustedError as e:
            logger.info(
                f"No {desired_status.value} run matched for {ref.repository}: {e}",
                extra={"pull_number": ref.pull_number, "sha": ref.sha},
            )
            METRICS.match_outcomes_total.labels(provider=provider, outcome="exhausted").inc()
            return None

        outcome = "matched" if pipeline is not None else "no_match"
        METRICS.match_outcomes_total.labels(provider=provider, outcome=outcome).inc()
        if pipeline is not None:
            logger.info(
                f"Matched run {pipeline.display_name} for {ref.repository}",
                extra={"pipeline_id": pipeline.id, "status": pipeline.status.value},
            )
        return pipeline
