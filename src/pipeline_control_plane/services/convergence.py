"""Convergence polling for CI runs and ArgoCD applications.

Every wait is bounded by a wall-clock deadline measured from its start;
retries never extend it. Timeouts and bail conditions are returned as
values so callers can harvest diagnostics.
"""

import asyncio
import logging
import math
from typing import Optional

from pipeline_control_plane.argocd.application_service import ArgoApplicationService
from pipeline_control_plane.config import Settings, get_settings
from pipeline_control_plane.core.logging import pipeline_id_ctx
from pipeline_control_plane.errors import ConfigurationError, NotFoundError
from pipeline_control_plane.observability.metrics import METRICS
from pipeline_control_plane.ops.retry_policy import (
    RetryableOperationError,
    RetryExhaustedError,
    RetryPolicy,
    retry_async,
)
from pipeline_control_plane.providers.base_provider import BaseCIProvider
from pipeline_control_plane.schemas.argocd import ArgoApplication, SyncWaitResult
from pipeline_control_plane.schemas.pipeline import Pipeline, PipelineStatus, RunFilter

logger = logging.getLogger(__name__)

# Long waits poll more gently
LONG_WAIT_SECONDS = 1800.0


def poll_policy(timeout: float, interval: float) -> RetryPolicy:
    """Retry budget of ``floor(timeout / interval)`` polls."""
    retries = max(1, math.floor(timeout / interval))
    if timeout > LONG_WAIT_SECONDS:
        return RetryPolicy(
            retries=retries,
            min_timeout=interval,
            max_timeout=interval * 4,
            factor=1.5,
        )
    return RetryPolicy.fixed(retries=retries, interval=interval)


def is_converged(application: ArgoApplication, expected_revision: Optional[str]) -> bool:
    """Synced, Healthy and (when given) at the expected revision."""
    if application.sync_status != "Synced" or application.health_status != "Healthy":
        return False
    return not expected_revision or application.sync_revision == expected_revision


def bail_reason(application: ArgoApplication) -> Optional[str]:
    """Reason the application can no longer converge on its own, if any."""
    reason = None
    if application.health_status == "Degraded":
        reason = "Application health is Degraded"
    elif application.sync_status == "SyncFailed":
        reason = "Sync status is SyncFailed"
    elif application.operation_phase in ("Failed", "Error"):
        reason = f"Operation phase is {application.operation_phase}"
    if reason and application.operation_message:
        reason = f"{reason}: {application.operation_message}"
    return reason


class ConvergenceController:
    """
    Waits for CI runs to finish and ArgoCD applications to sync.

    Args:
        provider: CI adapter used for run polling
        applications: ArgoCD application reader used for sync polling
        settings: Application settings (poll intervals and default timeouts)
    """

    def __init__(
        self,
        provider: Optional[BaseCIProvider] = None,
        applications: Optional[ArgoApplicationService] = None,
        *,
        settings: Optional[Settings] = None,
    ):
        self.provider = provider
        self.applications = applications
        self.settings = settings or get_settings()

    def _provider(self) -> BaseCIProvider:
        if self.provider is None:
            raise ConfigurationError("No CI provider configured for run polling")
        return self.provider

    def _applications(self) -> ArgoApplicationService:
        if self.applications is None:
            raise ConfigurationError("No ArgoCD application service configured")
        return self.applications

    # ============================================
    # CI RUNS
    # ============================================

    async def wait_for_terminal(
        self,
        pipeline: Pipeline,
        timeout: Optional[float] = None,
        *,
        interval: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PipelineStatus:
        """
        Poll a run until it reaches a terminal status.

        Returns:
            The terminal status, or UNKNOWN on deadline or when the run vanished
        """
        if pipeline.is_terminal:
            return pipeline.status

        provider = self._provider()
        timeout = timeout if timeout is not None else self.settings.pipeline_wait_timeout_seconds
        interval = interval or self.settings.pipeline_poll_interval_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        async def poll(_: int) -> PipelineStatus:
            async with asyncio.timeout_at(deadline):
                current = await provider.get_run(pipeline)
            if current.is_terminal:
                return current.status
            raise RetryableOperationError(f"{pipeline.display_name} is {current.status.value}")

        token = pipeline_id_ctx.set(pipeline.id)
        try:
            status = await retry_async(
                poll,
                poll_policy(timeout, interval),
                deadline=deadline,
                cancel_event=cancel_event,
                label=f"{provider.kind.value}.wait_for_terminal",
            )
        except RetryExhaustedError as e:
            logger.warning(f"Run {pipeline.display_name} did not finish within {timeout}s: {e}")
            METRICS.convergence_outcomes_total.labels(mode="terminal", outcome="timeout").inc()
            return PipelineStatus.UNKNOWN
        except NotFoundError:
            logger.warning(f"Run {pipeline.display_name} disappeared while waiting")
            METRICS.convergence_outcomes_total.labels(mode="terminal", outcome="vanished").inc()
            return PipelineStatus.UNKNOWN
        finally:
            pipeline_id_ctx.reset(token)

        logger.info(f"Run {pipeline.display_name} finished with status {status.value}")
        METRICS.convergence_outcomes_total.labels(mode="terminal", outcome=status.value).inc()
        return status

    async def wait_for_all_runs(
        self,
        component: str,
        timeout: Optional[float] = None,
        *,
        interval: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> bool:
        """Wait until no run of ``component`` is unfinished; False on deadline."""
        provider = self._provider()
        timeout = timeout if timeout is not None else self.settings.pipeline_wait_timeout_seconds
        interval = interval or self.settings.pipeline_poll_interval_seconds
        deadline = asyncio.get_running_loop().time() + timeout

        async def poll(_: int) -> bool:
            try:
                async with asyncio.timeout_at(deadline):
                    runs = await provider.list_runs(component, RunFilter())
            except NotFoundError:
                return True
            running = [run for run in runs if not run.finished]
            if running:
                raise RetryableOperationError(
                    f"{len(running)} run(s) of {component} still unfinished"
                )
            return True

        try:
            await retry_async(
                poll,
                poll_policy(timeout, interval),
                deadline=deadline,
                cancel_event=cancel_event,
                label=f"{provider.kind.value}.wait_for_all_runs",
            )
        except RetryExhaustedError as e:
            logger.warning(f"Runs of {component} still active after {timeout}s: {e}")
            METRICS.convergence_outcomes_total.labels(mode="all_runs", outcome="timeout").inc()
            return False

        METRICS.convergence_outcomes_total.labels(mode="all_runs", outcome="finished").inc()
        return True

    # ============================================
    # ARGOCD APPLICATIONS
    # ============================================

    async def wait_for_synced(
        self,
        application: str,
        expected_revision: Optional[str],
        timeout: Optional[float] = None,
        *,
        namespace: Optional[str] = None,
        interval: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncWaitResult:
        """
        Poll an Application until it is Synced and Healthy at ``expected_revision``.

        An empty ``expected_revision`` accepts any revision. Degraded health,
        SyncFailed or a Failed/Error operation end the wait early.
        """
        applications = self._applications()
        timeout = timeout if timeout is not None else self.settings.argocd_sync_timeout_seconds
        interval = interval or self.settings.argocd_poll_interval_seconds
        deadline = asyncio.get_running_loop().time() + timeout
        last_observed: Optional[ArgoApplication] = None

        async def poll(_: int) -> SyncWaitResult:
            nonlocal last_observed
            async with asyncio.timeout_at(deadline):
                current = await applications.get_application(application, namespace)
            last_observed = current

            if is_converged(current, expected_revision):
                return SyncWaitResult(
                    synced=True,
                    status=current.sync_status,
                    message=f"Application {application} is Synced and Healthy at {current.sync_revision}",
                    last_observed=current,
                )

            reason = bail_reason(current)
            if reason:
                return SyncWaitResult(
                    synced=False,
                    status=current.sync_status,
                    message=f"Application {application} failed to converge - {current.summary()}",
                    reason=reason,
                    last_observed=current,
                )

            raise RetryableOperationError(f"Application {application} - {current.summary()}")

        try:
            result = await retry_async(
                poll,
                RetryPolicy.fixed(retries=max(1, math.ceil(timeout / interval)), interval=interval),
                deadline=deadline,
                cancel_event=cancel_event,
                label="argocd.wait_for_synced",
            )
        except RetryExhaustedError:
            result = SyncWaitResult(
                synced=False,
                status=last_observed.sync_status if last_observed else "Unknown",
                message=f"Timed out after {timeout}s waiting for application {application} to sync",
                reason="timeout",
                last_observed=last_observed,
            )
        except NotFoundError as e:
            result = SyncWaitResult(
                synced=False,
                status="Unknown",
                message=e.message,
                reason=f"Application {application} not found",
            )

        if result.synced:
            METRICS.convergence_outcomes_total.labels(mode="synced", outcome="synced").inc()
            logger.info(result.message)
        else:
            outcome = "timeout" if result.reason == "timeout" else "bailed"
            METRICS.convergence_outcomes_total.labels(mode="synced", outcome=outcome).inc()
            details = await applications.describe_application(application, namespace)
            logger.warning(f"{result.message} ({result.reason}). Application details: {details}")
        return result
