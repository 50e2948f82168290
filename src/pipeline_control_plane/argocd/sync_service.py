"""Trigger an ArgoCD sync through the CLI and monitor it to completion."""

import asyncio
import logging
from typing import Optional

from pipeline_control_plane.argocd.application_service import ArgoApplicationService
from pipeline_control_plane.argocd.cli import (
    ArgoCDCli,
    build_login_command,
    build_sync_command,
    escape_shell_arg,
    is_transient_sync_error,
)
from pipeline_control_plane.argocd.connection_service import ArgoCDConnectionService
from pipeline_control_plane.config import Settings, get_settings
from pipeline_control_plane.errors import ArgoCDCliError, ConfigurationError, ControlPlaneError
from pipeline_control_plane.ops.retry_policy import (
    RetryableOperationError,
    RetryExhaustedError,
    RetryPolicy,
    bind_cancel_event,
    retry_async,
)
from pipeline_control_plane.schemas.argocd import (
    ApplicationSyncResult,
    ArgoCDConnectionInfo,
    SyncOptions,
)
from pipeline_control_plane.services.convergence import ConvergenceController

logger = logging.getLogger(__name__)

LOGIN_POLICY = RetryPolicy(retries=5, min_timeout=2.0, max_timeout=30.0, factor=2.0)
SYNC_POLICY = RetryPolicy(retries=5, min_timeout=5.0, max_timeout=30.0, factor=1.5)


class ArgoCDSyncService:
    """
    Runs ``argocd login`` and ``argocd app sync``, then waits for the
    application to become Healthy and Synced.
    """

    def __init__(
        self,
        applications: ArgoApplicationService,
        connections: ArgoCDConnectionService,
        cli: Optional[ArgoCDCli] = None,
        *,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.applications = applications
        self.connections = connections
        self.cli = cli or ArgoCDCli(self.settings)
        self.convergence = ConvergenceController(applications=applications, settings=self.settings)

    async def login(self, connection: ArgoCDConnectionInfo, application: str) -> None:
        command = build_login_command(self.cli.cli_path, connection)
        redact = escape_shell_arg(connection.password)

        async def attempt(_: int) -> None:
            try:
                await self.cli.run(command, subcommand="login", redact=redact)
            except ArgoCDCliError as e:
                raise RetryableOperationError(f"login failed: {e.stderr.strip()}") from e

        def on_retry(error: BaseException, number: int) -> None:
            logger.info(
                f"[LOGIN-RETRY {number}/{LOGIN_POLICY.retries}] Application: {application} | Reason: {error}"
            )

        await retry_async(attempt, LOGIN_POLICY, on_retry=on_retry, label="argocd.login")

    async def trigger_sync(self, application: str, options: SyncOptions) -> None:
        command = build_sync_command(
            self.cli.cli_path, application, options, insecure=self.settings.argocd_insecure
        )

        async def attempt(_: int) -> None:
            try:
                result = await self.cli.run(command, subcommand="app sync")
            except ArgoCDCliError as e:
                if is_transient_sync_error(e):
                    raise RetryableOperationError(
                        f"another sync operation is in progress: {e.stderr.strip()}"
                    ) from e
                raise
            if result.stdout.strip():
                logger.info(f"ArgoCD sync output: {result.stdout.strip()[:2000]}")

        await retry_async(attempt, SYNC_POLICY, label="argocd.sync")

    async def sync_application(
        self,
        application: str,
        options: Optional[SyncOptions] = None,
        timeout: Optional[float] = None,
        *,
        namespace: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ApplicationSyncResult:
        """
        Sync ``application`` and monitor until Healthy and Synced.

        CLI and cluster failures are reported in the result. Only a
        missing ArgoCD instance, route or admin secret raises, as does
        ``OperationCancelledError`` once ``cancel_event`` is set.
        """
        with bind_cancel_event(cancel_event):
            return await self._sync_application(application, options, timeout, namespace)

    async def _sync_application(
        self,
        application: str,
        options: Optional[SyncOptions],
        timeout: Optional[float],
        namespace: Optional[str],
    ) -> ApplicationSyncResult:
        options = options or SyncOptions()
        timeout = timeout if timeout is not None else self.settings.argocd_sync_timeout_seconds
        loop = asyncio.get_running_loop()
        started = loop.time()

        connection = await self.connections.get_connection_info(namespace)

        try:
            await self.login(connection, application)
        except ConfigurationError:
            raise
        except (RetryExhaustedError, ControlPlaneError) as e:
            logger.error(f"Failed to login to ArgoCD for {application}: {e}")
            return ApplicationSyncResult(success=False, message=f"Failed to login to ArgoCD: {e}")

        try:
            await self.trigger_sync(application, options)
        except ConfigurationError:
            raise
        except (RetryExhaustedError, ControlPlaneError) as e:
            logger.error(f"Failed to sync application {application}: {e}")
            return ApplicationSyncResult(
                success=False, message=f"Failed to execute sync command: {e}"
            )

        if options.dry_run:
            return ApplicationSyncResult(
                success=True, message=f"Dry run sync of {application} completed"
            )

        remaining = max(0.0, timeout - (loop.time() - started))
        try:
            waited = await self.convergence.wait_for_synced(
                application, None, remaining, namespace=namespace
            )
        except ConfigurationError:
            raise
        except ControlPlaneError as e:
            logger.error(f"Failed to monitor application {application}: {e}")
            return ApplicationSyncResult(
                success=False, message=f"Failed to monitor sync of {application}: {e}"
            )
        observed = waited.last_observed
        return ApplicationSyncResult(
            success=waited.synced,
            message="Sync completed successfully" if waited.synced else waited.message,
            health=observed.health_status if observed else "Unknown",
            sync=observed.sync_status if observed else "Unknown",
            operation_phase=observed.operation_phase if observed else "Unknown",
        )
