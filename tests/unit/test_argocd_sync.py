"""Tests for CLI-driven ArgoCD syncs."""

import asyncio
import shlex
from typing import Optional

import pytest

from pipeline_control_plane.argocd import sync_service
from pipeline_control_plane.argocd.cli import CommandResult
from pipeline_control_plane.argocd.sync_service import ArgoCDSyncService
from pipeline_control_plane.errors import ArgoCDCliError, AuthError, ConfigurationError
from pipeline_control_plane.ops.retry_policy import OperationCancelledError, RetryPolicy
from pipeline_control_plane.schemas.argocd import ArgoApplication, ArgoCDConnectionInfo, SyncOptions

APP = "my-component-development"
FAST = RetryPolicy(retries=2, min_timeout=0.001, max_timeout=0.001)


@pytest.fixture(autouse=True)
def fast_cli_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(sync_service, "LOGIN_POLICY", FAST)
    monkeypatch.setattr(sync_service, "SYNC_POLICY", FAST)


class FakeCli:
    """Scripted CLI: each subcommand pops its next outcome."""

    cli_path = "argocd"

    def __init__(self, **outcomes: list):
        self.outcomes = {key.replace("_", " "): list(value) for key, value in outcomes.items()}
        self.commands: list[tuple[str, str]] = []
        self.redactions: list[Optional[str]] = []

    async def run(self, command: str, *, subcommand: str, redact: Optional[str] = None) -> CommandResult:
        self.commands.append((subcommand, command))
        self.redactions.append(redact)
        queue = self.outcomes.get(subcommand) or []
        outcome = queue.pop(0) if queue else None
        if isinstance(outcome, BaseException):
            raise outcome
        return CommandResult(exit_code=0, stdout="ok", stderr="")

    def calls(self, subcommand: str) -> list[str]:
        return [command for name, command in self.commands if name == subcommand]


class FakeConnections:
    def __init__(self, error: Optional[BaseException] = None):
        self.error = error

    async def get_connection_info(self, namespace: Optional[str] = None) -> ArgoCDConnectionInfo:
        if self.error is not None:
            raise self.error
        return ArgoCDConnectionInfo(server_url="argocd.example.com", password="s3cr'et")


class FakeApplications:
    def __init__(self, *snapshots: ArgoApplication):
        self.snapshots = list(snapshots)

    async def get_application(self, name: str, namespace: Optional[str] = None) -> ArgoApplication:
        snapshot = self.snapshots.pop(0) if len(self.snapshots) > 1 else self.snapshots[0]
        if isinstance(snapshot, BaseException):
            raise snapshot
        return snapshot

    async def describe_application(self, name: str, namespace: Optional[str] = None) -> str:
        return name


def _app(sync: str, health: str) -> ArgoApplication:
    return ArgoApplication(
        name=APP, namespace="tssc-gitops", sync_status=sync, health_status=health, operation_phase="Succeeded"
    )


def _service(cli, settings, applications=None, connections=None) -> ArgoCDSyncService:
    return ArgoCDSyncService(
        applications or FakeApplications(_app("Synced", "Healthy")),
        connections or FakeConnections(),
        cli,
        settings=settings,
    )


@pytest.mark.asyncio
async def test_sync_logs_in_syncs_and_monitors(settings) -> None:
    cli = FakeCli()
    applications = FakeApplications(_app("OutOfSync", "Progressing"), _app("Synced", "Healthy"))

    result = await _service(cli, settings, applications).sync_application(APP, timeout=5)

    assert result.success is True
    assert result.message == "Sync completed successfully"
    assert result.health == "Healthy"
    assert result.sync == "Synced"
    assert [name for name, _ in cli.commands] == ["login", "app sync"]
    assert shlex.split(cli.calls("login")[0])[-1] == "s3cr'et"
    assert cli.redactions[0] == "'s3cr'\\''et'"


@pytest.mark.asyncio
async def test_login_is_retried(settings) -> None:
    cli = FakeCli(login=[ArgoCDCliError("login", 20, "rpc error: connection refused")])

    result = await _service(cli, settings).sync_application(APP, timeout=5)

    assert result.success is True
    assert len(cli.calls("login")) == 2


@pytest.mark.asyncio
async def test_login_exhaustion_is_reported(settings) -> None:
    failures = [ArgoCDCliError("login", 20, "unauthorized") for _ in range(FAST.retries + 1)]
    cli = FakeCli(login=failures)

    result = await _service(cli, settings).sync_application(APP, timeout=5)

    assert result.success is False
    assert result.message.startswith("Failed to login to ArgoCD")
    assert cli.calls("app sync") == []


@pytest.mark.asyncio
async def test_operation_in_progress_is_retried(settings) -> None:
    busy = ArgoCDCliError("app sync", 20, "FailedPrecondition: another operation is already in progress")
    cli = FakeCli(app_sync=[busy])

    result = await _service(cli, settings).sync_application(APP, timeout=5)

    assert result.success is True
    assert len(cli.calls("app sync")) == 2


@pytest.mark.asyncio
async def test_other_sync_errors_bail_immediately(settings) -> None:
    denied = ArgoCDCliError("app sync", 20, "PermissionDenied: permission denied")
    cli = FakeCli(app_sync=[denied])

    result = await _service(cli, settings).sync_application(APP, timeout=5)

    assert result.success is False
    assert result.message.startswith("Failed to execute sync command")
    assert len(cli.calls("app sync")) == 1


@pytest.mark.asyncio
async def test_dry_run_skips_monitoring(settings) -> None:
    cli = FakeCli()
    applications = FakeApplications(_app("OutOfSync", "Degraded"))

    result = await _service(cli, settings, applications).sync_application(
        APP, SyncOptions(dry_run=True), timeout=5
    )

    assert result.success is True
    assert "--dry-run" in shlex.split(cli.calls("app sync")[0])


@pytest.mark.asyncio
async def test_degraded_application_fails_the_sync(settings) -> None:
    cli = FakeCli()
    applications = FakeApplications(_app("OutOfSync", "Degraded"))

    result = await _service(cli, settings, applications).sync_application(APP, timeout=5)

    assert result.success is False
    assert result.health == "Degraded"


@pytest.mark.asyncio
async def test_missing_connection_details_raise(settings) -> None:
    cli = FakeCli()
    connections = FakeConnections(ConfigurationError("ArgoCD instance not found"))

    with pytest.raises(ConfigurationError):
        await _service(cli, settings, connections=connections).sync_application(APP, timeout=5)
    assert cli.commands == []


@pytest.mark.asyncio
async def test_monitoring_failure_is_reported_in_result(settings) -> None:
    cli = FakeCli()
    applications = FakeApplications(AuthError("forbidden", status_code=403))

    result = await _service(cli, settings, applications).sync_application(APP, timeout=5)

    assert result.success is False
    assert result.message.startswith(f"Failed to monitor sync of {APP}")
    assert result.health == "Unknown"


@pytest.mark.asyncio
async def test_cancel_event_stops_login_retries(settings) -> None:
    cancel = asyncio.Event()
    cancel.set()
    cli = FakeCli()

    with pytest.raises(OperationCancelledError):
        await _service(cli, settings).sync_application(APP, timeout=5, cancel_event=cancel)

    assert cli.commands == []
