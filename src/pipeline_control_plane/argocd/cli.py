"""ArgoCD CLI boundary.

Commands are assembled as a single shell string and run through
``/bin/sh``. Every argument, flags included, is single-quoted so that no
caller-supplied value is ever interpreted by the shell.
"""

import asyncio
import logging
from dataclasses import dataclass

from pipeline_control_plane.config import Settings, get_settings
from pipeline_control_plane.errors import ArgoCDCliError
from pipeline_control_plane.observability.metrics import METRICS
from pipeline_control_plane.schemas.argocd import ArgoCDConnectionInfo, SyncOptions

logger = logging.getLogger(__name__)

TRANSIENT_SYNC_MARKERS = (
    "another operation is already in progress",
    "failedprecondition",
)


def escape_shell_arg(arg: str) -> str:
    """Quote ``arg`` for a POSIX shell; ``'`` becomes ``'\\''``."""
    return "'" + arg.replace("'", "'\\''") + "'"


def join_command(*args: str) -> str:
    return " ".join(escape_shell_arg(arg) for arg in args)


def build_login_command(cli_path: str, connection: ArgoCDConnectionInfo) -> str:
    args = [cli_path, "login", connection.server_url]
    if connection.insecure:
        args.append("--insecure")
    if connection.skip_test_tls:
        args.append("--skip-test-tls")
    if connection.grpc_web:
        args.append("--grpc-web")
    args += ["--username", connection.username, "--password", connection.password]
    return join_command(*args)


def build_sync_command(
    cli_path: str,
    application: str,
    options: SyncOptions,
    *,
    insecure: bool = True,
) -> str:
    args = [cli_path, "app", "sync", application]
    if insecure:
        args.append("--insecure")
    if options.dry_run:
        args.append("--dry-run")
    if options.prune:
        args.append("--prune")
    if options.force:
        args.append("--force")
    return join_command(*args)


def is_transient_sync_error(error: ArgoCDCliError) -> bool:
    text = f"{error.stderr}".lower()
    return any(marker in text for marker in TRANSIENT_SYNC_MARKERS)


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str


class ArgoCDCli:
    """Runs ArgoCD CLI commands in a subprocess shell."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    @property
    def cli_path(self) -> str:
        return self.settings.argocd_cli_path

    async def run(self, command: str, *, subcommand: str, redact: str | None = None) -> CommandResult:
        """
        Execute ``command`` and return its output.

        Args:
            command: Fully quoted shell command
            subcommand: Label for logs and metrics (e.g. ``login``)
            redact: Secret to hide from log output

        Raises:
            ArgoCDCliError: If the command exits non-zero
        """
        shown = command.replace(redact, "******") if redact else command
        logger.info(f"Executing ArgoCD command: {shown}")

        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout_bytes, stderr_bytes = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        exit_code = process.returncode if process.returncode is not None else -1

        status = "ok" if exit_code == 0 else "error"
        METRICS.argocd_cli_invocations_total.labels(subcommand=subcommand, status=status).inc()

        if exit_code != 0:
            raise ArgoCDCliError(subcommand, exit_code, stderr or stdout)
        if stderr.strip():
            logger.warning(f"ArgoCD {subcommand} warnings: {stderr.strip()}")
        return CommandResult(exit_code=exit_code, stdout=stdout, stderr=stderr)
