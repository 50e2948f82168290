"""GitHub Actions provider integration.

Uses GitHub REST API v3 to:
- List workflow runs of a repository
- Fetch and cancel workflow runs
- Download run logs (zip archive, with a per-job summary fallback)

Reference: https://docs.github.com/en/rest/actions
"""

import logging
import zipfile
from io import BytesIO
from typing import Any, Optional

from pipeline_control_plane.config import Settings
from pipeline_control_plane.errors import ConfigurationError, ControlPlaneError
from pipeline_control_plane.providers.base_provider import (
    BaseCIProvider,
    ProviderConfig,
    ProviderRegistry,
    parse_timestamp,
)
from pipeline_control_plane.schemas.pipeline import Pipeline, ProviderKind, RunFilter
from pipeline_control_plane.services import status_normalizer
from pipeline_control_plane.services.integration_secrets import IntegrationCredentials

logger = logging.getLogger(__name__)

MAX_PER_PAGE = 100


@ProviderRegistry.register(ProviderKind.GITHUB_ACTIONS)
class GitHubActionsProvider(BaseCIProvider):
    """GitHub Actions provider implementation.

    Handles:
    - Workflow run listing with head_sha/event/branch filters
    - Run cancellation
    - Log retrieval via the run log archive
    """

    secret_provider = "github"

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.GITHUB_ACTIONS

    @classmethod
    def build_config(
        cls,
        credentials: Optional[IntegrationCredentials],
        settings: Settings,
    ) -> ProviderConfig:
        if credentials is None:
            raise ConfigurationError("GitHub credentials are required")
        return ProviderConfig(
            kind=ProviderKind.GITHUB_ACTIONS,
            api_url=settings.github_api_base_url,
            api_token=credentials.require("token"),
            extra={
                "organization": settings.github_organization or credentials.get("organization"),
            },
        )

    def _get_auth_headers(self) -> dict[str, str]:
        """Build request headers with authentication."""
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.config.api_token:
            headers["Authorization"] = f"Bearer {self.config.api_token}"
        return headers

    def _repo_path(self, repository: str) -> str:
        """Resolve ``repo`` or ``owner/repo`` into the API repository path."""
        if "/" in repository:
            return f"/repos/{repository}"
        owner = self.config.extra.get("organization")
        if not owner:
            raise ConfigurationError(
                f"GitHub organization not configured for repository '{repository}'"
            )
        return f"/repos/{owner}/{repository}"

    def _to_pipeline(self, run: dict[str, Any], repository: str) -> Pipeline:
        finished = status_normalizer.github_finished(run)
        return Pipeline(
            provider=ProviderKind.GITHUB_ACTIONS,
            id=str(run.get("id", "")),
            build_number=run.get("run_number"),
            name=run.get("name") or run.get("display_title"),
            repository_name=repository,
            status=status_normalizer.github_status(run),
            url=run.get("html_url"),
            sha=run.get("head_sha"),
            branch=run.get("head_branch"),
            event_type=status_normalizer.github_event_type(run),
            created_at=parse_timestamp(run.get("created_at")),
            start_time=parse_timestamp(run.get("run_started_at")),
            end_time=parse_timestamp(run.get("updated_at")) if finished else None,
            finished=finished,
        )

    async def list_runs(self, repository: str, run_filter: RunFilter) -> list[Pipeline]:
        path = f"{self._repo_path(repository)}/actions/runs"
        per_page = min(MAX_PER_PAGE, run_filter.page_limit or MAX_PER_PAGE)

        params: dict[str, Any] = {"per_page": per_page}
        if run_filter.sha:
            params["head_sha"] = run_filter.sha
        if run_filter.event:
            params["event"] = run_filter.event.value
        if run_filter.branch:
            params["branch"] = run_filter.branch
        if run_filter.since:
            params["created"] = f">={run_filter.since.strftime('%Y-%m-%dT%H:%M:%SZ')}"

        pipelines: list[Pipeline] = []
        page = 1
        while True:
            response = await self._request("GET", path, params={**params, "page": page})
            body = response.json()
            runs = body.get("workflow_runs") or []
            pipelines.extend(self._to_pipeline(run, repository) for run in runs)

            total_count = body.get("total_count", 0)
            if (
                len(runs) < per_page
                or len(pipelines) >= total_count
                or self.page_budget_reached(len(pipelines), run_filter)
            ):
                break
            page += 1

        filtered = self.apply_client_filters(pipelines, run_filter)
        if run_filter.page_limit is not None:
            filtered = filtered[: run_filter.page_limit]
        return filtered

    async def get_run(self, pipeline: Pipeline) -> Pipeline:
        path = f"{self._repo_path(pipeline.repository_name)}/actions/runs/{pipeline.id}"
        response = await self._request("GET", path)
        return self._to_pipeline(response.json(), pipeline.repository_name)

    async def cancel(self, pipeline: Pipeline) -> None:
        path = f"{self._repo_path(pipeline.repository_name)}/actions/runs/{pipeline.id}/cancel"
        logger.info(f"Cancelling GitHub workflow run {pipeline.id} in {pipeline.repository_name}")
        await self._request("POST", path, retry=False)

    async def get_logs(self, pipeline: Pipeline) -> str:
        """
        Download logs for a workflow run.

        GitHub returns logs as a compressed archive. When the archive is not
        available (run still in progress or logs expired), a per-job summary
        is returned instead.
        """
        run_path = f"{self._repo_path(pipeline.repository_name)}/actions/runs/{pipeline.id}"
        try:
            response = await self._request("GET", f"{run_path}/logs", follow_redirects=True)
            log_content = self._extract_logs_from_zip(response.content)
            logger.info(
                f"Downloaded logs for run {pipeline.id}",
                extra={"size_bytes": len(log_content)},
            )
            return log_content
        except ControlPlaneError as e:
            logger.info(f"Run log archive unavailable for {pipeline.id}, using job summary: {e}")

        try:
            return await self._job_summary(run_path, pipeline)
        except ControlPlaneError as e:
            logger.warning(f"Failed to fetch jobs for run {pipeline.id}: {e}")
            return f"Logs unavailable for workflow run {pipeline.id}: {e.message}"

    async def _job_summary(self, run_path: str, pipeline: Pipeline) -> str:
        response = await self._request("GET", f"{run_path}/jobs")
        jobs = response.json().get("jobs") or []
        if not jobs:
            return f"No jobs found yet for workflow run {pipeline.id}"

        lines = [f"Workflow run {pipeline.id} ({pipeline.display_name})"]
        for job in jobs:
            lines.append(
                f"Job: {job.get('name')} | status: {job.get('status')} | "
                f"conclusion: {job.get('conclusion') or 'n/a'}"
            )
            for step in job.get("steps") or []:
                lines.append(
                    f"  Step {step.get('number')}: {step.get('name')} | "
                    f"{step.get('status')} | {step.get('conclusion') or 'n/a'}"
                )
        return "\n".join(lines)

    @staticmethod
    def _extract_logs_from_zip(zip_content: bytes) -> str:
        """Extract log content from a zip archive."""
        try:
            with zipfile.ZipFile(BytesIO(zip_content)) as zf:
                # Concatenate all log files
                logs = []
                for name in sorted(zf.namelist()):
                    if name.endswith(".txt"):
                        content = zf.read(name).decode("utf-8", errors="replace")
                        logs.append(f"=== {name} ===\n{content}")
                return "\n".join(logs)
        except zipfile.BadZipFile:
            # Sometimes GitHub returns plain text instead of zip
            return zip_content.decode("utf-8", errors="replace")
