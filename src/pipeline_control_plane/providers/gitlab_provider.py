"""GitLab CI provider integration.

Handles GitLab CI/CD API interactions for:
- Pipeline listing (paged by ``X-Next-Page``)
- Pipeline cancellation
- Job trace retrieval
"""

import logging
from typing import Any, Optional
from urllib.parse import quote

from pipeline_control_plane.config import Settings
from pipeline_control_plane.errors import ConfigurationError, ControlPlaneError
from pipeline_control_plane.providers.base_provider import (
    BaseCIProvider,
    ProviderConfig,
    ProviderRegistry,
    parse_timestamp,
)
from pipeline_control_plane.schemas.pipeline import EventType, Pipeline, ProviderKind, RunFilter
from pipeline_control_plane.services import status_normalizer
from pipeline_control_plane.services.integration_secrets import IntegrationCredentials

logger = logging.getLogger(__name__)

MAX_PER_PAGE = 100

_SOURCES = {
    EventType.PUSH: "push",
    EventType.PULL_REQUEST: "merge_request_event",
}


@ProviderRegistry.register(ProviderKind.GITLAB_CI)
class GitLabProvider(BaseCIProvider):
    """GitLab CI provider implementation.

    Handles:
    - Project pipeline listing with sha/ref/source filters
    - Pipeline cancellation
    - Log retrieval via job traces
    """

    secret_provider = "gitlab"

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.GITLAB_CI

    @classmethod
    def build_config(
        cls,
        credentials: Optional[IntegrationCredentials],
        settings: Settings,
    ) -> ProviderConfig:
        if credentials is None:
            raise ConfigurationError("GitLab credentials are required")
        host = credentials.require("host").rstrip("/")
        if not host.startswith(("http://", "https://")):
            host = f"https://{host}"
        return ProviderConfig(
            kind=ProviderKind.GITLAB_CI,
            api_url=host,
            api_token=credentials.require("token"),
            extra={"group": settings.gitlab_group or credentials.require("group")},
        )

    def _get_auth_headers(self) -> dict[str, str]:
        """Get GitLab API authentication headers."""
        headers = {"Content-Type": "application/json"}
        if self.config.api_token:
            headers["PRIVATE-TOKEN"] = self.config.api_token
        return headers

    def _project_path(self, repository: str) -> str:
        full_path = repository if "/" in repository else f"{self.config.extra['group']}/{repository}"
        return f"/api/v4/projects/{quote(full_path, safe='')}"

    def _to_pipeline(self, pipeline: dict[str, Any], repository: str) -> Pipeline:
        iid = pipeline.get("iid")
        return Pipeline(
            provider=ProviderKind.GITLAB_CI,
            id=str(pipeline.get("id", "")),
            build_number=iid,
            name=pipeline.get("name") or (f"Pipeline #{iid}" if iid is not None else None),
            repository_name=repository,
            status=status_normalizer.gitlab_status(pipeline),
            url=pipeline.get("web_url"),
            sha=pipeline.get("sha"),
            branch=pipeline.get("ref"),
            event_type=status_normalizer.gitlab_event_type(pipeline),
            created_at=parse_timestamp(pipeline.get("created_at")),
            start_time=parse_timestamp(pipeline.get("started_at")),
            end_time=parse_timestamp(pipeline.get("finished_at")),
            finished=status_normalizer.gitlab_finished(pipeline),
        )

    async def list_runs(self, repository: str, run_filter: RunFilter) -> list[Pipeline]:
        path = f"{self._project_path(repository)}/pipelines"
        params: dict[str, Any] = {
            "per_page": min(MAX_PER_PAGE, run_filter.page_limit or MAX_PER_PAGE),
            "order_by": "id",
            "sort": "desc",
        }
        if run_filter.sha:
            params["sha"] = run_filter.sha
        if run_filter.branch:
            params["ref"] = run_filter.branch
        if run_filter.event:
            params["source"] = _SOURCES[run_filter.event]
        if run_filter.since:
            params["updated_after"] = run_filter.since.isoformat()

        pipelines: list[Pipeline] = []
        page: Optional[str] = "1"
        while page:
            response = await self._request("GET", path, params={**params, "page": page})
            pipelines.extend(self._to_pipeline(p, repository) for p in response.json() or [])
            if self.page_budget_reached(len(pipelines), run_filter):
                break
            page = response.headers.get("X-Next-Page") or None

        filtered = self.apply_client_filters(pipelines, run_filter)
        if run_filter.page_limit is not None:
            filtered = filtered[: run_filter.page_limit]
        return filtered

    async def get_run(self, pipeline: Pipeline) -> Pipeline:
        path = f"{self._project_path(pipeline.repository_name)}/pipelines/{pipeline.id}"
        response = await self._request("GET", path)
        return self._to_pipeline(response.json(), pipeline.repository_name)

    async def cancel(self, pipeline: Pipeline) -> None:
        path = f"{self._project_path(pipeline.repository_name)}/pipelines/{pipeline.id}/cancel"
        logger.info(f"Cancelling GitLab pipeline {pipeline.id} in {pipeline.repository_name}")
        await self._request("POST", path, retry=False)

    async def get_logs(self, pipeline: Pipeline) -> str:
        """Concatenate the traces of every job in the pipeline."""
        project = self._project_path(pipeline.repository_name)
        try:
            response = await self._request("GET", f"{project}/pipelines/{pipeline.id}/jobs")
        except ControlPlaneError as e:
            logger.warning(f"Failed to list jobs for GitLab pipeline {pipeline.id}: {e}")
            return f"Logs unavailable for pipeline {pipeline.id}: {e.message}"

        jobs = response.json() or []
        if not jobs:
            return f"No jobs found yet for pipeline {pipeline.id}"

        sections: list[str] = []
        for job in jobs:
            header = f"=== {job.get('stage', '')}/{job.get('name', '')} ({job.get('status')}) ==="
            try:
                trace = await self._request("GET", f"{project}/jobs/{job.get('id')}/trace")
                sections.append(f"{header}\n{trace.text}")
            except ControlPlaneError as e:
                logger.warning(f"Failed to fetch trace for GitLab job {job.get('id')}: {e}")
                sections.append(f"{header}\n(trace unavailable: {e.message})")
        return "\n".join(sections)
