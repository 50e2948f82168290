"""Jenkins CI provider integration.

Builds are read through the JSON API of a (folder-scoped) job named after the
repository. Commit and branch come from the git plugin's ``BuildData`` action;
the trigger is derived from build causes.
"""

import base64
import logging
from datetime import timedelta
from typing import Any, Optional

from pipeline_control_plane.config import Settings
from pipeline_control_plane.errors import ConfigurationError, ControlPlaneError, NotSupportedError
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

BUILD_FIELDS = (
    "number,result,building,timestamp,duration,url,displayName,"
    "actions[_class,causes[_class,shortDescription],"
    "lastBuiltRevision[SHA1,branch[name]],pullRequest[source[commit,branch]]]"
)


@ProviderRegistry.register(ProviderKind.JENKINS)
class JenkinsProvider(BaseCIProvider):
    """Jenkins provider implementation.

    Handles:
    - Build listing through the job JSON API
    - Console log retrieval

    Cancellation is not offered and raises ``NotSupportedError``.
    """

    secret_provider = "jenkins"

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.JENKINS

    @classmethod
    def build_config(
        cls,
        credentials: Optional[IntegrationCredentials],
        settings: Settings,
    ) -> ProviderConfig:
        if credentials is None:
            raise ConfigurationError("Jenkins credentials are required")
        return ProviderConfig(
            kind=ProviderKind.JENKINS,
            api_url=credentials.require("baseUrl"),
            api_token=credentials.require("token"),
            username=credentials.require("username"),
            extra={"folder": settings.jenkins_folder or credentials.get("folder", "")},
        )

    def _get_auth_headers(self) -> dict[str, str]:
        """Get Jenkins API authentication headers."""
        headers = {"Accept": "application/json"}
        if self.config.username and self.config.api_token:
            credentials = f"{self.config.username}:{self.config.api_token}"
            encoded = base64.b64encode(credentials.encode()).decode()
            headers["Authorization"] = f"Basic {encoded}"
        return headers

    def _job_path(self, repository: str) -> str:
        folder = self.config.extra.get("folder")
        if folder:
            return f"/job/{folder}/job/{repository}"
        return f"/job/{repository}"

    @staticmethod
    def _git_revision(build: dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
        """Return ``(sha, branch)`` from the git plugin actions."""
        for action in build.get("actions") or []:
            if not action:
                continue
            revision = action.get("lastBuiltRevision")
            if revision and revision.get("SHA1"):
                branches = revision.get("branch") or []
                branch = branches[0].get("name") if branches else None
                if branch:
                    branch = branch.removeprefix("refs/remotes/").removeprefix("origin/")
                return revision["SHA1"].lower(), branch
            source = (action.get("pullRequest") or {}).get("source") or {}
            if source.get("commit"):
                return source["commit"].lower(), source.get("branch")
        return None, None

    def _to_pipeline(self, build: dict[str, Any], repository: str) -> Pipeline:
        number = build.get("number")
        sha, branch = self._git_revision(build)
        started = parse_timestamp(build.get("timestamp"))
        finished = status_normalizer.jenkins_finished(build)

        end_time = None
        if finished and started is not None and build.get("duration") is not None:
            end_time = started + timedelta(milliseconds=build["duration"])

        return Pipeline(
            provider=ProviderKind.JENKINS,
            id=str(number),
            build_number=number,
            name=build.get("displayName"),
            job_name=repository,
            repository_name=repository,
            status=status_normalizer.jenkins_status(build),
            url=build.get("url"),
            sha=sha,
            branch=branch,
            event_type=status_normalizer.jenkins_event_type(build),
            created_at=started,
            start_time=started,
            end_time=end_time,
            finished=finished,
        )

    async def list_runs(self, repository: str, run_filter: RunFilter) -> list[Pipeline]:
        # ``builds`` is capped server-side; ``allBuilds`` is the exhaustive view
        if run_filter.page_limit is None:
            key, tree = "allBuilds", f"allBuilds[{BUILD_FIELDS}]"
        else:
            key, tree = "builds", f"builds[{BUILD_FIELDS}]{{0,{run_filter.page_limit}}}"

        response = await self._request(
            "GET", f"{self._job_path(repository)}/api/json", params={"tree": tree}
        )
        builds = response.json().get(key) or []
        pipelines = [self._to_pipeline(build, repository) for build in builds]

        filtered = self.apply_client_filters(pipelines, run_filter)
        if run_filter.page_limit is not None:
            filtered = filtered[: run_filter.page_limit]
        return filtered

    def _build_path(self, pipeline: Pipeline) -> str:
        job = pipeline.job_name or pipeline.repository_name
        number = pipeline.build_number if pipeline.build_number is not None else pipeline.id
        return f"{self._job_path(job)}/{number}"

    async def get_run(self, pipeline: Pipeline) -> Pipeline:
        response = await self._request(
            "GET", f"{self._build_path(pipeline)}/api/json", params={"tree": BUILD_FIELDS}
        )
        return self._to_pipeline(response.json(), pipeline.repository_name)

    async def cancel(self, pipeline: Pipeline) -> None:
        raise NotSupportedError(
            f"Jenkins build cancellation is not supported ({pipeline.display_name})"
        )

    async def get_logs(self, pipeline: Pipeline) -> str:
        """Fetch build console log from Jenkins API."""
        try:
            response = await self._request("GET", f"{self._build_path(pipeline)}/consoleText")
            return response.text
        except ControlPlaneError as e:
            logger.warning(f"Failed to fetch Jenkins logs for {pipeline.display_name}: {e}")
            return f"Logs unavailable for {pipeline.display_name}: {e.message}"
