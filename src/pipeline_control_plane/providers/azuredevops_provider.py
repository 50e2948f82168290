"""Azure Pipelines provider integration.

Builds are resolved through the build definition named after the repository,
then listed with continuation-token paging.

Reference: https://learn.microsoft.com/en-us/rest/api/azure/devops/build
"""

import base64
import logging
from typing import Any, Optional

from pipeline_control_plane.config import Settings
from pipeline_control_plane.errors import (
    ConfigurationError,
    ConflictError,
    ControlPlaneError,
    ProviderRequestError,
)
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

MAX_TOP = 100
CONTINUATION_HEADER = "x-ms-continuationtoken"

_REASON_FILTERS = {
    EventType.PUSH: "individualCI,batchedCI",
    EventType.PULL_REQUEST: "manual,pullRequest",
}


@ProviderRegistry.register(ProviderKind.AZURE)
class AzureDevOpsProvider(BaseCIProvider):
    """Azure Pipelines provider implementation.

    Handles:
    - Build listing by definition name
    - Build cancellation through a status patch
    - Log retrieval via the build logs API
    """

    secret_provider = "azure"

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.AZURE

    @classmethod
    def build_config(
        cls,
        credentials: Optional[IntegrationCredentials],
        settings: Settings,
    ) -> ProviderConfig:
        if credentials is None:
            raise ConfigurationError("Azure DevOps credentials are required")
        host = credentials.require("host").rstrip("/")
        if not host.startswith(("http://", "https://")):
            host = f"https://{host}"
        organization = credentials.require("organization")
        project = settings.azure_project or credentials.get("project")
        if not project:
            raise ConfigurationError("Azure DevOps project not configured")
        return ProviderConfig(
            kind=ProviderKind.AZURE,
            api_url=f"{host}/{organization}",
            api_token=credentials.require("token"),
            extra={"project": project, "api_version": settings.azure_api_version},
        )

    def _get_auth_headers(self) -> dict[str, str]:
        """Get Azure DevOps API authentication headers.

        Azure DevOps uses Basic auth with an empty user and the PAT as password.
        """
        headers = {"Content-Type": "application/json"}
        if self.config.api_token:
            credentials = f":{self.config.api_token}"
            encoded = base64.b64encode(credentials.encode()).decode()
            headers["Authorization"] = f"Basic {encoded}"
        return headers

    @property
    def _builds_path(self) -> str:
        return f"/{self.config.extra['project']}/_apis/build/builds"

    def _params(self, **extra: Any) -> dict[str, Any]:
        return {"api-version": self.config.extra.get("api_version", "7.1"), **extra}

    def _to_pipeline(self, build: dict[str, Any], repository: str) -> Pipeline:
        trigger_info = build.get("triggerInfo") or {}
        branch = build.get("sourceBranch")
        if branch:
            branch = branch.removeprefix("refs/heads/")
        web = ((build.get("_links") or {}).get("web") or {}).get("href")

        return Pipeline(
            provider=ProviderKind.AZURE,
            id=str(build.get("id", "")),
            name=build.get("buildNumber") or (build.get("definition") or {}).get("name"),
            repository_name=repository,
            status=status_normalizer.azure_status(build),
            url=web or build.get("url"),
            sha=trigger_info.get("pr.sourceSha") or build.get("sourceVersion"),
            branch=branch,
            event_type=status_normalizer.azure_event_type(build),
            created_at=parse_timestamp(build.get("queueTime")),
            start_time=parse_timestamp(build.get("startTime")),
            end_time=parse_timestamp(build.get("finishTime")),
            finished=status_normalizer.azure_finished(build),
        )

    async def _definition_ids(self, repository: str) -> list[int]:
        response = await self._request(
            "GET",
            f"/{self.config.extra['project']}/_apis/build/definitions",
            params=self._params(name=repository),
        )
        return [d["id"] for d in response.json().get("value") or [] if "id" in d]

    async def list_runs(self, repository: str, run_filter: RunFilter) -> list[Pipeline]:
        definition_ids = await self._definition_ids(repository)
        if not definition_ids:
            logger.info(f"No Azure build definition named {repository}")
            return []

        params = self._params(
            definitions=",".join(str(i) for i in definition_ids),
            queryOrder="queueTimeDescending",
        )
        params["$top"] = min(MAX_TOP, run_filter.page_limit or MAX_TOP)
        if run_filter.branch:
            params["branchName"] = f"refs/heads/{run_filter.branch}"
        if run_filter.event:
            params["reasonFilter"] = _REASON_FILTERS[run_filter.event]
        if run_filter.since:
            params["minTime"] = run_filter.since.isoformat()

        pipelines: list[Pipeline] = []
        continuation: Optional[str] = None
        while True:
            page_params = dict(params)
            if continuation:
                page_params["continuationToken"] = continuation
            response = await self._request("GET", self._builds_path, params=page_params)
            builds = response.json().get("value") or []
            pipelines.extend(self._to_pipeline(build, repository) for build in builds)

            continuation = response.headers.get(CONTINUATION_HEADER)
            if not continuation or self.page_budget_reached(len(pipelines), run_filter):
                break

        filtered = self.apply_client_filters(pipelines, run_filter)
        if run_filter.page_limit is not None:
            filtered = filtered[: run_filter.page_limit]
        return filtered

    async def get_run(self, pipeline: Pipeline) -> Pipeline:
        response = await self._request(
            "GET", f"{self._builds_path}/{pipeline.id}", params=self._params()
        )
        return self._to_pipeline(response.json(), pipeline.repository_name)

    async def cancel(self, pipeline: Pipeline) -> None:
        logger.info(f"Cancelling Azure build {pipeline.id} of {pipeline.repository_name}")
        try:
            await self._request(
                "PATCH",
                f"{self._builds_path}/{pipeline.id}",
                params=self._params(),
                json={"status": "cancelling"},
                retry=False,
            )
        except ProviderRequestError as e:
            # Azure answers 400 when the build has already completed
            if e.status_code == 400:
                raise ConflictError(
                    e.message,
                    status_code=e.status_code,
                    provider_error_code=e.provider_error_code,
                ) from e
            raise

    async def get_logs(self, pipeline: Pipeline) -> str:
        """Concatenate every log of the build timeline."""
        logs_path = f"{self._builds_path}/{pipeline.id}/logs"
        try:
            response = await self._request("GET", logs_path, params=self._params())
        except ControlPlaneError as e:
            logger.warning(f"Failed to list logs for Azure build {pipeline.id}: {e}")
            return f"Logs unavailable for build {pipeline.id}: {e.message}"

        entries = response.json().get("value") or []
        if not entries:
            return f"No logs available yet for build {pipeline.id}"

        sections: list[str] = []
        for entry in entries:
            log_id = entry.get("id")
            try:
                content = await self._request(
                    "GET",
                    f"{logs_path}/{log_id}",
                    params=self._params(),
                    headers={"Accept": "text/plain"},
                )
                sections.append(f"=== log {log_id} ===\n{content.text}")
            except ControlPlaneError as e:
                logger.warning(f"Failed to fetch Azure log {log_id} of build {pipeline.id}: {e}")
                sections.append(f"=== log {log_id} ===\n(unavailable: {e.message})")
        return "\n".join(sections)
