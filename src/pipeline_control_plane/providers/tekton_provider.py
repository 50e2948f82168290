"""Tekton (Pipelines-as-Code) provider integration.

PipelineRuns are ``tekton.dev/v1`` custom resources read through the
Kubernetes API. Repository, commit and trigger metadata come from the
Pipelines-as-Code labels and annotations.
"""

import logging
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
from pipeline_control_plane.services.kube_client import KubeClient

logger = logging.getLogger(__name__)

TEKTON_GROUP = "tekton.dev"
TEKTON_VERSION = "v1"

LABEL_REPOSITORY = "pipelinesascode.tekton.dev/url-repository"
LABEL_SHA = "pipelinesascode.tekton.dev/sha"
ANNOTATION_LOG_URL = "pipelinesascode.tekton.dev/log-url"
ANNOTATION_SOURCE_BRANCH = "pipelinesascode.tekton.dev/source-branch"
ANNOTATION_BRANCH = "pipelinesascode.tekton.dev/branch"

PAGE_SIZE = 100


@ProviderRegistry.register(ProviderKind.TEKTON)
class TektonProvider(BaseCIProvider):
    """Tekton provider implementation.

    Handles:
    - PipelineRun listing by repository/sha labels
    - Cancellation through ``spec.status``
    - TaskRun pod log retrieval
    """

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.TEKTON

    @classmethod
    def build_config(
        cls,
        credentials: Optional[IntegrationCredentials],
        settings: Settings,
    ) -> ProviderConfig:
        return ProviderConfig(
            kind=ProviderKind.TEKTON,
            extra={"namespace": settings.tekton_namespace},
        )

    def _get_auth_headers(self) -> dict[str, str]:
        # Authentication is handled by the Kubernetes client
        return {}

    @property
    def namespace(self) -> str:
        return self.config.extra.get("namespace") or self.settings.tekton_namespace

    def _kube(self) -> KubeClient:
        if self.kube is None:
            raise ConfigurationError("Tekton provider requires a Kubernetes client")
        return self.kube

    def _to_pipeline(self, resource: dict[str, Any], repository: Optional[str] = None) -> Pipeline:
        metadata = resource.get("metadata") or {}
        labels = metadata.get("labels") or {}
        annotations = metadata.get("annotations") or {}
        status = resource.get("status") or {}

        return Pipeline(
            provider=ProviderKind.TEKTON,
            id=metadata.get("name", ""),
            name=metadata.get("name"),
            repository_name=repository or labels.get(LABEL_REPOSITORY, ""),
            status=status_normalizer.tekton_status(resource),
            url=annotations.get(ANNOTATION_LOG_URL),
            sha=labels.get(LABEL_SHA),
            branch=annotations.get(ANNOTATION_SOURCE_BRANCH) or annotations.get(ANNOTATION_BRANCH),
            event_type=status_normalizer.tekton_event_type(resource),
            created_at=parse_timestamp(metadata.get("creationTimestamp")),
            start_time=parse_timestamp(status.get("startTime")),
            end_time=parse_timestamp(status.get("completionTime")),
            finished=status_normalizer.tekton_finished(resource),
        )

    async def list_runs(self, repository: str, run_filter: RunFilter) -> list[Pipeline]:
        kube = self._kube()
        selector = f"{LABEL_REPOSITORY}={repository}"
        if run_filter.sha:
            selector += f",{LABEL_SHA}={run_filter.sha}"

        pipelines: list[Pipeline] = []
        continue_token: Optional[str] = None
        while True:
            token = continue_token

            async def fetch_page(_: int) -> dict[str, Any]:
                return await kube.list_custom_objects(
                    TEKTON_GROUP,
                    TEKTON_VERSION,
                    self.namespace,
                    "pipelineruns",
                    label_selector=selector,
                    limit=PAGE_SIZE,
                    continue_token=token,
                )

            page = await self._with_retry(fetch_page, label="tekton.list_runs")
            for item in page.get("items") or []:
                pipelines.append(self._to_pipeline(item, repository))

            continue_token = (page.get("metadata") or {}).get("continue")
            if not continue_token or self.page_budget_reached(len(pipelines), run_filter):
                break

        filtered = self.apply_client_filters(pipelines, run_filter)
        if run_filter.page_limit is not None:
            filtered = filtered[: run_filter.page_limit]
        logger.debug(
            f"Listed {len(filtered)} Tekton PipelineRuns for {repository}",
            extra={"namespace": self.namespace, "selector": selector},
        )
        return filtered

    async def _get_resource(self, name: str) -> dict[str, Any]:
        kube = self._kube()

        async def fetch(_: int) -> dict[str, Any]:
            return await kube.get_custom_object(
                TEKTON_GROUP, TEKTON_VERSION, self.namespace, "pipelineruns", name
            )

        return await self._with_retry(fetch, label="tekton.get_run")

    async def get_run(self, pipeline: Pipeline) -> Pipeline:
        resource = await self._get_resource(pipeline.id)
        return self._to_pipeline(resource, pipeline.repository_name)

    async def cancel(self, pipeline: Pipeline) -> None:
        kube = self._kube()
        logger.info(f"Cancelling Tekton PipelineRun {pipeline.id}")

        async def patch(_: int) -> dict[str, Any]:
            return await kube.patch_custom_object(
                TEKTON_GROUP,
                TEKTON_VERSION,
                self.namespace,
                "pipelineruns",
                pipeline.id,
                {"spec": {"status": "Cancelled"}},
            )

        await self._with_retry(patch, label="tekton.cancel")

    async def get_logs(self, pipeline: Pipeline) -> str:
        """Collect container logs of every TaskRun pod of the PipelineRun."""
        kube = self._kube()
        try:
            resource = await self._get_resource(pipeline.id)
        except ControlPlaneError as e:
            logger.warning(f"Failed to fetch PipelineRun {pipeline.id} for logs: {e}")
            return f"Logs unavailable for PipelineRun {pipeline.id}: {e.message}"

        child_refs = (resource.get("status") or {}).get("childReferences") or []
        task_runs = [ref.get("name") for ref in child_refs if ref.get("kind") == "TaskRun"]
        if not task_runs:
            return f"No TaskRuns found yet for PipelineRun {pipeline.id}"

        sections: list[str] = []
        for task_run_name in task_runs:
            try:
                task_run = await kube.get_custom_object(
                    TEKTON_GROUP, TEKTON_VERSION, self.namespace, "taskruns", task_run_name
                )
                pod_name = (task_run.get("status") or {}).get("podName")
                if not pod_name:
                    sections.append(f"=== {task_run_name} ===\n(pod not scheduled yet)")
                    continue

                pod = await kube.get_pod(pod_name, self.namespace)
                containers = [c.get("name") for c in (pod.get("spec") or {}).get("containers") or []]
                for container in containers:
                    text = await kube.get_pod_log(pod_name, self.namespace, container)
                    sections.append(f"=== {task_run_name}/{container} ===\n{text}")
            except ControlPlaneError as e:
                logger.warning(
                    f"Failed to fetch logs for TaskRun {task_run_name}: {e}",
                    extra={"pipeline_run": pipeline.id},
                )
                sections.append(f"=== {task_run_name} ===\n(logs unavailable: {e.message})")

        return "\n".join(sections)
