"""Wire-level tests for the provider adapters, using httpx mock transports."""

import asyncio
import base64
import json
from collections.abc import Callable

import httpx
import pytest

from pipeline_control_plane.errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    NotSupportedError,
    TransportError,
)
from pipeline_control_plane.ops.retry_policy import OperationCancelledError
from pipeline_control_plane.providers.azuredevops_provider import AzureDevOpsProvider
from pipeline_control_plane.providers.base_provider import ProviderConfig, ProviderRegistry
from pipeline_control_plane.providers.github_provider import GitHubActionsProvider
from pipeline_control_plane.providers.gitlab_provider import GitLabProvider
from pipeline_control_plane.providers.jenkins_provider import JenkinsProvider
from pipeline_control_plane.providers.tekton_provider import TektonProvider
from pipeline_control_plane.schemas.pipeline import (
    EventType,
    PipelineStatus,
    ProviderKind,
    PullRequestRef,
    RunFilter,
)
from pipeline_control_plane.services.cancellation_engine import CancellationEngine
from pipeline_control_plane.services.integration_secrets import IntegrationSecretStore
from pipeline_control_plane.services.kube_client import MERGE_PATCH, KubeClient
from pipeline_control_plane.services.pipeline_matcher import PipelineMatcher


class Recorder:
    """Mock transport handler that records requests."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def _github_run(run_id: int, **fields) -> dict:
    run = {
        "id": run_id,
        "run_number": run_id,
        "name": "CI",
        "status": "completed",
        "conclusion": "success",
        "head_sha": "abc123",
        "head_branch": "main",
        "event": "pull_request",
        "html_url": f"https://github.com/test-org/my-component/actions/runs/{run_id}",
        "created_at": "2026-01-09T10:00:00Z",
        "updated_at": "2026-01-09T10:05:00Z",
    }
    run.update(fields)
    return run


class TestGitHubActions:
    def _provider(self, settings, recorder: Recorder) -> GitHubActionsProvider:
        config = ProviderConfig(
            kind=ProviderKind.GITHUB_ACTIONS,
            api_url="https://api.github.test",
            api_token="ghp_test",
            extra={"organization": "test-org"},
        )
        return GitHubActionsProvider(config, settings=settings, transport=recorder.transport)

    @pytest.mark.asyncio
    async def test_list_runs_sends_server_filters(self, settings) -> None:
        recorder = Recorder(
            lambda r: httpx.Response(200, json={"total_count": 1, "workflow_runs": [_github_run(7)]})
        )
        provider = self._provider(settings, recorder)

        runs = await provider.list_runs(
            "my-component", RunFilter(sha="abc123", event=EventType.PULL_REQUEST, page_limit=50)
        )

        request = recorder.requests[0]
        assert request.url.path == "/repos/test-org/my-component/actions/runs"
        assert request.url.params["head_sha"] == "abc123"
        assert request.url.params["event"] == "pull_request"
        assert request.url.params["per_page"] == "50"
        assert request.headers["Authorization"] == "Bearer ghp_test"
        assert len(runs) == 1
        run = runs[0]
        assert run.id == "7"
        assert run.status == PipelineStatus.SUCCESS
        assert run.event_type == EventType.PULL_REQUEST
        assert run.finished is True
        assert run.repository_name == "my-component"
        await provider.close()

    @pytest.mark.asyncio
    async def test_list_runs_pages_exhaustively(self, settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            page = int(request.url.params["page"])
            runs = [_github_run(i) for i in range(100)] if page == 1 else [_github_run(1000)]
            return httpx.Response(200, json={"total_count": 101, "workflow_runs": runs})

        recorder = Recorder(handler)
        provider = self._provider(settings, recorder)

        runs = await provider.list_runs("my-component", RunFilter())

        assert len(runs) == 101
        assert [r.url.params["page"] for r in recorder.requests] == ["1", "2"]
        await provider.close()

    @pytest.mark.asyncio
    async def test_owner_repo_form_bypasses_organization(self, settings) -> None:
        recorder = Recorder(lambda r: httpx.Response(200, json={"total_count": 0, "workflow_runs": []}))
        provider = self._provider(settings, recorder)

        assert await provider.list_runs("other-org/tool", RunFilter()) == []
        assert recorder.requests[0].url.path == "/repos/other-org/tool/actions/runs"
        await provider.close()

    @pytest.mark.asyncio
    async def test_cancel_conflict_is_classified_and_not_retried(self, settings, make_pipeline) -> None:
        recorder = Recorder(lambda r: httpx.Response(409, json={"message": "Cannot cancel a workflow run that is completed."}))
        provider = self._provider(settings, recorder)

        with pytest.raises(ConflictError) as exc_info:
            await provider.cancel(make_pipeline("7"))

        assert exc_info.value.status_code == 409
        assert len(recorder.requests) == 1
        assert recorder.requests[0].method == "POST"
        assert recorder.requests[0].url.path.endswith("/actions/runs/7/cancel")
        await provider.close()

    @pytest.mark.asyncio
    async def test_server_errors_are_retried_then_raised(self, settings, make_pipeline) -> None:
        recorder = Recorder(lambda r: httpx.Response(502, text="bad gateway"))
        provider = self._provider(settings, recorder)

        with pytest.raises(TransportError):
            await provider.get_run(make_pipeline("7"))

        assert len(recorder.requests) == settings.adapter_retry_attempts + 1
        await provider.close()

    @pytest.mark.asyncio
    async def test_caller_cancel_event_stops_server_error_backoff(self, settings) -> None:
        slow = settings.model_copy(
            update={"adapter_retry_attempts": 3, "adapter_retry_min_seconds": 1.0, "adapter_retry_max_seconds": 1.0}
        )
        recorder = Recorder(lambda r: httpx.Response(503, text="unavailable"))
        provider = self._provider(slow, recorder)
        matcher = PipelineMatcher(provider, settings=slow)
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, cancel.set)
        started = loop.time()

        with pytest.raises(OperationCancelledError):
            await matcher.get_pipeline(
                PullRequestRef(repository="my-component", sha="abc123", pull_number=7),
                PipelineStatus.SUCCESS,
                cancel_event=cancel,
            )

        assert loop.time() - started < 0.5
        assert len(recorder.requests) == 1
        await provider.close()

    @pytest.mark.asyncio
    async def test_cancel_all_stops_retrying_when_caller_cancels(self, settings) -> None:
        slow = settings.model_copy(
            update={"adapter_retry_attempts": 3, "adapter_retry_min_seconds": 1.0, "adapter_retry_max_seconds": 1.0}
        )

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(503, text="unavailable")
            if "my-component-gitops" in request.url.path:
                return httpx.Response(404, json={"message": "Not Found"})
            run = _github_run(7, status="in_progress", conclusion=None)
            return httpx.Response(200, json={"total_count": 1, "workflow_runs": [run]})

        provider = self._provider(slow, Recorder(handler))
        engine = CancellationEngine(provider, settings=slow)
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, cancel.set)
        started = loop.time()

        result = await engine.cancel_all("my-component", cancel_event=cancel)

        assert loop.time() - started < 0.5
        assert (result.total, result.failed) == (1, 1)
        assert result.is_balanced
        assert "cancelled by caller" in result.details[0].reason
        await provider.close()

    @pytest.mark.asyncio
    async def test_logs_fall_back_to_job_summary(self, settings, make_pipeline) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/logs"):
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(
                200,
                json={"jobs": [{"name": "build", "status": "in_progress", "steps": [{"number": 1, "name": "checkout", "status": "completed", "conclusion": "success"}]}]},
            )

        provider = self._provider(settings, Recorder(handler))

        logs = await provider.get_logs(make_pipeline("7"))

        assert "Job: build" in logs
        assert "Step 1: checkout" in logs
        await provider.close()

    def test_build_config_requires_token(self, settings) -> None:
        from pipeline_control_plane.services.integration_secrets import IntegrationCredentials

        with pytest.raises(ConfigurationError):
            GitHubActionsProvider.build_config(IntegrationCredentials("tssc-github-integration", {}), settings)


class TestGitLab:
    def _provider(self, settings, recorder: Recorder) -> GitLabProvider:
        config = ProviderConfig(
            kind=ProviderKind.GITLAB_CI,
            api_url="https://gitlab.test",
            api_token="glpat",
            extra={"group": "team"},
        )
        return GitLabProvider(config, settings=settings, transport=recorder.transport)

    @pytest.mark.asyncio
    async def test_pages_by_next_page_header(self, settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            page = request.url.params["page"]
            if page == "1":
                body = [{"id": 2, "iid": 2, "status": "running", "source": "merge_request_event", "sha": "abc", "ref": "feature"}]
                return httpx.Response(200, json=body, headers={"X-Next-Page": "2"})
            body = [{"id": 1, "iid": 1, "status": "success", "source": "push", "sha": "def", "ref": "main"}]
            return httpx.Response(200, json=body, headers={"X-Next-Page": ""})

        recorder = Recorder(handler)
        provider = self._provider(settings, recorder)

        runs = await provider.list_runs("my-component", RunFilter())

        assert [r.id for r in runs] == ["2", "1"]
        assert runs[0].event_type == EventType.PULL_REQUEST
        assert runs[0].status == PipelineStatus.RUNNING
        assert runs[1].finished is True
        assert "team%2Fmy-component" in str(recorder.requests[0].url)
        assert recorder.requests[0].headers["PRIVATE-TOKEN"] == "glpat"
        await provider.close()

    @pytest.mark.asyncio
    async def test_event_maps_to_source_param(self, settings) -> None:
        recorder = Recorder(lambda r: httpx.Response(200, json=[]))
        provider = self._provider(settings, recorder)

        await provider.list_runs("my-component", RunFilter(event=EventType.PULL_REQUEST, sha="abc"))

        params = recorder.requests[0].url.params
        assert params["source"] == "merge_request_event"
        assert params["sha"] == "abc"
        await provider.close()

    @pytest.mark.asyncio
    async def test_missing_project_is_not_found(self, settings) -> None:
        provider = self._provider(settings, Recorder(lambda r: httpx.Response(404, json={"message": "404 Project Not Found"})))

        with pytest.raises(NotFoundError):
            await provider.list_runs("ghost", RunFilter())
        await provider.close()


class TestJenkins:
    def _provider(self, settings, recorder: Recorder) -> JenkinsProvider:
        config = ProviderConfig(
            kind=ProviderKind.JENKINS,
            api_url="https://jenkins.test",
            api_token="api-token",
            username="bot",
            extra={"folder": "team"},
        )
        return JenkinsProvider(config, settings=settings, transport=recorder.transport)

    @pytest.mark.asyncio
    async def test_builds_carry_revision_and_trigger(self, settings) -> None:
        build = {
            "number": 12,
            "result": None,
            "building": True,
            "timestamp": 1767952800000,
            "displayName": "#12",
            "actions": [
                {"causes": [{"_class": "com.cloudbees.jenkins.GitHubPushCause", "shortDescription": "Started by GitHub push by dev"}]},
                {"lastBuiltRevision": {"SHA1": "ABC123", "branch": [{"name": "refs/remotes/origin/main"}]}},
            ],
        }
        recorder = Recorder(lambda r: httpx.Response(200, json={"builds": [build]}))
        provider = self._provider(settings, recorder)

        runs = await provider.list_runs("my-component", RunFilter(page_limit=100))

        request = recorder.requests[0]
        assert request.url.path == "/job/team/job/my-component/api/json"
        assert request.url.params["tree"].endswith("{0,100}")
        expected = base64.b64encode(b"bot:api-token").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"
        run = runs[0]
        assert run.id == "12"
        assert run.sha == "abc123"
        assert run.branch == "main"
        assert run.event_type == EventType.PUSH
        assert run.status == PipelineStatus.RUNNING
        assert run.finished is False
        await provider.close()

    @pytest.mark.asyncio
    async def test_exhaustive_listing_uses_all_builds(self, settings) -> None:
        recorder = Recorder(lambda r: httpx.Response(200, json={"allBuilds": []}))
        provider = self._provider(settings, recorder)

        await provider.list_runs("my-component", RunFilter())

        assert recorder.requests[0].url.params["tree"].startswith("allBuilds[")
        await provider.close()

    @pytest.mark.asyncio
    async def test_cancel_is_not_supported(self, settings, make_pipeline) -> None:
        recorder = Recorder(lambda r: httpx.Response(200))
        provider = self._provider(settings, recorder)

        with pytest.raises(NotSupportedError):
            await provider.cancel(make_pipeline("12", provider=ProviderKind.JENKINS))
        assert recorder.requests == []


class TestAzure:
    def _provider(self, settings, recorder: Recorder) -> AzureDevOpsProvider:
        config = ProviderConfig(
            kind=ProviderKind.AZURE,
            api_url="https://dev.azure.test/org",
            api_token="pat",
            extra={"project": "proj", "api_version": "7.1"},
        )
        return AzureDevOpsProvider(config, settings=settings, transport=recorder.transport)

    @pytest.mark.asyncio
    async def test_lists_builds_of_named_definition_with_continuation(self, settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/definitions"):
                return httpx.Response(200, json={"value": [{"id": 4, "name": "my-component"}]})
            if "continuationToken" not in request.url.params:
                build = {"id": 2, "status": "inProgress", "reason": "pullRequest", "sourceBranch": "refs/heads/feature", "queueTime": "2026-01-09T10:00:00Z"}
                return httpx.Response(200, json={"value": [build]}, headers={"x-ms-continuationtoken": "next"})
            build = {"id": 1, "status": "completed", "result": "partiallySucceeded", "reason": "individualCI", "sourceBranch": "refs/heads/main"}
            return httpx.Response(200, json={"value": [build]})

        recorder = Recorder(handler)
        provider = self._provider(settings, recorder)

        runs = await provider.list_runs("my-component", RunFilter(event=EventType.PULL_REQUEST))

        assert recorder.requests[0].url.params["name"] == "my-component"
        builds_request = recorder.requests[1]
        assert builds_request.url.path == "/org/proj/_apis/build/builds"
        assert builds_request.url.params["definitions"] == "4"
        assert builds_request.url.params["reasonFilter"] == "manual,pullRequest"
        assert recorder.requests[2].url.params["continuationToken"] == "next"
        # Client-side event filter drops the push build returned by the server
        assert [r.id for r in runs] == ["2"]
        assert runs[0].branch == "feature"
        assert runs[0].status == PipelineStatus.RUNNING
        await provider.close()

    @pytest.mark.asyncio
    async def test_unknown_definition_has_no_runs(self, settings) -> None:
        recorder = Recorder(lambda r: httpx.Response(200, json={"value": []}))
        provider = self._provider(settings, recorder)

        assert await provider.list_runs("ghost", RunFilter()) == []
        assert len(recorder.requests) == 1
        await provider.close()

    @pytest.mark.asyncio
    async def test_cancel_patches_status(self, settings, make_pipeline) -> None:
        recorder = Recorder(lambda r: httpx.Response(200, json={"id": 2, "status": "cancelling"}))
        provider = self._provider(settings, recorder)

        await provider.cancel(make_pipeline("2", provider=ProviderKind.AZURE))

        request = recorder.requests[0]
        assert request.method == "PATCH"
        assert json.loads(request.content) == {"status": "cancelling"}

    @pytest.mark.asyncio
    async def test_cancel_of_completed_build_is_conflict(self, settings, make_pipeline) -> None:
        recorder = Recorder(
            lambda r: httpx.Response(400, json={"typeKey": "BuildStatusInvalidChangeException", "message": "completed"})
        )
        provider = self._provider(settings, recorder)

        with pytest.raises(ConflictError) as exc_info:
            await provider.cancel(make_pipeline("2", provider=ProviderKind.AZURE))

        assert exc_info.value.status_code == 400
        assert exc_info.value.provider_error_code == "BuildStatusInvalidChangeException"
        await provider.close()

    @pytest.mark.asyncio
    async def test_cancel_of_missing_build_is_not_found(self, settings, make_pipeline) -> None:
        provider = self._provider(settings, Recorder(lambda r: httpx.Response(404, json={})))

        with pytest.raises(NotFoundError):
            await provider.cancel(make_pipeline("2", provider=ProviderKind.AZURE))
        await provider.close()


def _pipeline_run(name: str, *, sha: str = "abc123", state: str = "running", condition: str = "Unknown", reason: str = "Running") -> dict:
    return {
        "metadata": {
            "name": name,
            "creationTimestamp": "2026-01-09T10:00:00Z",
            "labels": {
                "pipelinesascode.tekton.dev/url-repository": "my-component",
                "pipelinesascode.tekton.dev/sha": sha,
                "pipelinesascode.tekton.dev/state": state,
            },
            "annotations": {"pipelinesascode.tekton.dev/on-event": "[pull_request]"},
        },
        "status": {"conditions": [{"type": "Succeeded", "status": condition, "reason": reason}]},
    }


class TestTekton:
    def _provider(self, settings, recorder: Recorder) -> TektonProvider:
        kube = KubeClient(settings, transport=recorder.transport)
        config = TektonProvider.build_config(None, settings)
        return TektonProvider(config, settings=settings, kube=kube)

    @pytest.mark.asyncio
    async def test_lists_by_label_selector_with_continue_token(self, settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if "continue" not in request.url.params:
                return httpx.Response(200, json={"items": [_pipeline_run("run-2")], "metadata": {"continue": "tok"}})
            done = _pipeline_run("run-1", state="completed", condition="True", reason="Succeeded")
            return httpx.Response(200, json={"items": [done], "metadata": {}})

        recorder = Recorder(handler)
        provider = self._provider(settings, recorder)

        runs = await provider.list_runs("my-component", RunFilter(sha="abc123"))

        first = recorder.requests[0]
        assert first.url.path == f"/apis/tekton.dev/v1/namespaces/{settings.tekton_namespace}/pipelineruns"
        assert first.url.params["labelSelector"] == (
            "pipelinesascode.tekton.dev/url-repository=my-component,"
            "pipelinesascode.tekton.dev/sha=abc123"
        )
        assert first.headers["Authorization"] == "Bearer test-token"
        assert recorder.requests[1].url.params["continue"] == "tok"
        assert [(r.id, r.status, r.finished) for r in runs] == [
            ("run-2", PipelineStatus.RUNNING, False),
            ("run-1", PipelineStatus.SUCCESS, True),
        ]
        assert runs[0].event_type == EventType.PULL_REQUEST
        await provider.kube.close()

    @pytest.mark.asyncio
    async def test_cancel_sends_merge_patch(self, settings, make_pipeline) -> None:
        recorder = Recorder(lambda r: httpx.Response(200, json=_pipeline_run("run-2")))
        provider = self._provider(settings, recorder)

        await provider.cancel(make_pipeline("run-2", provider=ProviderKind.TEKTON))

        request = recorder.requests[0]
        assert request.method == "PATCH"
        assert request.headers["Content-Type"] == MERGE_PATCH
        assert json.loads(request.content) == {"spec": {"status": "Cancelled"}}
        await provider.kube.close()

    @pytest.mark.asyncio
    async def test_unreadable_cancel_response_is_a_failed_detail(self, settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "PATCH":
                if request.url.path.endswith("/run-b"):
                    return httpx.Response(200, text="<html>proxy error</html>")
                return httpx.Response(200, json=_pipeline_run("run-a"))
            if "my-component-gitops" in request.url.params["labelSelector"]:
                return httpx.Response(200, json={"items": [], "metadata": {}})
            items = [_pipeline_run("run-a"), _pipeline_run("run-b")]
            return httpx.Response(200, json={"items": items, "metadata": {}})

        provider = self._provider(settings, Recorder(handler))
        engine = CancellationEngine(provider, settings=settings)

        result = await engine.cancel_all("my-component")

        assert (result.total, result.cancelled, result.failed) == (2, 1, 1)
        assert result.is_balanced
        assert not result.has_accounting_error
        assert [(d.pipeline_id, d.result) for d in result.details] == [("run-a", "cancelled"), ("run-b", "failed")]
        assert result.details[1].reason.startswith("cancellation failed: ")
        assert [(e.pipeline_id, e.status_code) for e in result.errors] == [("run-b", None)]
        await provider.kube.close()

    @pytest.mark.asyncio
    async def test_cancel_of_missing_run_is_not_found(self, settings, make_pipeline) -> None:
        recorder = Recorder(lambda r: httpx.Response(404, json={"reason": "NotFound"}))
        provider = self._provider(settings, recorder)

        with pytest.raises(NotFoundError) as exc_info:
            await provider.cancel(make_pipeline("ghost", provider=ProviderKind.TEKTON))

        assert exc_info.value.provider_error_code == "NotFound"
        assert len(recorder.requests) == 1
        await provider.kube.close()

    @pytest.mark.asyncio
    async def test_logs_walk_task_run_pods(self, settings, make_pipeline) -> None:
        namespace = settings.tekton_namespace

        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path.endswith("/pipelineruns/run-2"):
                return httpx.Response(200, json={"status": {"childReferences": [{"kind": "TaskRun", "name": "run-2-build"}]}})
            if path.endswith("/taskruns/run-2-build"):
                return httpx.Response(200, json={"status": {"podName": "run-2-build-pod"}})
            if path == f"/api/v1/namespaces/{namespace}/pods/run-2-build-pod":
                return httpx.Response(200, json={"spec": {"containers": [{"name": "step-build"}]}})
            if path.endswith("/pods/run-2-build-pod/log"):
                return httpx.Response(200, text=f"built with {request.url.params['container']}")
            return httpx.Response(404, json={})

        provider = self._provider(settings, Recorder(handler))

        logs = await provider.get_logs(make_pipeline("run-2", provider=ProviderKind.TEKTON))

        assert "=== run-2-build/step-build ===" in logs
        assert "built with step-build" in logs
        await provider.kube.close()


@pytest.mark.asyncio
async def test_registry_builds_provider_from_integration_secret(settings) -> None:
    encoded = {key: base64.b64encode(value.encode()).decode() for key, value in {"token": "ghp_secret"}.items()}
    recorder = Recorder(lambda r: httpx.Response(200, json={"data": encoded}))
    kube = KubeClient(settings, transport=recorder.transport)
    secrets = IntegrationSecretStore(kube, namespace="tssc")

    provider = await ProviderRegistry.create(
        ProviderKind.GITHUB_ACTIONS, secrets=secrets, kube=kube, settings=settings
    )

    assert isinstance(provider, GitHubActionsProvider)
    assert provider.config.api_token == "ghp_secret"
    assert provider.config.extra["organization"] == "test-org"
    assert recorder.requests[0].url.path == "/api/v1/namespaces/tssc/secrets/tssc-github-integration"
    await kube.close()


def test_registry_rejects_unknown_kind() -> None:
    with pytest.raises(ConfigurationError):
        ProviderRegistry.get_provider_class("circleci")  # type: ignore[arg-type]
