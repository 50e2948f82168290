"""Pure mapping from provider run payloads onto the canonical state model.

Each provider reports status differently: Tekton through conditions and
labels, GitHub as a ``(status, conclusion)`` pair, GitLab and Jenkins as flat
strings, Azure as a ``(state, result)`` tuple. The functions here are the only
place that understands those shapes; adapters call them and never hand raw
fields to the rest of the system.
"""

from collections.abc import Callable
from typing import Any

from pipeline_control_plane.errors import ConfigurationError
from pipeline_control_plane.schemas.pipeline import EventType, PipelineStatus, ProviderKind

TEKTON_STATE_LABEL = "pipelinesascode.tekton.dev/state"
TEKTON_EVENT_ANNOTATION = "pipelinesascode.tekton.dev/on-event"


# ============================================
# TEKTON
# ============================================


def tekton_status(resource: dict[str, Any]) -> PipelineStatus:
    conditions = (resource.get("status") or {}).get("conditions") or []
    if not conditions:
        return PipelineStatus.UNKNOWN

    condition = conditions[0]
    status = condition.get("status")
    kind = condition.get("type")
    reason = condition.get("reason") or ""

    if status == "True" and kind == "Succeeded":
        return PipelineStatus.SUCCESS
    if status == "False" and kind == "Succeeded":
        return PipelineStatus.FAILURE
    if status == "Unknown":
        if reason in ("Running", "Started"):
            return PipelineStatus.RUNNING
        if reason == "Pending":
            return PipelineStatus.PENDING
    return PipelineStatus.UNKNOWN


def tekton_event_type(resource: dict[str, Any]) -> EventType | None:
    annotations = (resource.get("metadata") or {}).get("annotations") or {}
    on_event = annotations.get(TEKTON_EVENT_ANNOTATION) or ""
    if "pull_request" in on_event:
        return EventType.PULL_REQUEST
    if "push" in on_event:
        return EventType.PUSH
    return None


def tekton_finished(resource: dict[str, Any]) -> bool:
    labels = (resource.get("metadata") or {}).get("labels") or {}
    return labels.get(TEKTON_STATE_LABEL) == "completed"


# ============================================
# GITHUB ACTIONS
# ============================================

_GITHUB_CONCLUSIONS = {
    "success": PipelineStatus.SUCCESS,
    "neutral": PipelineStatus.SUCCESS,
    "failure": PipelineStatus.FAILURE,
    "timed_out": PipelineStatus.FAILURE,
    "cancelled": PipelineStatus.FAILURE,
    "action_required": PipelineStatus.FAILURE,
    "skipped": PipelineStatus.UNKNOWN,
    "stale": PipelineStatus.UNKNOWN,
}

_GITHUB_PENDING = frozenset({"queued", "waiting", "requested", "pending"})


def github_status(run: dict[str, Any]) -> PipelineStatus:
    status = run.get("status")
    if status == "completed":
        return _GITHUB_CONCLUSIONS.get(run.get("conclusion") or "", PipelineStatus.UNKNOWN)
    if status == "in_progress":
        return PipelineStatus.RUNNING
    if status in _GITHUB_PENDING:
        return PipelineStatus.PENDING
    return PipelineStatus.UNKNOWN


def github_event_type(run: dict[str, Any]) -> EventType | None:
    event = run.get("event")
    if event == "pull_request":
        return EventType.PULL_REQUEST
    if event == "push":
        return EventType.PUSH
    return None


def github_finished(run: dict[str, Any]) -> bool:
    return run.get("status") == "completed"


# ============================================
# GITLAB CI
# ============================================

_GITLAB_STATUSES = {
    "success": PipelineStatus.SUCCESS,
    "failed": PipelineStatus.FAILURE,
    "canceled": PipelineStatus.FAILURE,
    # terminal: skipped pipelines never run
    "skipped": PipelineStatus.FAILURE,
    "running": PipelineStatus.RUNNING,
    "created": PipelineStatus.PENDING,
    "waiting_for_resource": PipelineStatus.PENDING,
    "preparing": PipelineStatus.PENDING,
    "pending": PipelineStatus.PENDING,
    "manual": PipelineStatus.PENDING,
    "scheduled": PipelineStatus.PENDING,
}

_GITLAB_FINISHED = frozenset({"success", "failed", "canceled", "skipped", "manual"})


def gitlab_status(pipeline: dict[str, Any]) -> PipelineStatus:
    return _GITLAB_STATUSES.get(pipeline.get("status") or "", PipelineStatus.UNKNOWN)


def gitlab_event_type(pipeline: dict[str, Any]) -> EventType | None:
    source = pipeline.get("source")
    if source == "merge_request_event":
        return EventType.PULL_REQUEST
    if source == "push":
        return EventType.PUSH
    return None


def gitlab_finished(pipeline: dict[str, Any]) -> bool:
    return pipeline.get("status") in _GITLAB_FINISHED


# ============================================
# JENKINS
# ============================================


def jenkins_status(build: dict[str, Any]) -> PipelineStatus:
    if build.get("building"):
        return PipelineStatus.RUNNING
    result = build.get("result")
    if result == "SUCCESS":
        return PipelineStatus.SUCCESS
    if result in ("FAILURE", "UNSTABLE", "ABORTED"):
        return PipelineStatus.FAILURE
    if result == "NOT_BUILT":
        return PipelineStatus.PENDING
    return PipelineStatus.UNKNOWN


def _jenkins_causes(build: dict[str, Any]) -> list[dict[str, Any]]:
    causes = list(build.get("causes") or [])
    for action in build.get("actions") or []:
        if action:
            causes.extend(action.get("causes") or [])
    return causes


def _is_pull_request_action(action: dict[str, Any]) -> bool:
    action_class = action.get("_class") or ""
    return (
        "pull-request" in action_class
        or "PullRequestAction" in action_class
        or bool(action.get("pullRequest"))
    )


def jenkins_event_type(build: dict[str, Any]) -> EventType | None:
    """Derive the trigger from build actions and causes.

    Pull-request actions win over causes. Manual, timer and remote triggers
    yield ``None`` so callers skip event filtering for them.
    """
    for action in build.get("actions") or []:
        if action and _is_pull_request_action(action):
            return EventType.PULL_REQUEST

    for cause in _jenkins_causes(build):
        cause_class = cause.get("_class") or ""
        description = (cause.get("shortDescription") or "").lower()
        if (
            "pullrequest" in cause_class.lower()
            or "mergerequest" in cause_class.lower()
            or "pull request" in description
            or "merge request" in description
        ):
            return EventType.PULL_REQUEST
        if (
            "push" in description
            or "GitHubPushCause" in cause_class
            or "GitLabWebHookCause" in cause_class
            or "SCMTrigger" in cause_class
            or "BranchEventCause" in cause_class
            or "BranchIndexingCause" in cause_class
        ):
            return EventType.PUSH
    return None


def jenkins_finished(build: dict[str, Any]) -> bool:
    return not build.get("building") and build.get("result") is not None


# ============================================
# AZURE PIPELINES
# ============================================


def _azure_token(value: Any) -> str:
    """``notStarted``, ``NOT_STARTED`` and ``not_started`` compare equal."""
    return str(value or "").replace("_", "").replace("-", "").lower()


_AZURE_RESULTS = {
    "succeeded": PipelineStatus.SUCCESS,
    "partiallysucceeded": PipelineStatus.SUCCESS,
    "failed": PipelineStatus.FAILURE,
    "canceled": PipelineStatus.CANCELLED,
}


def azure_status(build: dict[str, Any]) -> PipelineStatus:
    state = _azure_token(build.get("status") or build.get("state"))
    if state in ("notstarted", "postponed"):
        return PipelineStatus.PENDING
    if state in ("inprogress", "cancelling"):
        return PipelineStatus.RUNNING
    if state == "completed":
        return _AZURE_RESULTS.get(_azure_token(build.get("result")), PipelineStatus.UNKNOWN)
    return PipelineStatus.UNKNOWN


def azure_event_type(build: dict[str, Any]) -> EventType | None:
    reason = _azure_token(build.get("reason"))
    # PR automation queues validation builds manually
    if reason in ("manual", "pullrequest"):
        return EventType.PULL_REQUEST
    if reason in ("individualci", "batchedci"):
        return EventType.PUSH
    return None


def azure_finished(build: dict[str, Any]) -> bool:
    return _azure_token(build.get("status") or build.get("state")) == "completed"


# ============================================
# DISPATCH
# ============================================

_Mapper = tuple[
    Callable[[dict[str, Any]], PipelineStatus],
    Callable[[dict[str, Any]], EventType | None],
    Callable[[dict[str, Any]], bool],
]

_MAPPERS: dict[ProviderKind, _Mapper] = {
    ProviderKind.TEKTON: (tekton_status, tekton_event_type, tekton_finished),
    ProviderKind.GITHUB_ACTIONS: (github_status, github_event_type, github_finished),
    ProviderKind.GITLAB_CI: (gitlab_status, gitlab_event_type, gitlab_finished),
    ProviderKind.JENKINS: (jenkins_status, jenkins_event_type, jenkins_finished),
    ProviderKind.AZURE: (azure_status, azure_event_type, azure_finished),
}


def _mapper(provider: ProviderKind) -> _Mapper:
    try:
        return _MAPPERS[ProviderKind(provider)]
    except (KeyError, ValueError) as exc:
        raise ConfigurationError(f"Unsupported provider kind: {provider}") from exc


def normalize_status(provider: ProviderKind, payload: dict[str, Any]) -> PipelineStatus:
    """Canonical status of a raw run payload."""
    return _mapper(provider)[0](payload)


def normalize_event_type(provider: ProviderKind, payload: dict[str, Any]) -> EventType | None:
    """Canonical trigger of a raw run payload, ``None`` when not push or PR."""
    return _mapper(provider)[1](payload)


def is_finished(provider: ProviderKind, payload: dict[str, Any]) -> bool:
    """Provider-level completion signal consumed by cancellation filters."""
    return _mapper(provider)[2](payload)
