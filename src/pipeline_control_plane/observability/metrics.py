from __future__ import annotations

from dataclasses import dataclass

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
)
from prometheus_client.exposition import generate_latest


@dataclass(frozen=True)
class ControlPlaneMetrics:
    registry: CollectorRegistry
    http_requests_total: Counter
    http_request_duration_seconds: Histogram
    provider_requests_total: Counter
    retries_total: Counter
    match_outcomes_total: Counter
    cancel_outcomes_total: Counter
    convergence_outcomes_total: Counter
    argocd_cli_invocations_total: Counter


_REGISTRY = CollectorRegistry(auto_describe=True)

METRICS = ControlPlaneMetrics(
    registry=_REGISTRY,
    http_requests_total=Counter(
        "control_plane_http_requests_total",
        "Total HTTP requests by method/route/status",
        labelnames=("method", "route", "status"),
        registry=_REGISTRY,
    ),
    http_request_duration_seconds=Histogram(
        "control_plane_http_request_duration_seconds",
        "HTTP request duration in seconds by route/method",
        labelnames=("route", "method"),
        registry=_REGISTRY,
    ),
    provider_requests_total=Counter(
        "control_plane_provider_requests_total",
        "Provider API requests by provider, method and outcome",
        labelnames=("provider", "method", "outcome"),
        registry=_REGISTRY,
    ),
    retries_total=Counter(
        "control_plane_retries_total",
        "Retry attempts by operation label",
        labelnames=("operation",),
        registry=_REGISTRY,
    ),
    match_outcomes_total=Counter(
        "control_plane_match_outcomes_total",
        "Pipeline match outcomes by provider and outcome",
        labelnames=("provider", "outcome"),
        registry=_REGISTRY,
    ),
    cancel_outcomes_total=Counter(
        "control_plane_cancel_outcomes_total",
        "Per-run cancellation results by provider and result",
        labelnames=("provider", "result"),
        registry=_REGISTRY,
    ),
    convergence_outcomes_total=Counter(
        "control_plane_convergence_outcomes_total",
        "Convergence wait outcomes by mode and outcome",
        labelnames=("mode", "outcome"),
        registry=_REGISTRY,
    ),
    argocd_cli_invocations_total=Counter(
        "control_plane_argocd_cli_invocations_total",
        "ArgoCD CLI invocations by subcommand and exit status",
        labelnames=("subcommand", "status"),
        registry=_REGISTRY,
    ),
)


def render_prometheus() -> tuple[bytes, str]:
    return generate_latest(METRICS.registry), CONTENT_TYPE_LATEST


def observe_http_request(*, method: str, route: str, status: str, duration_seconds: float) -> None:
    METRICS.http_requests_total.labels(method=method, route=route, status=status).inc()
    METRICS.http_request_duration_seconds.labels(route=route, method=method).observe(
        duration_seconds
    )
