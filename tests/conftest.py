"""Test configuration and fixtures."""

import asyncio
from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient

from pipeline_control_plane.config import Settings, get_settings
from pipeline_control_plane.errors import NotFoundError
from pipeline_control_plane.providers.base_provider import BaseCIProvider, ProviderConfig
from pipeline_control_plane.schemas.pipeline import (
    Pipeline,
    PipelineStatus,
    ProviderKind,
    RunFilter,
)

BASE_TIME = datetime(2026, 1, 9, tzinfo=UTC)


@pytest.fixture
def settings() -> Settings:
    """Settings with near-zero backoff so retry loops finish quickly."""
    return Settings(
        kube_api_url="https://kube.test",
        kube_token="test-token",
        github_organization="test-org",
        adapter_retry_attempts=2,
        adapter_retry_min_seconds=0.001,
        adapter_retry_max_seconds=0.001,
        match_retries=2,
        match_min_backoff_seconds=0.001,
        match_max_backoff_seconds=0.001,
        pipeline_poll_interval_seconds=0.01,
        argocd_poll_interval_seconds=0.01,
        cancel_concurrency=10,
    )


def _make_pipeline(
    pipeline_id: str,
    status: PipelineStatus = PipelineStatus.RUNNING,
    *,
    repository: str = "my-component",
    minutes: int = 0,
    provider: ProviderKind = ProviderKind.GITHUB_ACTIONS,
    **fields: Any,
) -> Pipeline:
    fields.setdefault("name", f"run-{pipeline_id}")
    fields.setdefault("finished", status.is_terminal)
    return Pipeline(
        provider=provider,
        id=pipeline_id,
        repository_name=repository,
        status=status,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        **fields,
    )


@pytest.fixture
def make_pipeline() -> Callable[..., Pipeline]:
    """Factory for normalized runs with sensible defaults."""
    return _make_pipeline


class FakeProvider(BaseCIProvider):
    """In-memory adapter recording every call."""

    def __init__(
        self,
        runs: Optional[dict[str, Any]] = None,
        *,
        settings: Settings,
        kind: ProviderKind = ProviderKind.GITHUB_ACTIONS,
    ):
        super().__init__(ProviderConfig(kind=kind), settings=settings)
        self._kind = kind
        # repository -> list of runs, an exception, or a callable(call_number)
        self.runs: dict[str, Any] = runs or {}
        # run id -> sequence of snapshots/exceptions returned by successive get_run calls
        self.snapshots: dict[str, list[Any]] = {}
        self.cancel_errors: dict[str, BaseException] = {}
        self.cancel_delays: dict[str, float] = {}
        self.cancel_calls: list[str] = []
        self.list_calls: list[tuple[str, RunFilter]] = []
        self.get_calls = 0

    @property
    def kind(self) -> ProviderKind:
        return self._kind

    @classmethod
    def build_config(cls, credentials: Any, settings: Settings) -> ProviderConfig:
        return ProviderConfig(kind=ProviderKind.GITHUB_ACTIONS)

    def _get_auth_headers(self) -> dict[str, str]:
        return {}

    async def list_runs(self, repository: str, run_filter: RunFilter) -> list[Pipeline]:
        self.list_calls.append((repository, run_filter))
        value = self.runs.get(repository, NotFoundError(f"{repository} not found", status_code=404))
        if callable(value):
            value = value(len(self.list_calls))
        if isinstance(value, BaseException):
            raise value
        return self.apply_client_filters(value, run_filter)

    async def get_run(self, pipeline: Pipeline) -> Pipeline:
        self.get_calls += 1
        sequence = self.snapshots.get(pipeline.id) or [pipeline]
        value = sequence.pop(0) if len(sequence) > 1 else sequence[0]
        if isinstance(value, BaseException):
            raise value
        return value

    async def get_logs(self, pipeline: Pipeline) -> str:
        return f"logs of {pipeline.id}"

    async def cancel(self, pipeline: Pipeline) -> None:
        self.cancel_calls.append(pipeline.id)
        delay = self.cancel_delays.get(pipeline.id)
        if delay:
            await asyncio.sleep(delay)
        error = self.cancel_errors.get(pipeline.id)
        if error is not None:
            raise error


@pytest.fixture
def fake_provider(settings: Settings) -> Callable[..., FakeProvider]:
    """Factory for in-memory providers bound to the test settings."""

    def factory(runs: Optional[dict[str, Any]] = None, **kwargs: Any) -> FakeProvider:
        return FakeProvider(runs, settings=settings, **kwargs)

    return factory


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch) -> Generator[TestClient, None, None]:
    """Create test client for API tests."""
    monkeypatch.setenv("KUBE_TOKEN", "test-token")
    monkeypatch.setenv("LOG_FORMAT", "text")
    get_settings.cache_clear()
    from pipeline_control_plane.main import create_app

    app = create_app()
    with TestClient(app) as c:
        yield c
    get_settings.cache_clear()
