"""CI Provider abstraction layer.

Provides a unified capability surface for all CI/CD backends:
- Listing runs for a repository (server-side filters where supported)
- Fetching a single run
- Downloading best-effort logs
- Cancelling a run

Each provider implementation inherits from BaseCIProvider and
registers with the ProviderRegistry.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar, Optional, TypeVar

import httpx

from pipeline_control_plane.config import Settings, get_settings
from pipeline_control_plane.errors import (
    ConfigurationError,
    ControlPlaneError,
    TransportError,
    classify_status_code,
)
from pipeline_control_plane.observability.metrics import METRICS
from pipeline_control_plane.ops.retry_policy import RetryExhaustedError, RetryPolicy, retry_async
from pipeline_control_plane.schemas.pipeline import Pipeline, ProviderKind, RunFilter
from pipeline_control_plane.services.integration_secrets import (
    IntegrationCredentials,
    IntegrationSecretStore,
)
from pipeline_control_plane.services.kube_client import KubeClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings and epoch milliseconds into aware datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable timestamp: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class ProviderConfig:
    """Configuration for a CI provider."""

    kind: ProviderKind
    api_url: Optional[str] = None
    api_token: Optional[str] = None
    username: Optional[str] = None  # For Jenkins
    extra: dict[str, Any] = field(default_factory=dict)


class BaseCIProvider(ABC):
    """Abstract base class for CI provider adapters.

    Each provider must implement:
    - list_runs(): Runs of one repository, newest first where the API allows
    - get_run(): Fresh snapshot of a run
    - get_logs(): Best-effort log text, never raising for "no logs yet"
    - cancel(): Request cancellation; 404/409 surface as classified errors
    """

    # Name used for the ``tssc-<name>-integration`` secret, None when unused
    secret_provider: ClassVar[Optional[str]] = None

    def __init__(
        self,
        config: ProviderConfig,
        *,
        settings: Optional[Settings] = None,
        kube: Optional[KubeClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize provider with configuration.

        Args:
            config: Provider-specific configuration
            settings: Application settings (defaults to cached settings)
            kube: Kubernetes client for cluster-backed providers
            transport: Optional httpx transport, used by tests
        """
        self.config = config
        self.settings = settings or get_settings()
        self.kube = kube
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    @abstractmethod
    def kind(self) -> ProviderKind:
        """Return the provider kind."""
        ...

    @classmethod
    @abstractmethod
    def build_config(
        cls,
        credentials: Optional[IntegrationCredentials],
        settings: Settings,
    ) -> ProviderConfig:
        """Build configuration from integration credentials and settings."""
        ...

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            retries=self.settings.adapter_retry_attempts,
            min_timeout=self.settings.adapter_retry_min_seconds,
            max_timeout=self.settings.adapter_retry_max_seconds,
            factor=2.0,
            jitter=True,
        )

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client for API calls."""
        if self._client is None:
            if not self.config.api_url:
                raise ConfigurationError(f"{self.kind.value} API URL not configured")
            self._client = httpx.AsyncClient(
                base_url=self.config.api_url.rstrip("/"),
                headers=self._get_auth_headers(),
                timeout=httpx.Timeout(self.settings.http_timeout_seconds, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @abstractmethod
    def _get_auth_headers(self) -> dict[str, str]:
        """Get authentication headers for API requests."""
        ...

    def _provider_error_code(self, response: httpx.Response) -> Optional[str]:
        """Extract a provider-specific error code from an error body."""
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict):
            for key in ("typeKey", "error", "message"):
                value = body.get(key)
                if isinstance(value, str):
                    return value[:120]
        return None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        retry: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Make an API request with classification and transient-error retry.

        Raises:
            TransportError: Network failure, timeout or 5xx after the retry budget
            AuthError / NotFoundError / ConflictError / ProviderRequestError: 4xx
        """
        client = await self.get_client()
        provider = self.kind.value

        async def attempt(_: int) -> httpx.Response:
            try:
                response = await client.request(method, path, **kwargs)
            except httpx.HTTPError as exc:
                METRICS.provider_requests_total.labels(
                    provider=provider, method=method, outcome="transport_error"
                ).inc()
                raise TransportError(f"{provider} request failed: {method} {path}: {exc}") from exc

            outcome = "ok" if response.status_code < 400 else str(response.status_code)
            METRICS.provider_requests_total.labels(
                provider=provider, method=method, outcome=outcome
            ).inc()

            if response.status_code >= 400:
                raise classify_status_code(
                    response.status_code,
                    f"{provider} API error: {response.status_code} {method} {path} - {response.text[:200]}",
                    provider_error_code=self._provider_error_code(response),
                )
            return response

        if not retry:
            return await attempt(1)
        return await self._with_retry(attempt, label=f"{provider}.request")

    async def _with_retry(
        self,
        operation: Callable[[int], Awaitable[T]],
        *,
        label: str,
    ) -> T:
        """Run ``operation`` under the adapter retry policy.

        An exhausted budget re-raises the last classified error.
        """
        try:
            return await retry_async(operation, self.retry_policy, label=label)
        except RetryExhaustedError as exc:
            if isinstance(exc.last_error, ControlPlaneError):
                raise exc.last_error from exc
            raise TransportError(f"{label} failed: {exc}") from exc

    @abstractmethod
    async def list_runs(self, repository: str, run_filter: RunFilter) -> list[Pipeline]:
        """List runs of ``repository``.

        Args:
            repository: Repository name (routes later get/cancel calls)
            run_filter: Server-side filters where supported; the rest apply client-side

        Returns:
            Normalized runs; ``page_limit=None`` pages exhaustively
        """
        ...

    @abstractmethod
    async def get_run(self, pipeline: Pipeline) -> Pipeline:
        """Fetch a fresh snapshot of ``pipeline``."""
        ...

    @abstractmethod
    async def get_logs(self, pipeline: Pipeline) -> str:
        """Fetch best-effort log text for ``pipeline``."""
        ...

    @abstractmethod
    async def cancel(self, pipeline: Pipeline) -> None:
        """Request cancellation of ``pipeline``."""
        ...

    @staticmethod
    def apply_client_filters(
        pipelines: Iterable[Pipeline],
        run_filter: RunFilter,
    ) -> list[Pipeline]:
        """Apply the filters a provider API could not evaluate server-side."""
        result = []
        for pipeline in pipelines:
            if run_filter.sha and (pipeline.sha or "").lower() != run_filter.sha.lower():
                continue
            if run_filter.branch and pipeline.branch != run_filter.branch:
                continue
            if run_filter.event and pipeline.event_type != run_filter.event:
                continue
            if run_filter.status and pipeline.status != run_filter.status:
                continue
            if (
                run_filter.since
                and pipeline.created_at is not None
                and pipeline.created_at < run_filter.since
            ):
                continue
            result.append(pipeline)
        return result

    @staticmethod
    def page_budget_reached(collected: int, run_filter: RunFilter) -> bool:
        return run_filter.page_limit is not None and collected >= run_filter.page_limit


class ProviderRegistry:
    """Registry for CI provider implementations.

    Allows dynamic registration and lookup of providers.
    """

    _providers: dict[ProviderKind, type[BaseCIProvider]] = {}

    @classmethod
    def register(cls, kind: ProviderKind):
        """Decorator to register a provider class."""

        def decorator(provider_class: type[BaseCIProvider]):
            cls._providers[kind] = provider_class
            logger.debug(f"Registered CI provider: {kind.value}")
            return provider_class

        return decorator

    @classmethod
    def get_provider_class(cls, kind: ProviderKind) -> type[BaseCIProvider]:
        """Get provider class by kind."""
        try:
            return cls._providers[ProviderKind(kind)]
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(f"Unsupported provider kind: {kind}") from exc

    @classmethod
    async def create(
        cls,
        kind: ProviderKind,
        *,
        secrets: IntegrationSecretStore,
        kube: KubeClient,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> BaseCIProvider:
        """Create a provider instance from its integration secret.

        Args:
            kind: Provider kind
            secrets: Credential cache used to resolve the integration secret
            kube: Kubernetes client, passed to cluster-backed providers
            settings: Application settings
            transport: Optional httpx transport

        Returns:
            Provider instance
        """
        settings = settings or get_settings()
        provider_class = cls.get_provider_class(kind)

        credentials = None
        if provider_class.secret_provider:
            credentials = await secrets.load(provider_class.secret_provider)

        config = provider_class.build_config(credentials, settings)
        return provider_class(config, settings=settings, kube=kube, transport=transport)

    @classmethod
    def list_registered(cls) -> list[ProviderKind]:
        """List all registered provider kinds."""
        return list(cls._providers.keys())
