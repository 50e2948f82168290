"""Async Kubernetes REST client.

Reaches the cluster API over plain HTTPS with httpx to:
- Read secrets (base64-decoded)
- Resolve OpenShift route hosts
- List, get and merge-patch custom resources (Tekton, ArgoCD)
- Read pod and container logs
"""

import base64
import logging
from pathlib import Path
from typing import Any

import httpx

from pipeline_control_plane.config import Settings, get_settings
from pipeline_control_plane.errors import ConfigurationError, TransportError, classify_status_code
from pipeline_control_plane.observability.metrics import METRICS

logger = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"


class KubeClient:
    """
    Thin async wrapper over the Kubernetes API server.

    The bearer token is read from settings or the mounted service-account
    file; ``refresh_token`` re-reads it for callers that hit a 401.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = self.settings.kube_api_url.rstrip("/")
        self._transport = transport
        self._token: str | None = None
        self._client: httpx.AsyncClient | None = None

    def _load_token(self) -> str:
        if self.settings.kube_token:
            return self.settings.kube_token
        token_path = Path(self.settings.kube_token_file)
        if token_path.is_file():
            return token_path.read_text(encoding="utf-8").strip()
        logger.warning("Kubernetes token not configured - requests are unauthenticated")
        return ""

    def _verify(self) -> bool | str:
        if self.settings.kube_ca_file:
            return self.settings.kube_ca_file
        return self.settings.kube_verify_ssl

    def _build_headers(self) -> dict[str, str]:
        if self._token is None:
            self._token = self._load_token()
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._build_headers(),
                timeout=httpx.Timeout(self.settings.http_timeout_seconds, connect=10.0),
                verify=self._verify(),
                transport=self._transport,
            )
        return self._client

    async def refresh_token(self) -> None:
        """Drop the cached token and client so the next call re-authenticates."""
        self._token = None
        await self.close()
        logger.info("Kubernetes token refreshed")

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self.get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            METRICS.provider_requests_total.labels(
                provider="kubernetes", method=method, outcome="transport_error"
            ).inc()
            raise TransportError(f"Kubernetes API request failed: {method} {path}: {exc}") from exc

        outcome = "ok" if response.status_code < 400 else str(response.status_code)
        METRICS.provider_requests_total.labels(
            provider="kubernetes", method=method, outcome=outcome
        ).inc()

        if response.status_code >= 400:
            reason = None
            try:
                reason = response.json().get("reason")
            except ValueError:
                pass
            raise classify_status_code(
                response.status_code,
                f"Kubernetes API error: {response.status_code} {method} {path} - {response.text[:200]}",
                provider_error_code=reason,
            )
        return response

    # ============================================
    # CORE RESOURCES
    # ============================================

    async def get_secret(self, name: str, namespace: str) -> dict[str, str]:
        """Read a secret and return its decoded ``data`` map."""
        response = await self._request("GET", f"/api/v1/namespaces/{namespace}/secrets/{name}")
        data = response.json().get("data") or {}
        decoded: dict[str, str] = {}
        for key, value in data.items():
            try:
                decoded[key] = base64.b64decode(value).decode("utf-8")
            except (ValueError, UnicodeDecodeError) as exc:
                raise ConfigurationError(
                    f"Secret {namespace}/{name} key '{key}' is not valid base64 text"
                ) from exc
        return decoded

    async def get_route_host(self, name: str, namespace: str) -> str:
        """Return ``spec.host`` of an OpenShift route."""
        response = await self._request(
            "GET", f"/apis/route.openshift.io/v1/namespaces/{namespace}/routes/{name}"
        )
        host = (response.json().get("spec") or {}).get("host")
        if not host:
            raise ConfigurationError(f"Route {namespace}/{name} has no host")
        return host

    async def get_pod(self, name: str, namespace: str) -> dict[str, Any]:
        response = await self._request("GET", f"/api/v1/namespaces/{namespace}/pods/{name}")
        return response.json()

    async def get_pod_log(self, name: str, namespace: str, container: str | None = None) -> str:
        params = {"container": container} if container else None
        response = await self._request(
            "GET", f"/api/v1/namespaces/{namespace}/pods/{name}/log", params=params
        )
        return response.text

    # ============================================
    # CUSTOM RESOURCES
    # ============================================

    @staticmethod
    def _custom_path(group: str, version: str, namespace: str, plural: str) -> str:
        return f"/apis/{group}/{version}/namespaces/{namespace}/{plural}"

    async def list_custom_objects(
        self,
        group: str,
        version: str,
        namespace: str,
        plural: str,
        *,
        label_selector: str | None = None,
        limit: int | None = None,
        continue_token: str | None = None,
    ) -> dict[str, Any]:
        """List custom objects; the raw list (with ``metadata.continue``) is returned."""
        params: dict[str, Any] = {}
        if label_selector:
            params["labelSelector"] = label_selector
        if limit:
            params["limit"] = limit
        if continue_token:
            params["continue"] = continue_token
        response = await self._request(
            "GET", self._custom_path(group, version, namespace, plural), params=params or None
        )
        return response.json()

    async def get_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str
    ) -> dict[str, Any]:
        response = await self._request(
            "GET", f"{self._custom_path(group, version, namespace, plural)}/{name}"
        )
        return response.json()

    async def patch_custom_object(
        self,
        group: str,
        version: str,
        namespace: str,
        plural: str,
        name: str,
        body: dict[str, Any],
    ) -> dict[str, Any]:
        """Apply a JSON merge-patch to a custom object."""
        response = await self._request(
            "PATCH",
            f"{self._custom_path(group, version, namespace, plural)}/{name}",
            json=body,
            headers={"Content-Type": MERGE_PATCH},
        )
        return response.json()
