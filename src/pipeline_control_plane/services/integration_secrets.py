"""Provider credentials loaded from integration secrets.

Each provider's credentials live in a fixed secret
``tssc-<provider>-integration`` in the integration namespace. Secrets are read
once per provider and cached for the life of the process.
"""

import asyncio
import logging

from pipeline_control_plane.config import get_settings
from pipeline_control_plane.errors import ConfigurationError, NotFoundError
from pipeline_control_plane.services.kube_client import KubeClient

logger = logging.getLogger(__name__)


class IntegrationCredentials:
    """Decoded key/value pairs of one integration secret."""

    def __init__(self, secret_name: str, data: dict[str, str]):
        self.secret_name = secret_name
        self._data = data

    def get(self, key: str, default: str | None = None) -> str | None:
        value = self._data.get(key)
        return value if value else default

    def require(self, key: str) -> str:
        """Return a non-empty value or raise ``ConfigurationError``."""
        value = self._data.get(key)
        if not value:
            raise ConfigurationError(f"Secret '{self.secret_name}' is missing required key '{key}'")
        return value

    def __contains__(self, key: str) -> bool:
        return bool(self._data.get(key))


class IntegrationSecretStore:
    """Init-once credential cache keyed by provider secret name."""

    def __init__(self, kube: KubeClient, namespace: str | None = None):
        self.kube = kube
        self.namespace = namespace or get_settings().integration_secret_namespace
        self._cache: dict[str, IntegrationCredentials] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def secret_name(provider: str) -> str:
        return f"tssc-{provider}-integration"

    async def load(self, provider: str) -> IntegrationCredentials:
        """Return cached credentials for ``provider`` (e.g. ``github``, ``gitlab``)."""
        name = self.secret_name(provider)
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        async with self._lock:
            cached = self._cache.get(name)
            if cached is not None:
                return cached
            try:
                data = await self.kube.get_secret(name, self.namespace)
            except NotFoundError as exc:
                raise ConfigurationError(
                    f"Integration secret '{name}' not found in namespace '{self.namespace}'"
                ) from exc

            credentials = IntegrationCredentials(name, data)
            self._cache[name] = credentials
            logger.info(
                "Loaded integration credentials",
                extra={"secret": name, "namespace": self.namespace, "keys": sorted(data)},
            )
            return credentials

    def invalidate(self, provider: str | None = None) -> None:
        """Forget cached credentials for one provider, or all of them."""
        if provider is None:
            self._cache.clear()
        else:
            self._cache.pop(self.secret_name(provider), None)
