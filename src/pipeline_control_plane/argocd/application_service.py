"""Read access to ArgoCD ``Application`` custom resources."""

import logging

from pipeline_control_plane.config import Settings, get_settings
from pipeline_control_plane.errors import AuthError, ControlPlaneError
from pipeline_control_plane.schemas.argocd import ArgoApplication, Environment
from pipeline_control_plane.services.kube_client import KubeClient

logger = logging.getLogger(__name__)

ARGO_GROUP = "argoproj.io"
ARGO_VERSION = "v1alpha1"


def application_name(component: str, environment: Environment | str) -> str:
    """Applications are named ``<component>-<environment>``."""
    return f"{component}-{Environment(environment).value}"


class ArgoApplicationService:
    """Fetches Application snapshots through the Kubernetes API."""

    def __init__(self, kube: KubeClient, settings: Settings | None = None):
        self.kube = kube
        self.settings = settings or get_settings()

    def _namespace(self, namespace: str | None) -> str:
        return namespace or self.settings.argocd_namespace

    async def get_application(self, name: str, namespace: str | None = None) -> ArgoApplication:
        """
        Read an Application.

        An expired token (401/403) triggers one forced refresh and one retry.
        """
        ns = self._namespace(namespace)
        try:
            resource = await self.kube.get_custom_object(
                ARGO_GROUP, ARGO_VERSION, ns, "applications", name
            )
        except AuthError as e:
            logger.warning(f"Auth error reading application {name}, refreshing token: {e}")
            await self.kube.refresh_token()
            resource = await self.kube.get_custom_object(
                ARGO_GROUP, ARGO_VERSION, ns, "applications", name
            )
        return ArgoApplication.from_resource(resource)

    async def describe_application(self, name: str, namespace: str | None = None) -> str:
        """Human-readable status summary used for diagnostics."""
        try:
            application = await self.get_application(name, namespace)
        except ControlPlaneError as e:
            return f"Unable to fetch application {name}: {e.message}"
        return application.summary()
