"""Resolve how to reach and authenticate against the ArgoCD server."""

import logging

from pipeline_control_plane.argocd.application_service import ARGO_GROUP, ARGO_VERSION
from pipeline_control_plane.config import Settings, get_settings
from pipeline_control_plane.errors import ConfigurationError, NotFoundError
from pipeline_control_plane.ops.retry_policy import (
    RetryableOperationError,
    RetryExhaustedError,
    RetryPolicy,
    retry_async,
)
from pipeline_control_plane.schemas.argocd import ArgoCDConnectionInfo
from pipeline_control_plane.services.kube_client import KubeClient

logger = logging.getLogger(__name__)

INSTANCE_POLICY = RetryPolicy(retries=3, min_timeout=2.0, max_timeout=30.0, factor=2.0)


class ArgoCDConnectionService:
    """
    Looks up the ArgoCD instance, its server route and admin password.

    The instance is the first ``argocds`` resource in the namespace; its
    server route is ``<instance>-server`` and the admin password lives in
    the ``<instance>-cluster`` secret.
    """

    def __init__(self, kube: KubeClient, settings: Settings | None = None):
        self.kube = kube
        self.settings = settings or get_settings()

    async def get_instance_name(self, namespace: str) -> str:
        async def lookup(_: int) -> str:
            listing = await self.kube.list_custom_objects(
                ARGO_GROUP, ARGO_VERSION, namespace, "argocds"
            )
            items = listing.get("items") or []
            if not items:
                raise RetryableOperationError(f"no ArgoCD instance in namespace {namespace} yet")
            return (items[0].get("metadata") or {}).get("name", "")

        try:
            name = await retry_async(lookup, INSTANCE_POLICY, label="argocd.instance")
        except RetryExhaustedError as e:
            raise ConfigurationError(f"No ArgoCD instance found in namespace {namespace}: {e}") from e
        if not name:
            raise ConfigurationError(f"ArgoCD instance in namespace {namespace} has no name")
        return name

    async def get_server_url(self, namespace: str, instance: str) -> str:
        try:
            return await self.kube.get_route_host(f"{instance}-server", namespace)
        except NotFoundError as e:
            raise ConfigurationError(
                f"No route {instance}-server found for ArgoCD server in namespace {namespace}"
            ) from e

    async def get_admin_password(self, namespace: str, instance: str) -> str:
        secret_name = f"{instance}-cluster"
        try:
            secret = await self.kube.get_secret(secret_name, namespace)
        except NotFoundError as e:
            raise ConfigurationError(
                f"Secret {secret_name} not found in namespace {namespace}"
            ) from e
        password = secret.get("admin.password")
        if not password:
            raise ConfigurationError(
                f"No admin password found in secret {secret_name} in namespace {namespace}"
            )
        return password

    async def get_connection_info(self, namespace: str | None = None) -> ArgoCDConnectionInfo:
        ns = namespace or self.settings.argocd_namespace
        instance = await self.get_instance_name(ns)
        server_url = await self.get_server_url(ns, instance)
        password = await self.get_admin_password(ns, instance)
        logger.info(f"Resolved ArgoCD instance {instance} at {server_url}")
        return ArgoCDConnectionInfo(
            server_url=server_url,
            username="admin",
            password=password,
            insecure=self.settings.argocd_insecure,
            skip_test_tls=self.settings.argocd_skip_test_tls,
            grpc_web=self.settings.argocd_grpc_web,
        )
