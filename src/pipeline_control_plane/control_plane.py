"""Caller-facing facade over the adapters, matcher, cancellation engine and
convergence controller.

A ``ControlPlane`` owns explicit handles: one Kubernetes client, one
credential cache and one adapter per provider kind, created on first use.
"""

import asyncio
import logging
from collections.abc import Mapping
from typing import Any, Optional

import httpx

from pipeline_control_plane.argocd.application_service import ArgoApplicationService
from pipeline_control_plane.argocd.cli import ArgoCDCli
from pipeline_control_plane.argocd.connection_service import ArgoCDConnectionService
from pipeline_control_plane.argocd.sync_service import ArgoCDSyncService
from pipeline_control_plane.config import Settings, get_settings
from pipeline_control_plane.core.logging import provider_ctx
from pipeline_control_plane.providers import BaseCIProvider, ProviderRegistry, register_all_providers
from pipeline_control_plane.schemas.argocd import ApplicationSyncResult, SyncOptions, SyncWaitResult
from pipeline_control_plane.schemas.cancellation import CancelOptions, CancelResult
from pipeline_control_plane.schemas.pipeline import (
    EventType,
    Pipeline,
    PipelineStatus,
    ProviderKind,
    PullRequestRef,
)
from pipeline_control_plane.services.cancellation_engine import CancellationEngine
from pipeline_control_plane.services.convergence import ConvergenceController
from pipeline_control_plane.services.integration_secrets import IntegrationSecretStore
from pipeline_control_plane.services.kube_client import KubeClient
from pipeline_control_plane.services.pipeline_matcher import PipelineMatcher

logger = logging.getLogger(__name__)


class ControlPlane:
    """
    Uniform entry point for pipeline and deployment operations.

    Args:
        settings: Application settings
        kube: Kubernetes client (created from settings when omitted)
        transport: Optional httpx transport passed to provider clients
        cli: ArgoCD CLI runner
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        kube: Optional[KubeClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cli: Optional[ArgoCDCli] = None,
    ):
        register_all_providers()
        self.settings = settings or get_settings()
        self.kube = kube or KubeClient(self.settings)
        self.secrets = IntegrationSecretStore(
            self.kube, self.settings.integration_secret_namespace
        )
        self.applications = ArgoApplicationService(self.kube, self.settings)
        self.argocd = ArgoCDSyncService(
            self.applications,
            ArgoCDConnectionService(self.kube, self.settings),
            cli,
            settings=self.settings,
        )
        self._transport = transport
        self._providers: dict[ProviderKind, BaseCIProvider] = {}
        self._lock = asyncio.Lock()

    # ============================================
    # PROVIDER HANDLES
    # ============================================

    def use_provider(self, provider: BaseCIProvider) -> None:
        """Install an already-built adapter for its provider kind."""
        self._providers[provider.kind] = provider

    async def provider(self, kind: ProviderKind) -> BaseCIProvider:
        """Return the adapter for ``kind``, creating it on first use."""
        kind = ProviderKind(kind)
        existing = self._providers.get(kind)
        if existing is not None:
            return existing
        async with self._lock:
            existing = self._providers.get(kind)
            if existing is None:
                existing = await ProviderRegistry.create(
                    kind,
                    secrets=self.secrets,
                    kube=self.kube,
                    settings=self.settings,
                    transport=self._transport,
                )
                self._providers[kind] = existing
                logger.info(f"Initialized {kind.value} provider")
            return existing

    async def close(self) -> None:
        """Close all provider clients and the Kubernetes client."""
        for provider in self._providers.values():
            await provider.close()
        self._providers.clear()
        await self.kube.close()

    # ============================================
    # PIPELINES
    # ============================================

    async def get_pipeline(
        self,
        kind: ProviderKind,
        ref: PullRequestRef,
        desired_status: PipelineStatus,
        event_type: Optional[EventType] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Optional[Pipeline]:
        """Latest run matching ``ref`` in ``desired_status``, or None."""
        provider = await self.provider(kind)
        token = provider_ctx.set(provider.kind.value)
        try:
            matcher = PipelineMatcher(provider, settings=self.settings)
            return await matcher.get_pipeline(
                ref, desired_status, event_type, cancel_event=cancel_event
            )
        finally:
            provider_ctx.reset(token)

    async def wait_for_terminal(
        self,
        pipeline: Pipeline,
        timeout: Optional[float] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PipelineStatus:
        """Terminal status of ``pipeline``, or UNKNOWN on deadline."""
        if pipeline.is_terminal:
            return pipeline.status
        provider = await self.provider(pipeline.provider)
        controller = ConvergenceController(provider, settings=self.settings)
        return await controller.wait_for_terminal(pipeline, timeout, cancel_event=cancel_event)

    async def wait_for_all_runs(
        self,
        kind: ProviderKind,
        component: str,
        timeout: Optional[float] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> bool:
        """True once no run of ``component`` is unfinished."""
        provider = await self.provider(kind)
        controller = ConvergenceController(provider, settings=self.settings)
        return await controller.wait_for_all_runs(component, timeout, cancel_event=cancel_event)

    async def cancel_all(
        self,
        kind: ProviderKind,
        component: str,
        options: CancelOptions | Mapping[str, Any] | None = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> CancelResult:
        """Cancel active runs of ``component`` and its GitOps repository."""
        provider = await self.provider(kind)
        token = provider_ctx.set(provider.kind.value)
        try:
            engine = CancellationEngine(provider, settings=self.settings)
            return await engine.cancel_all(component, options, cancel_event=cancel_event)
        finally:
            provider_ctx.reset(token)

    async def get_logs(self, pipeline: Pipeline) -> str:
        """Best-effort log text of ``pipeline``."""
        provider = await self.provider(pipeline.provider)
        return await provider.get_logs(pipeline)

    # ============================================
    # ARGOCD
    # ============================================

    async def wait_for_synced(
        self,
        application: str,
        revision: Optional[str],
        timeout: Optional[float] = None,
        *,
        namespace: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncWaitResult:
        controller = ConvergenceController(applications=self.applications, settings=self.settings)
        return await controller.wait_for_synced(
            application,
            revision,
            timeout,
            namespace=namespace,
            cancel_event=cancel_event,
        )

    async def sync_application(
        self,
        application: str,
        options: Optional[SyncOptions] = None,
        timeout: Optional[float] = None,
        *,
        namespace: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ApplicationSyncResult:
        return await self.argocd.sync_application(
            application,
            options,
            timeout,
            namespace=namespace,
            cancel_event=cancel_event,
        )

    async def describe_application(self, application: str, namespace: Optional[str] = None) -> str:
        return await self.applications.describe_application(application, namespace)
