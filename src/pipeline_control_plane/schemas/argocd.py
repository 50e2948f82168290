"""ArgoCD application schemas."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Environment(str, Enum):
    """Deployment environments managed per component."""

    DEVELOPMENT = "development"
    STAGE = "stage"
    PROD = "prod"


class ArgoResource(BaseModel):
    """A managed resource entry from ``status.resources``."""

    model_config = ConfigDict(frozen=True)

    kind: str = ""
    name: str = ""
    namespace: str | None = None
    status: str | None = None
    health_status: str | None = None


class ArgoApplication(BaseModel):
    """Snapshot of an ``argoproj.io/v1alpha1`` Application."""

    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str
    sync_status: str = "Unknown"
    sync_revision: str = ""
    health_status: str = "Unknown"
    operation_phase: str = "Unknown"
    operation_message: str | None = None
    reconciled_at: str | None = None
    resources: tuple[ArgoResource, ...] = ()

    @classmethod
    def from_resource(cls, resource: dict[str, Any]) -> "ArgoApplication":
        metadata = resource.get("metadata") or {}
        status = resource.get("status") or {}
        sync = status.get("sync") or {}
        health = status.get("health") or {}
        operation = status.get("operationState") or {}

        resources = tuple(
            ArgoResource(
                kind=item.get("kind", ""),
                name=item.get("name", ""),
                namespace=item.get("namespace"),
                status=item.get("status"),
                health_status=(item.get("health") or {}).get("status"),
            )
            for item in status.get("resources") or []
        )

        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            sync_status=sync.get("status") or "Unknown",
            sync_revision=sync.get("revision") or "",
            health_status=health.get("status") or "Unknown",
            operation_phase=operation.get("phase") or "Unknown",
            operation_message=operation.get("message"),
            reconciled_at=status.get("reconciledAt"),
            resources=resources,
        )

    def summary(self) -> str:
        """One-line status summary used in diagnostics."""
        text = (
            f"Health: {self.health_status}, Sync: {self.sync_status}, "
            f"Operation: {self.operation_phase}, Last Reconciled: {self.reconciled_at or 'Unknown'}"
        )
        if self.resources:
            healthy = sum(1 for r in self.resources if r.health_status == "Healthy")
            text += f", Resources: {healthy}/{len(self.resources)} healthy"
        return text


class SyncOptions(BaseModel):
    """Flags forwarded to ``argocd app sync``."""

    model_config = ConfigDict(frozen=True)

    prune: bool = False
    force: bool = False
    dry_run: bool = False


class SyncWaitResult(BaseModel):
    """Result of waiting for an application to converge."""

    model_config = ConfigDict(frozen=True)

    synced: bool
    status: str = Field(..., description="Last observed sync status")
    message: str
    reason: str | None = None
    last_observed: ArgoApplication | None = None


class ApplicationSyncResult(BaseModel):
    """Result of a CLI-triggered sync followed by monitoring."""

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
    health: str = "Unknown"
    sync: str = "Unknown"
    operation_phase: str = "Unknown"


class ArgoCDConnectionInfo(BaseModel):
    """Server endpoint and admin credentials for CLI login."""

    model_config = ConfigDict(frozen=True)

    server_url: str
    username: str = "admin"
    password: str = Field(..., repr=False)
    insecure: bool = True
    skip_test_tls: bool = True
    grpc_web: bool = True
