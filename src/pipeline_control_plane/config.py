"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Literal["dev", "staging", "prod"] = "dev"
    debug: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_prefix: str = "/api/v1"

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"

    # ============================================
    # KUBERNETES
    # ============================================

    kube_api_url: str = "https://kubernetes.default.svc"
    kube_token: str = ""
    kube_token_file: str = "/var/run/secrets/kubernetes.io/serviceaccount/token"
    kube_ca_file: str = ""
    kube_verify_ssl: bool = True

    integration_secret_namespace: str = "tssc"
    tekton_namespace: str = "tssc-app-ci"
    argocd_namespace: str = "tssc-gitops"

    # ============================================
    # CI/CD PROVIDER DEFAULTS
    # ============================================

    github_api_base_url: str = "https://api.github.com"
    github_organization: str = ""
    gitlab_group: str = ""
    jenkins_folder: str = ""
    azure_project: str = ""
    azure_api_version: str = "7.1"

    # HTTP transport
    http_timeout_seconds: float = 30.0
    adapter_retry_attempts: int = 3
    adapter_retry_min_seconds: float = 2.0
    adapter_retry_max_seconds: float = 30.0

    # ============================================
    # CONTROL PLANE BEHAVIOUR
    # ============================================

    match_page_ceiling: int = 100
    match_retries: int = 10
    match_min_backoff_seconds: float = 5.0
    match_max_backoff_seconds: float = 15.0

    pipeline_poll_interval_seconds: float = 30.0
    pipeline_wait_timeout_seconds: float = 900.0

    cancel_concurrency: int = 10

    # ArgoCD
    argocd_poll_interval_seconds: float = 10.0
    argocd_sync_timeout_seconds: float = 240.0
    argocd_cli_path: str = "argocd"
    argocd_insecure: bool = True
    argocd_skip_test_tls: bool = True
    argocd_grpc_web: bool = True

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "prod"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
