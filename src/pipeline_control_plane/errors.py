"""Classified errors raised by provider adapters and the ArgoCD boundary.

Every error carries enough metadata for the cancellation engine and the
convergence controller to decide between retrying and bailing.
"""

from __future__ import annotations


class ControlPlaneError(Exception):
    """Base exception for all control plane errors."""

    retryable_default = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        provider_error_code: str | None = None,
        retryable: bool | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.provider_error_code = provider_error_code
        self.retryable = self.retryable_default if retryable is None else retryable


class ConfigurationError(ControlPlaneError):
    """Missing secret key, malformed URL or unsupported provider kind."""

    pass


class TransportError(ControlPlaneError):
    """Network failure, timeout or 5xx response."""

    retryable_default = True


class AuthError(ControlPlaneError):
    """401/403 response from a provider or the cluster."""

    pass


class NotFoundError(ControlPlaneError):
    """404 response; the run or collection does not exist."""

    pass


class ConflictError(ControlPlaneError):
    """409 response or a provider-specific "not cancellable" answer."""

    pass


class NotSupportedError(ControlPlaneError):
    """The provider does not offer the requested capability."""

    pass


class ProviderRequestError(ControlPlaneError):
    """Any other 4xx response, e.g. 422 validation failures."""

    pass


class ArgoCDCliError(ControlPlaneError):
    """The ArgoCD CLI exited with a non-zero code."""

    def __init__(self, command: str, exit_code: int, stderr: str, *, retryable: bool = False):
        super().__init__(
            f"ArgoCD CLI command '{command}' failed with exit code {exit_code}: {stderr.strip()}",
            provider_error_code=str(exit_code),
            retryable=retryable,
        )
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


def classify_status_code(
    status_code: int,
    message: str,
    *,
    provider_error_code: str | None = None,
) -> ControlPlaneError:
    """Map an HTTP status code onto the error taxonomy."""
    if status_code in (401, 403):
        error_cls: type[ControlPlaneError] = AuthError
    elif status_code == 404:
        error_cls = NotFoundError
    elif status_code == 409:
        error_cls = ConflictError
    elif status_code >= 500 or status_code == 429:
        error_cls = TransportError
    else:
        error_cls = ProviderRequestError

    return error_cls(
        message,
        status_code=status_code,
        provider_error_code=provider_error_code,
    )
