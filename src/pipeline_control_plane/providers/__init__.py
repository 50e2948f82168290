"""CI Provider package.

Unified interface for multiple CI/CD platform integrations.
"""

import importlib

from pipeline_control_plane.providers.base_provider import (
    BaseCIProvider,
    ProviderConfig,
    ProviderRegistry,
)

__all__ = [
    "BaseCIProvider",
    "ProviderConfig",
    "ProviderRegistry",
    "register_all_providers",
]

_PROVIDER_MODULES = (
    "pipeline_control_plane.providers.tekton_provider",
    "pipeline_control_plane.providers.github_provider",
    "pipeline_control_plane.providers.gitlab_provider",
    "pipeline_control_plane.providers.jenkins_provider",
    "pipeline_control_plane.providers.azuredevops_provider",
)


# Import providers to trigger registration
# These imports must come after the base classes are defined
def register_all_providers() -> None:
    """Import all provider implementations to register them."""
    for module in _PROVIDER_MODULES:
        importlib.import_module(module)
