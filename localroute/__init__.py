"""
LocalRoute - local development routing for Docker setups.

Turns a small list of sites into nginx and dnsmasq configuration, provisions
TLS certificates, points the system resolver at the local DNS service and
verifies that every domain answers.
"""

__version__ = "0.1.0"

from .errors import (
    LocalRouteError,
    SiteValidationError,
    ProvisioningError,
    SystemConfigurationError,
    LifecycleError,
    VerificationFailure,
)
from .schemas import Site
from .services.site_registry import SiteRegistry
from .services.config_renderer import ConfigRenderer

__all__ = [
    "LocalRouteError",
    "SiteValidationError",
    "ProvisioningError",
    "SystemConfigurationError",
    "LifecycleError",
    "VerificationFailure",
    "Site",
    "SiteRegistry",
    "ConfigRenderer",
]
