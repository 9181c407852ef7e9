from __future__ import annotations


class LocalRouteError(RuntimeError):
    """Base error. ``fatal`` decides whether the pipeline aborts or carries on."""

    fatal = True

    def __init__(self, detail: str, entity: str | None = None, diagnostics: dict[str, object] | None = None):
        super().__init__(detail)
        self.detail = detail
        self.entity = entity
        self.diagnostics = diagnostics or {}


class SiteValidationError(LocalRouteError, ValueError):
    @property
    def domain(self) -> str | None:
        return self.entity


class ProvisioningError(LocalRouteError):
    pass


class CertificateError(ProvisioningError):
    pass


class ConfigWriteError(ProvisioningError):
    pass


class SystemConfigurationError(LocalRouteError):
    fatal = False


class LifecycleError(LocalRouteError):
    pass


class VerificationFailure(LocalRouteError):
    fatal = False


class ReadinessTimeout(LifecycleError):
    fatal = False
