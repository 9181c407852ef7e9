from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from localroute.core.config import Settings
from localroute.errors import LifecycleError, LocalRouteError, ProvisioningError, ReadinessTimeout
from localroute.services.certificate_provisioner import CertificateProvisioner, select_backend
from localroute.services.config_renderer import (
    ConfigRenderer,
    RenderedConfig,
    remove_config_files,
    write_config_files,
)
from localroute.services.resolver_adapter import ResolverAdapter, SystemResolverAdapter, release_dns_port
from localroute.services.service_lifecycle import (
    DockerComposeRuntime,
    ServiceLifecycleController,
    wait_until_ready,
)
from localroute.services.site_registry import SiteRegistry
from localroute.services.verification_probe import VerificationProbe, VerificationReport
from localroute.utils.commands import CommandRunner


logger = logging.getLogger(__name__)

STAGE_VALIDATE = "validate"
STAGE_ENSURE_DIRECTORIES = "ensure-directories"
STAGE_RENDER = "render-configs"
STAGE_WRITE = "write-configs"
STAGE_CERTIFICATES = "provision-certificates"
STAGE_RESOLVER = "reconfigure-resolver"
STAGE_RESTART = "restart-services"
STAGE_READINESS = "wait-for-readiness"
STAGE_VERIFY = "verify"
STAGE_STOP = "stop-services"
STAGE_CLEAN = "remove-configs"

PIPELINE_STAGES = (
    STAGE_VALIDATE,
    STAGE_ENSURE_DIRECTORIES,
    STAGE_RENDER,
    STAGE_WRITE,
    STAGE_CERTIFICATES,
    STAGE_RESOLVER,
    STAGE_RESTART,
    STAGE_READINESS,
    STAGE_VERIFY,
)
REFRESH_STAGES = PIPELINE_STAGES[PIPELINE_STAGES.index(STAGE_RENDER):]


@dataclass(slots=True)
class StageOutcome:
    name: str
    ok: bool
    detail: str = ""
    fatal: bool = False


@dataclass(slots=True)
class PipelineResult:
    stages: list[StageOutcome] = field(default_factory=list)
    soft_failures: list[LocalRouteError] = field(default_factory=list)
    report: VerificationReport | None = None
    failed_stage: str | None = None
    error: LocalRouteError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def message(self) -> str:
        if self.error is None:
            return "ok"
        entity = f" ({self.error.entity})" if self.error.entity else ""
        return f"Stage '{self.failed_stage}' failed{entity}: {self.error.detail}"


@dataclass(slots=True)
class _Run:
    registry: SiteRegistry | None = None
    rendered: RenderedConfig | None = None
    result: PipelineResult = field(default_factory=PipelineResult)


class Orchestrator:
    """Drives the pipeline from declared sites to running, verified services."""

    def __init__(
        self,
        sites_file: str | Path,
        renderer: ConfigRenderer,
        provisioner_factory: Callable[[], CertificateProvisioner],
        resolver: ResolverAdapter,
        lifecycle: ServiceLifecycleController,
        probe: VerificationProbe,
        proxy_config_path: str | Path,
        resolver_config_path: str | Path,
        cert_dir: str | Path,
        resolver_target: str = "127.0.0.1",
        readiness_check: Callable[[], bool] | None = None,
        release_port: Callable[[], object] | None = None,
    ) -> None:
        self.sites_file = Path(sites_file)
        self.renderer = renderer
        self.provisioner_factory = provisioner_factory
        self.resolver = resolver
        self.lifecycle = lifecycle
        self.probe = probe
        self.proxy_config_path = Path(proxy_config_path)
        self.resolver_config_path = Path(resolver_config_path)
        self.cert_dir = Path(cert_dir)
        self.resolver_target = resolver_target
        self.readiness_check = readiness_check
        self.release_port = release_port

        self._registry: SiteRegistry | None = None
        self._state_lock = threading.Lock()
        self._running = False
        self._pending_refresh = False

    @classmethod
    def from_settings(cls, settings: Settings, sites_file: str | Path | None = None) -> Orchestrator:
        runner = CommandRunner(timeout_seconds=settings.COMMAND_TIMEOUT_SECONDS)
        privilege = settings.privilege_command

        def provisioner_factory() -> CertificateProvisioner:
            backend = select_backend(settings.CERT_BACKEND, runner=runner, validity_days=settings.CERT_VALIDITY_DAYS)
            return CertificateProvisioner(settings.CERT_DIR, backend)

        def readiness_check() -> bool:
            return wait_until_ready(
                settings.LOCAL_SERVICE_ADDRESS,
                80,
                timeout=settings.READINESS_TIMEOUT_SECONDS,
                interval=settings.READINESS_INTERVAL_SECONDS,
            )

        release_port = None
        if settings.RELEASE_DNS_PORT:
            def release_port():
                return release_dns_port(runner, privilege)

        return cls(
            sites_file=sites_file or settings.SITES_FILE,
            renderer=ConfigRenderer(
                local_address=settings.LOCAL_SERVICE_ADDRESS,
                proxy_cert_dir=settings.PROXY_CERT_DIR,
                fallback_resolvers=settings.FALLBACK_RESOLVERS,
                cache_size=settings.RESOLVER_CACHE_SIZE,
            ),
            provisioner_factory=provisioner_factory,
            resolver=SystemResolverAdapter(
                settings.SYSTEM_RESOLV_CONF,
                settings.SYSTEM_RESOLV_BACKUP,
                timeout_seconds=settings.SYSTEM_RESOLVER_TIMEOUT,
                privilege_command=privilege,
                runner=runner,
            ),
            lifecycle=ServiceLifecycleController(
                DockerComposeRuntime(settings.compose_command, settings.COMPOSE_PROJECT_DIR, runner=runner)
            ),
            probe=VerificationProbe(
                local_address=settings.LOCAL_SERVICE_ADDRESS,
                resolver_address=settings.RESOLVER_ADDRESS,
                resolver_port=settings.RESOLVER_PORT,
                check_timeout=settings.CHECK_TIMEOUT_SECONDS,
                stage_timeout=settings.VERIFY_STAGE_TIMEOUT_SECONDS,
                max_workers=settings.VERIFY_MAX_WORKERS,
            ),
            proxy_config_path=settings.PROXY_CONFIG_PATH,
            resolver_config_path=settings.RESOLVER_CONFIG_PATH,
            cert_dir=settings.CERT_DIR,
            resolver_target=settings.RESOLVER_ADDRESS,
            readiness_check=readiness_check,
            release_port=release_port,
        )

    @property
    def registry(self) -> SiteRegistry | None:
        return self._registry

    # ── stages ──
    def _stage_validate(self, run: _Run) -> str:
        run.registry = SiteRegistry.load_file(self.sites_file)
        return f"{len(run.registry)} site(s)"

    def _stage_ensure_directories(self, run: _Run) -> str:
        directories = [self.proxy_config_path.parent, self.resolver_config_path.parent, self.cert_dir]
        for directory in directories:
            try:
                directory.mkdir(parents=True, exist_ok=True, mode=0o755)
            except OSError as exc:
                raise ProvisioningError(f"Cannot create directory {directory}: {exc}", entity=str(directory)) from exc
            if not os.access(directory, os.W_OK):
                raise ProvisioningError(f"Directory {directory} is not writable.", entity=str(directory))
        return ", ".join(str(directory) for directory in directories)

    def _stage_render(self, run: _Run) -> str:
        run.rendered = self.renderer.render(run.registry.sites)
        return f"{len(run.rendered.proxy_config)} + {len(run.rendered.resolver_config)} bytes"

    def _stage_write(self, run: _Run) -> str:
        written = write_config_files(run.rendered, self.proxy_config_path, self.resolver_config_path)
        return ", ".join(str(path) for path in written)

    def _stage_certificates(self, run: _Run) -> str:
        tls_sites = run.registry.tls_sites()
        if not tls_sites:
            return "no TLS sites"
        results = self.provisioner_factory().ensure(tls_sites)
        generated = sum(1 for item in results if item.generated)
        return f"{generated} generated, {len(results) - generated} reused"

    def _stage_resolver(self, run: _Run) -> str:
        if self.release_port is not None:
            self.release_port()
        change = self.resolver.point(self.resolver_target)
        return f"nameserver {change.address}" + (" (backed up)" if change.backed_up else "")

    def _stage_restart(self, run: _Run) -> str:
        self.lifecycle.restart()
        return "restarted"

    def _stage_readiness(self, run: _Run) -> str:
        if self.readiness_check is None:
            return "skipped"
        if not self.readiness_check():
            raise ReadinessTimeout("Services did not accept connections before the readiness timeout.")
        return "ready"

    def _stage_verify(self, run: _Run) -> str:
        report = self.probe.verify(run.registry.sites)
        run.result.report = report
        run.result.soft_failures.extend(report.failures())
        return f"{len(report.passed)} passed, {len(report.failed)} failed"

    _STAGE_METHODS = {
        STAGE_VALIDATE: _stage_validate,
        STAGE_ENSURE_DIRECTORIES: _stage_ensure_directories,
        STAGE_RENDER: _stage_render,
        STAGE_WRITE: _stage_write,
        STAGE_CERTIFICATES: _stage_certificates,
        STAGE_RESOLVER: _stage_resolver,
        STAGE_RESTART: _stage_restart,
        STAGE_READINESS: _stage_readiness,
        STAGE_VERIFY: _stage_verify,
    }

    def _execute(self, stages: tuple[str, ...], run: _Run) -> PipelineResult:
        result = run.result
        for name in stages:
            logger.info("Stage %s started", name)
            try:
                detail = self._STAGE_METHODS[name](self, run)
            except LocalRouteError as exc:
                result.stages.append(StageOutcome(name=name, ok=False, detail=exc.detail, fatal=exc.fatal))
                if exc.fatal:
                    result.failed_stage = name
                    result.error = exc
                    logger.error("Stage %s failed: %s", name, exc.detail)
                    return result
                result.soft_failures.append(exc)
                logger.warning("Stage %s failed (continuing): %s", name, exc.detail)
                continue
            result.stages.append(StageOutcome(name=name, ok=True, detail=detail))
            logger.info("Stage %s done: %s", name, detail)
        return result

    # ── serialization ──
    def _serialized(self, job: Callable[[], PipelineResult]) -> PipelineResult | None:
        with self._state_lock:
            if self._running:
                self._pending_refresh = True
                logger.info("A run is already in flight; refresh queued")
                return None
            self._running = True

        try:
            result = job()
            while True:
                with self._state_lock:
                    if not self._pending_refresh:
                        self._running = False
                        return result
                    self._pending_refresh = False
                logger.info("Running queued refresh")
                result = self._refresh_once()
        except BaseException:
            with self._state_lock:
                self._running = False
                self._pending_refresh = False
            raise

    def _setup_once(self) -> PipelineResult:
        run = _Run()
        result = self._execute(PIPELINE_STAGES, run)
        if run.registry is not None:
            self._registry = run.registry
        return result

    def _refresh_once(self) -> PipelineResult:
        run = _Run()
        result = self._execute((STAGE_VALIDATE,), run)
        if not result.ok:
            logger.error("Refresh aborted; keeping the previous site list")
            return result
        self._registry = run.registry
        return self._execute(REFRESH_STAGES, run)

    # ── public operations ──
    def setup(self) -> PipelineResult | None:
        return self._serialized(self._setup_once)

    def refresh(self) -> PipelineResult | None:
        """Re-render, restart and verify. Returns ``None`` when queued behind a running pipeline."""
        return self._serialized(self._refresh_once)

    def clean(self) -> PipelineResult:
        result = PipelineResult()
        try:
            self.lifecycle.stop()
            result.stages.append(StageOutcome(name=STAGE_STOP, ok=True, detail="stopped"))
        except LifecycleError as exc:
            result.stages.append(StageOutcome(name=STAGE_STOP, ok=False, detail=exc.detail, fatal=True))
            result.failed_stage = STAGE_STOP
            result.error = exc
            logger.error("Failed to stop services: %s", exc.detail)

        try:
            removed = remove_config_files(self.proxy_config_path, self.resolver_config_path)
        except OSError as exc:
            error = ProvisioningError(f"Failed to remove generated configs: {exc}", entity=str(exc.filename))
            result.stages.append(StageOutcome(name=STAGE_CLEAN, ok=False, detail=error.detail, fatal=True))
            if result.error is None:
                result.failed_stage = STAGE_CLEAN
                result.error = error
            return result
        result.stages.append(
            StageOutcome(name=STAGE_CLEAN, ok=True, detail=", ".join(str(path) for path in removed) or "nothing to remove")
        )
        return result
