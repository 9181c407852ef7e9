from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, Sequence

from localroute.errors import SystemConfigurationError
from localroute.utils.commands import CommandRunner


logger = logging.getLogger(__name__)

DEFAULT_RESOLV_CONF = Path("/etc/resolv.conf")
DEFAULT_RESOLV_BACKUP = Path("/etc/resolv.conf.backup")
DEFAULT_LOOKUP_TIMEOUT_SECONDS = 1
DNS_PORT_SERVICES = ("systemd-resolved", "named", "bind9", "dnsmasq")


@dataclass(slots=True)
class ResolverChange:
    address: str
    backed_up: bool
    backup_path: Path | None


class ResolverAdapter(Protocol):
    def point(self, at: str) -> ResolverChange: ...


class SystemResolverAdapter:
    """Points the host resolver at the local DNS service.

    The first run copies the original file to ``backup_path``; later runs
    leave that copy alone so it always holds the pre-tool state.
    """

    def __init__(
        self,
        resolv_conf_path: str | Path = DEFAULT_RESOLV_CONF,
        backup_path: str | Path = DEFAULT_RESOLV_BACKUP,
        timeout_seconds: int = DEFAULT_LOOKUP_TIMEOUT_SECONDS,
        privilege_command: Sequence[str] = (),
        runner: CommandRunner | None = None,
    ) -> None:
        self.resolv_conf_path = Path(resolv_conf_path)
        self.backup_path = Path(backup_path)
        self.timeout_seconds = timeout_seconds
        self.privilege_command = list(privilege_command)
        self.runner = runner or CommandRunner()

    def render(self, at: str) -> str:
        return f"nameserver {at}\noptions timeout:{self.timeout_seconds}\n"

    def _run_privileged(self, command: Sequence[str], input_text: str | None = None) -> None:
        result = self.runner.run([*self.privilege_command, *command], input_text=input_text)
        if not result.ok:
            raise OSError(result.summary())

    def backup(self) -> bool:
        if self.backup_path.exists():
            logger.debug("Resolver backup %s already exists; leaving it untouched", self.backup_path)
            return False
        if not self.resolv_conf_path.exists():
            logger.debug("No %s to back up", self.resolv_conf_path)
            return False

        try:
            if self.privilege_command:
                self._run_privileged(["cp", str(self.resolv_conf_path), str(self.backup_path)])
            else:
                shutil.copy2(self.resolv_conf_path, self.backup_path)
        except OSError as exc:
            raise SystemConfigurationError(
                f"Failed to back up {self.resolv_conf_path}: {exc}",
                entity=str(self.resolv_conf_path),
            ) from exc
        logger.info("Backed up %s to %s", self.resolv_conf_path, self.backup_path)
        return True

    def write(self, at: str) -> None:
        content = self.render(at)
        try:
            if self.privilege_command:
                self._run_privileged(["tee", str(self.resolv_conf_path)], input_text=content)
            else:
                # resolv.conf is often a bind mount or symlink, so write in place.
                self.resolv_conf_path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise SystemConfigurationError(
                f"Failed to update {self.resolv_conf_path}: {exc}",
                entity=str(self.resolv_conf_path),
            ) from exc

    def verify(self, at: str) -> None:
        expected = f"nameserver {at}"
        try:
            current = self.resolv_conf_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise SystemConfigurationError(
                f"Failed to verify {self.resolv_conf_path}: {exc}",
                entity=str(self.resolv_conf_path),
            ) from exc
        if expected not in current.splitlines():
            raise SystemConfigurationError(
                f"{self.resolv_conf_path} does not contain '{expected}' after update.",
                entity=str(self.resolv_conf_path),
            )

    def point(self, at: str) -> ResolverChange:
        backed_up = self.backup()
        self.write(at)
        self.verify(at)
        logger.info("System resolver now points at %s", at)
        return ResolverChange(
            address=at,
            backed_up=backed_up,
            backup_path=self.backup_path if self.backup_path.exists() else None,
        )


@dataclass(slots=True)
class PortReleaseResult:
    stopped: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def release_dns_port(
    runner: CommandRunner,
    privilege_command: Sequence[str] = (),
    services: Sequence[str] = DNS_PORT_SERVICES,
) -> PortReleaseResult:
    """Stop and disable host services that usually hold port 53."""
    outcome = PortReleaseResult()
    for service in services:
        stop = runner.run([*privilege_command, "systemctl", "stop", service])
        if not stop.ok:
            logger.debug("Service %s not stopped: %s", service, stop.summary())
            outcome.skipped.append(service)
            continue
        disable = runner.run([*privilege_command, "systemctl", "disable", service])
        if not disable.ok:
            logger.warning("Stopped %s but could not disable it: %s", service, disable.summary())
        outcome.stopped.append(service)
        logger.info("Stopped %s to free port 53", service)
    return outcome
