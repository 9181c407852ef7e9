from __future__ import annotations

import logging
import socket
import time
from pathlib import Path
from typing import Callable, Protocol, Sequence

from localroute.errors import LifecycleError
from localroute.utils.commands import CommandResult, CommandRunner, split_command


logger = logging.getLogger(__name__)

DEFAULT_COMPOSE_COMMAND = ("docker", "compose")
DEFAULT_READINESS_TIMEOUT_SECONDS = 30.0
DEFAULT_READINESS_INTERVAL_SECONDS = 0.5


class ContainerRuntime(Protocol):
    def up(self) -> None: ...

    def down(self) -> None: ...


class DockerComposeRuntime:
    """Runs the proxy and DNS containers as one compose project."""

    def __init__(
        self,
        compose_command: str | Sequence[str] = DEFAULT_COMPOSE_COMMAND,
        project_dir: str | Path | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        self.compose_command = split_command(compose_command, "compose command")
        self.project_dir = Path(project_dir) if project_dir else None
        self.runner = runner or CommandRunner()

    def _command(self, *args: str) -> list[str]:
        command = list(self.compose_command)
        if self.project_dir is not None:
            command += ["--project-directory", str(self.project_dir)]
        return command + list(args)

    def _run(self, action: str, *args: str) -> CommandResult:
        result = self.runner.run(self._command(*args))
        if not result.ok:
            raise LifecycleError(
                f"Failed to {action} services: {result.summary()}",
                entity="docker compose",
                diagnostics={action: result.as_dict()},
            )
        return result

    def up(self) -> None:
        self._run("start", "up", "-d")

    def down(self) -> None:
        # compose treats "down" on a project with nothing running as success.
        self._run("stop", "down")


class ServiceLifecycleController:
    def __init__(self, runtime: ContainerRuntime) -> None:
        self.runtime = runtime

    def stop(self) -> None:
        logger.info("Stopping services")
        self.runtime.down()

    def start(self) -> None:
        logger.info("Starting services")
        self.runtime.up()

    def restart(self) -> None:
        self.stop()
        self.start()


def wait_until_ready(
    address: str,
    port: int = 80,
    timeout: float = DEFAULT_READINESS_TIMEOUT_SECONDS,
    interval: float = DEFAULT_READINESS_INTERVAL_SECONDS,
    connect: Callable[..., socket.socket] = socket.create_connection,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll until ``address:port`` accepts TCP connections or ``timeout`` elapses."""
    deadline = clock() + timeout
    attempts = 0
    while True:
        attempts += 1
        remaining = deadline - clock()
        try:
            connection = connect((address, port), timeout=max(0.1, min(interval * 2, remaining)))
        except OSError as exc:
            if clock() + interval >= deadline:
                logger.warning(
                    "Services not ready at %s:%d after %d attempt(s): %s", address, port, attempts, exc
                )
                return False
            sleep(interval)
            continue
        connection.close()
        logger.info("Services ready at %s:%d after %d attempt(s)", address, port, attempts)
        return True
