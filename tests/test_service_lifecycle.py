from unittest.mock import MagicMock

import pytest

from localroute.errors import LifecycleError
from localroute.services.service_lifecycle import DockerComposeRuntime, ServiceLifecycleController, wait_until_ready
from localroute.utils.commands import CommandResult


class FakeRuntime:
    """In-memory compose project; ``down`` on a stopped project is a no-op."""

    def __init__(self) -> None:
        self.running = False
        self.calls: list[str] = []

    def up(self) -> None:
        self.calls.append("up")
        self.running = True

    def down(self) -> None:
        self.calls.append("down")
        self.running = False


def _runner(ok: bool = True) -> MagicMock:
    runner = MagicMock()
    runner.run.side_effect = lambda command, input_text=None: CommandResult(
        ok=ok, command=list(command), returncode=0 if ok else 1, stdout="", stderr="" if ok else "daemon not running"
    )
    return runner


def test_restart_is_stop_then_start() -> None:
    runtime = FakeRuntime()
    controller = ServiceLifecycleController(runtime)

    controller.restart()
    controller.restart()

    assert runtime.calls == ["down", "up", "down", "up"]
    assert runtime.running is True


def test_stop_before_start_is_safe() -> None:
    runtime = FakeRuntime()
    controller = ServiceLifecycleController(runtime)

    controller.stop()
    controller.stop()

    assert runtime.running is False


def test_compose_runtime_commands(tmp_path) -> None:
    runner = _runner()
    runtime = DockerComposeRuntime("docker compose", project_dir=tmp_path, runner=runner)

    runtime.down()
    runtime.up()

    commands = [call.args[0] for call in runner.run.call_args_list]
    assert commands == [
        ["docker", "compose", "--project-directory", str(tmp_path), "down"],
        ["docker", "compose", "--project-directory", str(tmp_path), "up", "-d"],
    ]


def test_compose_runtime_accepts_legacy_binary() -> None:
    runner = _runner()
    DockerComposeRuntime(["docker-compose"], runner=runner).up()
    assert runner.run.call_args.args[0] == ["docker-compose", "up", "-d"]


def test_compose_failure_raises_lifecycle_error() -> None:
    controller = ServiceLifecycleController(DockerComposeRuntime(runner=_runner(ok=False)))

    with pytest.raises(LifecycleError) as exc_info:
        controller.restart()

    assert exc_info.value.fatal is True
    assert "daemon not running" in exc_info.value.detail


def test_empty_compose_command_is_rejected() -> None:
    with pytest.raises(ValueError):
        DockerComposeRuntime("  ")


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


def test_wait_until_ready_retries_until_connected() -> None:
    clock = FakeClock()
    attempts = []

    def connect(address, timeout):
        attempts.append(address)
        if len(attempts) < 3:
            raise ConnectionRefusedError("refused")
        return MagicMock()

    ready = wait_until_ready("172.20.0.2", 80, timeout=10, interval=1, connect=connect, sleep=clock.sleep, clock=clock)

    assert ready is True
    assert attempts == [("172.20.0.2", 80)] * 3


def test_wait_until_ready_gives_up_after_timeout() -> None:
    clock = FakeClock()

    def connect(address, timeout):
        raise ConnectionRefusedError("refused")

    ready = wait_until_ready("172.20.0.2", 80, timeout=3, interval=1, connect=connect, sleep=clock.sleep, clock=clock)

    assert ready is False
    assert clock.now <= 3
