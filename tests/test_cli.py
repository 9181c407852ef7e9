from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner

from localroute import cli
from localroute.errors import SiteValidationError, VerificationFailure
from localroute.schemas import Site
from localroute.services.orchestrator import PipelineResult, StageOutcome


def _ok_result() -> PipelineResult:
    return PipelineResult(stages=[StageOutcome(name="validate", ok=True, detail="1 site(s)")])


def _failed_result() -> PipelineResult:
    error = SiteValidationError("Invalid site bad.local: upstream must be an http(s) URL", entity="bad.local")
    return PipelineResult(
        stages=[StageOutcome(name="validate", ok=False, detail=error.detail, fatal=True)],
        failed_stage="validate",
        error=error,
    )


class FakeOrchestrator:
    def __init__(self, result: PipelineResult | None = None) -> None:
        self.result = result or _ok_result()
        self.calls: list[str] = []
        self.registry = [Site(domain="app.local", upstream="http://127.0.0.1:8080", tls_required=True, dns_override=True)]

    def setup(self):
        self.calls.append("setup")
        return self.result

    def refresh(self):
        self.calls.append("refresh")
        return self.result

    def clean(self):
        self.calls.append("clean")
        return _ok_result()


@pytest.fixture
def fake(monkeypatch):
    orchestrator = FakeOrchestrator()
    built_with = []

    def build(sites_file):
        built_with.append(sites_file)
        return orchestrator

    monkeypatch.setattr(cli, "build_orchestrator", build)
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)
    return SimpleNamespace(orchestrator=orchestrator, built_with=built_with)


def test_no_arguments_runs_setup(fake) -> None:
    result = CliRunner().invoke(cli.main, [])

    assert result.exit_code == 0
    assert fake.orchestrator.calls == ["setup"]
    assert "✓ validate" in result.output
    assert "https://app.local" in result.output
    assert "sudo mv" in result.output


def test_sites_option_is_passed_through(fake) -> None:
    CliRunner().invoke(cli.main, ["--sites", "custom.json"])
    assert fake.built_with == [Path("custom.json")]


def test_fatal_failure_exits_non_zero(fake) -> None:
    fake.orchestrator.result = _failed_result()

    result = CliRunner().invoke(cli.main, ["setup"])

    assert result.exit_code == 1
    assert "bad.local" in result.output
    assert "setup complete" not in result.output


def test_soft_failures_are_listed_but_exit_zero(fake) -> None:
    fake.orchestrator.result = PipelineResult(
        stages=[StageOutcome(name="verify", ok=True, detail="1 passed, 1 failed")],
        soft_failures=[VerificationFailure("dns check failed for app.local: timeout", entity="app.local")],
    )

    result = CliRunner().invoke(cli.main, [])

    assert result.exit_code == 0
    assert "1 check(s) need attention" in result.output
    assert "dns check failed for app.local" in result.output


@pytest.mark.parametrize("command", ["refresh", "reload"])
def test_refresh_and_reload_alias(fake, command) -> None:
    result = CliRunner().invoke(cli.main, [command])

    assert result.exit_code == 0
    assert fake.orchestrator.calls == ["refresh"]
    assert "setup complete" not in result.output


def test_queued_refresh_is_reported(fake) -> None:
    fake.orchestrator.refresh = lambda: None

    result = CliRunner().invoke(cli.main, ["refresh"])

    assert result.exit_code == 0
    assert "queued" in result.output


def test_clean_skips_setup(fake) -> None:
    result = CliRunner().invoke(cli.main, ["--clean"])

    assert result.exit_code == 0
    assert fake.orchestrator.calls == ["clean"]


def test_watch_keeps_fatal_setup_exit_code(fake, monkeypatch) -> None:
    watcher_cls = MagicMock()
    monkeypatch.setattr(cli, "SiteFileWatcher", watcher_cls)

    def interrupt():
        raise KeyboardInterrupt

    monkeypatch.setattr(cli, "wait_for_interrupt", interrupt)
    fake.orchestrator.result = _failed_result()

    result = CliRunner().invoke(cli.main, ["--sites", "sites.json", "--watch"])

    assert result.exit_code == 1
    assert "watching sites.json" in result.output
    assert "stopped watching" in result.output
    args, kwargs = watcher_cls.call_args
    assert args[0] == Path("sites.json")

    on_change = args[1]
    on_change()
    assert fake.orchestrator.calls == ["setup", "refresh"]


def test_watch_exit_code_follows_last_refresh(fake, monkeypatch) -> None:
    watcher_cls = MagicMock()
    monkeypatch.setattr(cli, "SiteFileWatcher", watcher_cls)
    fake.orchestrator.result = _failed_result()
    fake.orchestrator.refresh = _ok_result

    def change_then_interrupt():
        on_change = watcher_cls.call_args.args[1]
        on_change()
        raise KeyboardInterrupt

    monkeypatch.setattr(cli, "wait_for_interrupt", change_then_interrupt)

    result = CliRunner().invoke(cli.main, ["--watch"])

    assert result.exit_code == 0
    assert result.output.count("✓ validate") == 1
    assert "✗ validate" in result.output
