# Click-based CLI entry point

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import click

from localroute.core.config import settings
from localroute.core.logging import configure_logging
from localroute.services.orchestrator import Orchestrator, PipelineResult
from localroute.services.site_watcher import SiteFileWatcher


@dataclass(slots=True)
class CliState:
    orchestrator: Orchestrator
    sites_file: Path
    watch: bool


def build_orchestrator(sites_file: Path | None) -> Orchestrator:
    return Orchestrator.from_settings(settings, sites_file)


def wait_for_interrupt() -> None:
    while True:
        time.sleep(1)


def echo_result(result: PipelineResult | None) -> None:
    if result is None:
        click.echo("refresh queued behind a running pipeline")
        return

    for stage in result.stages:
        if stage.ok:
            click.secho(f"✓ {stage.name}: {stage.detail}", fg="green")
        elif stage.fatal:
            click.secho(f"✗ {stage.name}: {stage.detail}", fg="red")
        else:
            click.secho(f"! {stage.name}: {stage.detail}", fg="yellow")

    if result.report is not None and result.report.results:
        click.echo("\nverification:")
        for check in result.report.results:
            mark, colour = ("✓", "green") if check.ok else ("✗", "red")
            click.secho(f"  {mark} {check.domain} [{check.check}] {check.detail}", fg=colour)

    if result.soft_failures:
        click.secho(f"\n{len(result.soft_failures)} check(s) need attention:", fg="yellow")
        for failure in result.soft_failures:
            click.echo(f"  - {failure.detail}")

    if not result.ok:
        click.secho(f"\nError: {result.message()}", fg="red", err=True)


def echo_next_steps(orchestrator: Orchestrator) -> None:
    if orchestrator.registry is None:
        return
    click.echo("\nsetup complete! your local routes are ready.")
    click.echo("try your domains:")
    for site in orchestrator.registry:
        scheme = "https" if site.tls_required else "http"
        click.echo(f"  {scheme}://{site.domain}")
    click.echo("\nto restore the original dns configuration:")
    click.echo(f"  sudo mv {settings.SYSTEM_RESOLV_BACKUP} {settings.SYSTEM_RESOLV_CONF}")


def run_pipeline(ctx: click.Context, operation: Callable[[], PipelineResult | None], show_next_steps: bool) -> None:
    state: CliState = ctx.obj
    result = operation()
    echo_result(result)
    if result is not None and result.ok and show_next_steps:
        echo_next_steps(state.orchestrator)

    # Exit code of the most recent completed run; queued refreshes leave it alone.
    exit_codes = [result.exit_code if result is not None else 0]
    if state.watch:

        def on_change() -> None:
            refreshed = state.orchestrator.refresh()
            echo_result(refreshed)
            if refreshed is not None:
                exit_codes.append(refreshed.exit_code)

        click.echo(f"\nwatching {state.sites_file} for changes (ctrl-c to stop)")
        with SiteFileWatcher(state.sites_file, on_change, debounce_seconds=settings.WATCH_DEBOUNCE_SECONDS):
            try:
                wait_for_interrupt()
            except KeyboardInterrupt:
                click.echo("stopped watching")
    ctx.exit(exit_codes[-1])


@click.group(invoke_without_command=True)
@click.option(
    "--sites",
    "sites_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Site list file (default: sites.conf).",
)
@click.option("--watch", is_flag=True, help="Keep running and refresh when the site list changes.")
@click.option("--clean", is_flag=True, help="Stop services and delete generated configuration files.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, sites_file: Path | None, watch: bool, clean: bool, verbose: bool) -> None:
    """LocalRoute - local domains, TLS and DNS for development."""
    configure_logging(settings.LOG_LEVEL, debug=verbose)
    orchestrator = build_orchestrator(sites_file)
    ctx.obj = CliState(orchestrator=orchestrator, sites_file=sites_file or settings.SITES_FILE, watch=watch)

    if clean:
        result = orchestrator.clean()
        echo_result(result)
        ctx.exit(result.exit_code)

    if ctx.invoked_subcommand is None:
        ctx.invoke(setup)


@main.command()
@click.pass_context
def setup(ctx: click.Context) -> None:
    """Run the full pipeline (default)."""
    run_pipeline(ctx, ctx.obj.orchestrator.setup, show_next_steps=True)


@main.command()
@click.pass_context
def refresh(ctx: click.Context) -> None:
    """Re-render configs, restart services and verify."""
    run_pipeline(ctx, ctx.obj.orchestrator.refresh, show_next_steps=False)


main.add_command(refresh, name="reload")


if __name__ == "__main__":
    main()
