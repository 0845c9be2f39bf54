"""CLI main entry point."""

from __future__ import annotations

import signal
import sys
import threading
from typing import Any

import click

from .application import load_application
from .commands.secrets import secrets
from .commands.stack import stack
from .errors import EXIT_FATAL, EXIT_INTERRUPTED, EXIT_LOCKED, LockHeldError, ProvisioningError
from .provisioning.health import HealthStatus
from .provisioning.steps import Phase
from .shared.logging import configure_logging

ALL_PHASES = ",".join(phase.value for phase in Phase)


def _parse_phases(ctx: click.Context, param: click.Parameter, value: str) -> list[Phase]:
    try:
        return Phase.parse_list(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def _log_level(verbose: int, quiet: bool) -> str:
    if quiet:
        return "error"
    if verbose >= 2:
        return "debug"
    if verbose == 1:
        return "info"
    return "warning"


def target_option(f: Any) -> Any:
    return click.option(
        "-t",
        "--target",
        default="localhost",
        show_default=True,
        help="Host to provision, as [user@]host[:port]",
    )(f)


def phases_option(f: Any) -> Any:
    return click.option(
        "--phases",
        default=ALL_PHASES,
        show_default=True,
        callback=_parse_phases,
        help="Comma-separated phases to run",
    )(f)


@click.group()
@click.version_option(package_name="servercore-cli", prog_name="servercore")
@click.option("-c", "--config", type=click.Path(), help="Config file path")
@click.option("-v", "--verbose", count=True, help="Increase verbosity (-v info, -vv debug)")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Write JSON log lines to this file")
@click.pass_context
def cli(
    ctx: click.Context,
    config: str | None,
    verbose: int,
    quiet: bool,
    json_output: bool,
    log_file: str | None,
) -> None:
    """Provision and deploy a hardened Nextcloud server."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["json_output"] = json_output
    configure_logging(_log_level(verbose, quiet), log_file=log_file, json_output=bool(log_file))


@cli.command()
@phases_option
@target_option
@click.option("--force-step", "force_steps", multiple=True, help="Re-apply this step even if it succeeded")
@click.option("--dry-run", is_flag=True, help="Show what would be applied without changing the host")
@click.option("--sudo", is_flag=True, help="Run privileged commands through sudo -n")
@click.pass_context
def provision(
    ctx: click.Context,
    phases: list[Phase],
    target: str,
    force_steps: tuple[str, ...],
    dry_run: bool,
    sudo: bool,
) -> None:
    """Run the provisioning phases against a target.

    Re-running the same command resumes from the first step that did not
    succeed. Ctrl-C stops after the current step; press it again to abort
    immediately.
    """
    from .formatters import print_json, print_report

    app = load_application(ctx.obj, target, sudo)
    json_output = ctx.obj["json_output"]
    cancel = threading.Event()

    def on_sigint(signum: int, frame: Any) -> None:
        if cancel.is_set():
            raise KeyboardInterrupt
        cancel.set()
        click.echo("\nInterrupt received, stopping after the current step (Ctrl-C again to abort)", err=True)

    def on_health_poll(poll_round: int, statuses: dict[str, HealthStatus]) -> None:
        if json_output:
            return
        waiting = sorted(name for name, status in statuses.items() if not status.healthy)
        if waiting:
            click.echo(f"Waiting for services ({poll_round}): {', '.join(waiting)}", err=True)

    previous = signal.signal(signal.SIGINT, on_sigint)
    try:
        report = app.orchestrator.provision(
            phases,
            force_steps=force_steps,
            dry_run=dry_run,
            cancel=cancel,
            on_health_poll=on_health_poll,
        )
    except LockHeldError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(EXIT_LOCKED)
    except KeyboardInterrupt:
        click.echo("Aborted. The interrupted step stays recorded as running and is re-checked on resume.", err=True)
        sys.exit(EXIT_INTERRUPTED)
    finally:
        signal.signal(signal.SIGINT, previous)

    if json_output:
        print_json(report.to_dict())
    else:
        print_report(report)
    sys.exit(report.exit_code)


@cli.command()
@phases_option
@target_option
@click.pass_context
def plan(ctx: click.Context, phases: list[Phase], target: str) -> None:
    """Show the ordered steps a provision run would consider."""
    from .formatters import plan_rows, print_json, print_plan

    app = load_application(ctx.obj, target)
    try:
        provisioning_plan = app.orchestrator.plan(phases)
        record = app.orchestrator.load_record()
    except ProvisioningError as e:
        click.echo(f"Error: [{e.kind}] {e.message}", err=True)
        sys.exit(EXIT_FATAL)

    if ctx.obj["json_output"]:
        print_json(
            {
                "identity": provisioning_plan.identity,
                "phases": [phase.value for phase in provisioning_plan.phases],
                "steps": plan_rows(provisioning_plan, record),
            }
        )
    else:
        print_plan(provisioning_plan, record)


@cli.command()
@target_option
@click.pass_context
def status(ctx: click.Context, target: str) -> None:
    """Show the recorded state of every step for a target."""
    from .formatters import print_json, print_status

    app = load_application(ctx.obj, target)
    try:
        rows = app.orchestrator.status()
    except ProvisioningError as e:
        click.echo(f"Error: [{e.kind}] {e.message}", err=True)
        sys.exit(EXIT_FATAL)

    if ctx.obj["json_output"]:
        print_json(
            {
                "identity": app.identity,
                "record": str(app.orchestrator.record_path),
                "steps": {step_id: entry.to_dict() for step_id, entry in rows},
            }
        )
    else:
        print_status(app.identity, rows)


@cli.group()
def config() -> None:
    """Inspect configuration."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show the effective configuration and where each value came from."""
    from .config import config_as_dict, load_config
    from .formatters import print_json

    try:
        loaded = load_config(ctx.obj["config_path"])
    except ProvisioningError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(EXIT_FATAL)

    data = config_as_dict(loaded)
    if ctx.obj["json_output"]:
        print_json(data)
        return
    for key, value in data.items():
        source = loaded.get_source(key) if key != "project_dir" else "derived"
        click.echo(f"{key}: {value}  [{source}]")


cli.add_command(secrets)
cli.add_command(stack)


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
