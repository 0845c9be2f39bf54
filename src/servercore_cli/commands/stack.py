"""Stack commands: inspect and control the deployed containers."""

from __future__ import annotations

import sys

import click

from ..application import load_application
from ..errors import EXIT_FATAL, CommandError


@click.group()
def stack() -> None:
    """Manage the deployed container stack."""
    pass


@stack.command()
@click.option("-t", "--target", default="localhost", show_default=True, help="Deployment target")
@click.option("--sudo", is_flag=True, help="Run commands through sudo -n")
@click.pass_context
def status(ctx: click.Context, target: str, sudo: bool) -> None:
    """Show container state and health."""
    from ..formatters import print_json, print_services

    app = load_application(ctx.obj, target, sudo)
    entries = app.orchestrator.runtime.ps()
    if ctx.obj["json_output"]:
        print_json(entries)
    else:
        print_services(entries)


@stack.command()
@click.option("-t", "--target", default="localhost", show_default=True, help="Deployment target")
@click.option("--sudo", is_flag=True, help="Run commands through sudo -n")
@click.option("--volumes", is_flag=True, help="Also remove volumes (data loss!)")
@click.pass_context
def down(ctx: click.Context, target: str, sudo: bool, volumes: bool) -> None:
    """Stop and remove the stack's containers."""
    app = load_application(ctx.obj, target, sudo)

    if volumes:
        click.confirm("This will delete all data volumes. Are you sure?", abort=True)

    click.echo(f"Stopping stack on {app.identity}...")
    try:
        app.orchestrator.runtime.down(remove_volumes=volumes)
    except CommandError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_FATAL)
    click.echo("Stack stopped. Run 'servercore provision --phases deploy' to start it again.")


@stack.command()
@click.option("-t", "--target", default="localhost", show_default=True, help="Deployment target")
@click.option("--sudo", is_flag=True, help="Run commands through sudo -n")
@click.option("--service", "-s", default=None, help="Show logs for specific service")
@click.option("--tail", default=100, type=int, help="Number of lines")
@click.pass_context
def logs(ctx: click.Context, target: str, sudo: bool, service: str | None, tail: int) -> None:
    """Show container logs."""
    app = load_application(ctx.obj, target, sudo)
    try:
        output = app.orchestrator.runtime.logs(service, tail)
    except CommandError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_FATAL)
    click.echo(output, nl=False)
