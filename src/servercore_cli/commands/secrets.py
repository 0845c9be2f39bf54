"""Secrets command: inspect the generated credentials of a deployment.

Values are masked unless ``--reveal`` is given. Revealing is logged as an
audit event (without the values).
"""

from __future__ import annotations

import sys

import click

from ..application import load_application
from ..errors import EXIT_FATAL, ProvisioningError
from ..shared.logging import get_logger

logger = get_logger(__name__)


@click.group()
def secrets() -> None:
    """Inspect deployment credentials."""
    pass


@secrets.command("show")
@click.option("-t", "--target", default="localhost", show_default=True, help="Deployment target")
@click.option("--reveal", is_flag=True, help="Print clear values (audited)")
@click.pass_context
def secrets_show(ctx: click.Context, target: str, reveal: bool) -> None:
    """Show the secrets stored for a target."""
    from ..formatters import print_json

    app = load_application(ctx.obj, target)
    store = app.orchestrator.secrets
    try:
        values = store.export_env() if reveal else store.redacted_view()
    except ProvisioningError as e:
        click.echo(f"Error: [{e.kind}] {e.message}", err=True)
        sys.exit(EXIT_FATAL)

    if not values:
        click.echo(f"No secrets stored for {app.identity}. Run: servercore provision --phases configure")
        return

    if reveal:
        logger.warning("secrets.revealed", identity=app.identity, keys=sorted(values))

    if ctx.obj["json_output"]:
        print_json({"identity": app.identity, "secrets": values})
        return

    click.echo(f"Secrets for {app.identity} ({store.path}):")
    for key, value in values.items():
        click.echo(f"  {key}: {value}")
