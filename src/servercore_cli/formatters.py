"""CLI output formatting helpers.

Human output uses rich tables; ``--json`` output is the report's dict form.
Nothing printed here ever holds a clear secret value.
"""

from __future__ import annotations

import json
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from .provisioning.engine import OutcomeStatus
from .provisioning.orchestrator import DeploymentReport, ReportStatus
from .provisioning.record import ExecutionRecord, StepRecord, StepStatus
from .provisioning.steps import ProvisioningPlan

console = Console()

OUTCOME_STYLES = {
    OutcomeStatus.SUCCEEDED: "green",
    OutcomeStatus.UNCHANGED: "dim",
    OutcomeStatus.FAILED: "red",
    OutcomeStatus.SKIPPED: "yellow",
    OutcomeStatus.WOULD_APPLY: "cyan",
    OutcomeStatus.NOT_STARTED: "dim",
}

RECORD_STYLES = {
    StepStatus.SUCCEEDED: "green",
    StepStatus.FAILED: "red",
    StepStatus.SKIPPED: "yellow",
    StepStatus.RUNNING: "magenta",
    StepStatus.PENDING: "dim",
}

REPORT_STYLES = {
    ReportStatus.SUCCESS: "bold green",
    ReportStatus.DEGRADED: "bold yellow",
    ReportStatus.PARTIAL_FAILURE: "bold red",
    ReportStatus.FATAL: "bold red",
    ReportStatus.INTERRUPTED: "bold yellow",
}


def print_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def print_report(report: DeploymentReport) -> None:
    """Print a deployment report.

    Args:
        report: Report returned by Orchestrator.provision
    """
    title = f"Provisioning {report.identity}"
    if report.dry_run:
        title += " (dry run)"
    console.print(f"\n[bold]{title}[/bold]\n")

    for phase in report.phases:
        table = Table(title=f"{phase.phase.value}: {phase.status.value}", title_justify="left")
        table.add_column("Step")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")
        table.add_column("Error")
        for outcome in phase.outcomes:
            style = OUTCOME_STYLES.get(outcome.status, "")
            status = outcome.status.value + (" (drift)" if outcome.drift else "")
            error = ""
            if outcome.error:
                retry = "retried on resume" if outcome.retried_on_resume else "not retried"
                error = f"[{outcome.error_kind}] {outcome.error} ({retry})"
            table.add_row(
                outcome.step_id,
                f"[{style}]{status}[/{style}]" if style else status,
                str(outcome.attempts or ""),
                error,
            )
        console.print(table)

    if report.health:
        table = Table(title="Service health", title_justify="left")
        table.add_column("Service")
        table.add_column("State")
        table.add_column("Checked")
        for name, status in report.health.items():
            color = "green" if status.healthy else "yellow"
            checked = status.last_checked_at.strftime("%H:%M:%S") if status.last_checked_at else "-"
            table.add_row(name, f"[{color}]{status.state.value}[/{color}]", checked)
        console.print(table)

    if report.credentials:
        console.print("\n[bold]Credentials[/bold] (servercore secrets show --reveal)")
        for key, masked in report.credentials.items():
            console.print(f"  {key}: {masked}")

    if report.notices:
        console.print("\n[bold]Notices[/bold]")
        for notice in report.notices:
            console.print(f"  - {notice}")

    if report.error:
        console.print(
            f"\n[red]Error:[/red] [{report.error['kind']}] {report.error['message']}"
            + (f" (step {report.error['step']})" if report.error.get("step") else "")
        )

    style = REPORT_STYLES[report.status]
    console.print(f"\nResult: [{style}]{report.status.value}[/{style}]")
    if report.status == ReportStatus.PARTIAL_FAILURE:
        console.print("[dim]Re-run the same command to resume from the first step that did not succeed.[/dim]")


def plan_rows(plan: ProvisioningPlan, record: ExecutionRecord) -> list[dict[str, Any]]:
    return [
        {
            "step": step.id,
            "phase": step.phase.value,
            "depends_on": sorted(step.depends_on),
            "recorded": record.status(step.id).value,
            "description": step.description,
        }
        for step in plan.steps
    ]


def print_plan(plan: ProvisioningPlan, record: ExecutionRecord) -> None:
    table = Table(title=f"Plan for {plan.identity}", title_justify="left")
    table.add_column("#", justify="right")
    table.add_column("Phase")
    table.add_column("Step")
    table.add_column("Recorded")
    table.add_column("Depends on")
    for i, row in enumerate(plan_rows(plan, record), 1):
        style = RECORD_STYLES[StepStatus(row["recorded"])]
        table.add_row(
            str(i),
            row["phase"],
            row["step"],
            f"[{style}]{row['recorded']}[/{style}]",
            ", ".join(row["depends_on"]),
        )
    console.print(table)


def print_status(identity: str, rows: list[tuple[str, StepRecord]]) -> None:
    table = Table(title=f"Recorded state of {identity}", title_justify="left")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Updated")
    table.add_column("Last error")
    for step_id, entry in rows:
        style = RECORD_STYLES[entry.status]
        table.add_row(
            step_id,
            f"[{style}]{entry.status.value}[/{style}]",
            entry.timestamp or "-",
            entry.last_error or "",
        )
    console.print(table)


def print_services(entries: list[dict[str, Any]]) -> None:
    """Print containers reported by docker compose ps."""
    if not entries:
        click.echo("No containers found.")
        return
    table = Table(title="Containers", title_justify="left")
    table.add_column("Service")
    table.add_column("State")
    table.add_column("Health")
    table.add_column("Status")
    for entry in entries:
        state = entry.get("State", "")
        color = "green" if state == "running" else "red"
        table.add_row(
            entry.get("Service", entry.get("Name", "?")),
            f"[{color}]{state}[/{color}]",
            entry.get("Health", "") or "-",
            entry.get("Status", ""),
        )
    console.print(table)
