from __future__ import annotations

from typing import List, Optional

from rich import box
from rich.console import Console
from rich.table import Table

from schema_orchestrator.domain.models import MigrationPlan, RiskLevel, RollbackPlan
from schema_orchestrator.executor import ExecutionResult
from schema_orchestrator.health import HealthSnapshot
from schema_orchestrator.orchestrator import DomainStatus, ValidationReport

_RISK_STYLES = {
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
    RiskLevel.CRITICAL: "bold red",
}


def _minutes(seconds: float) -> str:
    return f"{seconds / 60:.1f}"


def _profile_line(result: ExecutionResult) -> str:
    rss = f"{result.peak_rss_bytes / (1024 * 1024):.1f} MiB" if result.peak_rss_bytes else "n/a"
    cpu = f"{result.cpu_percent:.1f}%" if result.cpu_percent is not None else "n/a"
    return f"[dim]Wall {result.duration_seconds:.2f}s │ peak RSS {rss} │ CPU {cpu}[/dim]"


def print_plan(plan: MigrationPlan, console: Optional[Console] = None) -> None:
    """
    Render a migration plan, one row per domain, with its execution group.
    """
    console = console or Console()
    if not plan.domain_migrations:
        console.print("[yellow]No enabled domains to plan.[/yellow]")
        return

    table = Table(
        title=f"Migration Plan {plan.plan_id}",
        box=box.ROUNDED,
        caption=(
            f"{len(plan.execution_groups)} group(s) │ {plan.pending_count} pending │ "
            f"~{_minutes(plan.estimated_total_duration.total_seconds())} min"
        ),
    )
    table.add_column("Group", justify="right", style="blue")
    table.add_column("Domain", style="cyan", no_wrap=True)
    table.add_column("Depends On", style="magenta")
    table.add_column("Pending", justify="right", style="bold green")
    table.add_column("Est. (min)", justify="right", style="green")

    for position, group in enumerate(plan.execution_groups, start=1):
        for dm in group:
            table.add_row(
                str(position),
                dm.domain,
                ", ".join(sorted(dm.dependencies)) or "-",
                str(len(dm.pending_migrations)),
                _minutes(dm.estimated_duration.total_seconds()),
            )
    console.print(table)


def print_execution(result: ExecutionResult, console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(title="Execution Result", box=box.ROUNDED)
    table.add_column("Domain", style="cyan", no_wrap=True)
    table.add_column("Outcome")
    table.add_column("Applied", justify="right", style="magenta")
    table.add_column("Attempts", justify="right", style="blue")
    table.add_column("Duration (s)", justify="right", style="green")

    for name, outcome in result.domain_results.items():
        status = "[green]ok[/green]" if outcome.success else f"[red]failed[/red] {outcome.error or ''}"
        table.add_row(
            name,
            status,
            str(len(outcome.applied_migrations)),
            str(outcome.attempts),
            f"{outcome.duration_seconds:.2f}",
        )
    for name in result.not_started:
        table.add_row(name, "[yellow]not started[/yellow]", "0", "0", "-")
    console.print(table)
    console.print(_profile_line(result))

    if result.audit_write_failures:
        console.print(
            f"[bold red]{result.audit_write_failures} audit write(s) failed; see logs.[/bold red]"
        )
    if result.cancelled:
        console.print("[yellow]Execution cancelled before completion.[/yellow]")
    elif result.success:
        console.print(f"[green]All {len(result.completed_domains)} domain(s) completed.[/green]")
    else:
        console.print(f"[red]Halted at {result.failed_domain}: {result.error}[/red]")


def print_status(statuses: List[DomainStatus], verbose: bool = False, console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(title="Domain Migration Status", box=box.ROUNDED)
    table.add_column("Domain", style="cyan", no_wrap=True)
    table.add_column("Applied", justify="right", style="green")
    table.add_column("Pending", justify="right", style="bold yellow")
    table.add_column("Last Applied", style="magenta")
    if verbose:
        table.add_column("Pending Migrations")

    for status in statuses:
        name = f"{status.domain} [dim](core)[/dim]" if status.is_core_domain else status.domain
        row = [name, str(status.applied_count), str(status.pending_count), status.last_applied or "-"]
        if verbose:
            row.append("\n".join(status.pending) or "-")
        table.add_row(*row)
    console.print(table)


def print_validation(report: ValidationReport, console: Optional[Console] = None) -> None:
    console = console or Console()
    if not report.issues:
        console.print(f"[green]Configuration valid ({report.checked_domains} domains checked).[/green]")
        return
    table = Table(title="Validation Issues", box=box.ROUNDED)
    table.add_column("Severity")
    table.add_column("Domain", style="cyan")
    table.add_column("Issue")
    for issue in report.issues:
        style = "red" if issue.severity == "error" else "yellow"
        table.add_row(f"[{style}]{issue.severity}[/{style}]", issue.domain or "-", issue.message)
    console.print(table)


def print_rollback_plan(plan: RollbackPlan, console: Optional[Console] = None) -> None:
    console = console or Console()
    style = _RISK_STYLES[plan.risk_level]
    table = Table(
        title=f"Rollback {plan.domain} → {plan.target_migration}",
        box=box.ROUNDED,
        caption=f"Risk: [{style}]{plan.risk_level.value}[/{style}] │ "
        f"~{_minutes(plan.estimated_duration.total_seconds())} min",
    )
    table.add_column("#", justify="right", style="blue")
    table.add_column("Migration to revert", style="magenta")
    for position, migration in enumerate(plan.reversal_order, start=1):
        table.add_row(str(position), migration)
    console.print(table)
    if plan.affected_tables:
        console.print(f"Affected tables: {', '.join(plan.affected_tables)}")
    if plan.dependent_domains:
        console.print(f"[yellow]Dependent domains: {', '.join(plan.dependent_domains)}[/yellow]")


def print_health(snapshot: HealthSnapshot, console: Optional[Console] = None) -> None:
    console = console or Console()
    drift, integrity, perf = snapshot.drift, snapshot.integrity, snapshot.performance

    table = Table(title=f"Health: {drift.domain}", box=box.ROUNDED)
    table.add_column("Check", style="cyan", no_wrap=True)
    table.add_column("Severity / Grade", justify="right")
    table.add_column("Details")
    table.add_row(
        "Schema drift",
        drift.severity.value,
        ", ".join(drift.drifted_tables) or "no drift",
    )
    table.add_row(
        "Integrity",
        integrity.severity.value,
        "\n".join(issue.message for issue in integrity.issues) or "healthy",
    )
    table.add_row(
        "Performance",
        perf.grade,
        f"{perf.successful}/{perf.total_executed} ok │ "
        f"avg {perf.average_duration.total_seconds():.2f}s │ "
        f"{perf.throughput_per_hour:.1f}/h",
    )
    console.print(table)
    for action in (*drift.recommended_actions, *integrity.recommended_fixes):
        console.print(f" • {action}")


__all__ = [
    "print_execution",
    "print_health",
    "print_plan",
    "print_rollback_plan",
    "print_status",
    "print_validation",
]
