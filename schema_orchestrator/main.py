from __future__ import annotations

import asyncio
import contextlib
import json
import signal
import sys
from typing import Awaitable, Callable, Iterator, Optional, TypeVar

import typer

from schema_orchestrator import reporter
from schema_orchestrator.config import Settings, get_settings
from schema_orchestrator.errors import OrchestrationError
from schema_orchestrator.orchestrator import (
    ApplyOutcome,
    Runtime,
    apply_migrations,
    available_providers,
    build_runtime,
    collect_status,
    execute_rollback,
    generate_scripts,
    health_report,
    plan_rollback,
    validate_configuration,
)
from schema_orchestrator.utils.logging import configure_logging, get_logger

log = get_logger(__name__)

app = typer.Typer(help="Multi-domain schema migration orchestrator.")

T = TypeVar("T")

_PROVIDER_HELP = "Migration provider (memory, postgres). Defaults to MIGRATION_PROVIDER."


def _bootstrap(verbose: bool, provider: Optional[str]) -> Runtime:
    settings = get_settings()
    configure_logging(level="DEBUG" if verbose else settings.log_level, json_logs=settings.log_json)
    return build_runtime(settings, provider)


def _run(runtime_factory: Callable[[], Runtime], use_case: Callable[[Runtime], Awaitable[T]]) -> T:
    """Build the runtime, run one use case on a fresh event loop, always release resources."""

    async def runner() -> T:
        runtime = runtime_factory()
        try:
            return await use_case(runtime)
        finally:
            await runtime.aclose()

    try:
        return asyncio.run(runner())
    except OrchestrationError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


@contextlib.contextmanager
def _interrupt_event() -> Iterator[asyncio.Event]:
    """
    Event set by SIGINT while the block runs; must be entered inside the loop.

    The in-flight domain keeps running and the executor stops at the next
    domain boundary.
    """
    event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_stop() -> None:
        log.warning("Interrupt received; stopping after the running domain(s)")
        event.set()

    installed = True
    try:
        loop.add_signal_handler(signal.SIGINT, request_stop)
    except (NotImplementedError, RuntimeError):
        # No loop signal support (Windows, non-main thread): Ctrl-C stays a hard stop.
        installed = False
    try:
        yield event
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings: Settings = get_settings()
    typer.echo(
        f"DB={settings.db_user}@{settings.db_host}:{settings.db_port}/{settings.db_name} | "
        f"provider={settings.provider} (available: {', '.join(available_providers())}) | "
        f"env={settings.app_env}"
    )
    typer.echo(
        f"retries={settings.max_retry_attempts} parallel={settings.parallel_execution_enabled} "
        f"max_parallel={settings.max_parallel_domains} timeout={settings.domain_timeout_minutes}min "
        f"enabled_domains={settings.enabled_domains or 'all'}"
    )


@app.command()
def apply(
    domain: Optional[str] = typer.Option(None, "--domain", "-d", help="Only migrate this domain."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the plan without applying it."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help=_PROVIDER_HELP),
) -> None:
    """
    Plan and apply pending migrations across domains in dependency order.
    """

    async def use_case(runtime: Runtime) -> ApplyOutcome:
        with _interrupt_event() as cancel_event:
            return await apply_migrations(
                runtime, domain=domain, dry_run=dry_run, cancel_event=cancel_event
            )

    outcome = _run(lambda: _bootstrap(verbose, provider), use_case)
    reporter.print_plan(outcome.plan)
    if outcome.result is not None:
        reporter.print_execution(outcome.result)
        if verbose:
            typer.echo(json.dumps(outcome.result.as_dict(), indent=2))
        if outcome.result.cancelled:
            raise typer.Exit(code=130)
    if not outcome.success:
        raise typer.Exit(code=1)


@app.command()
def status(
    domain: Optional[str] = typer.Option(None, "--domain", "-d", help="Only show this domain."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="List pending migration names."),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help=_PROVIDER_HELP),
) -> None:
    """
    Show applied and pending migration counts per domain.
    """
    statuses = _run(
        lambda: _bootstrap(verbose, provider),
        lambda runtime: collect_status(runtime, domain=domain),
    )
    reporter.print_status(statuses, verbose=verbose)


@app.command()
def validate(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help=_PROVIDER_HELP),
) -> None:
    """
    Validate domain definitions, the dependency graph and provider state.
    """
    report = _run(lambda: _bootstrap(verbose, provider), validate_configuration)
    reporter.print_validation(report)
    if not report.ok:
        raise typer.Exit(code=1)


@app.command()
def script(
    domain: Optional[str] = typer.Option(None, "--domain", "-d", help="Only this domain."),
    target: Optional[str] = typer.Option(
        None, "--target", "-t", help="Reverse everything applied after this migration."
    ),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help=_PROVIDER_HELP),
) -> None:
    """
    Print reversal scripts to stdout.
    """
    scripts = _run(
        lambda: _bootstrap(False, provider),
        lambda runtime: generate_scripts(runtime, domain=domain, target=target),
    )
    if not scripts:
        typer.echo("-- No applied migrations to reverse.")
        return
    for name, body in scripts.items():
        typer.echo(f"-- ===== {name} =====")
        typer.echo(body)


@app.command()
def rollback(
    domain: str = typer.Argument(..., help="Domain to roll back."),
    target: str = typer.Argument(..., help="Migration to roll back to (stays applied)."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    plan_only: bool = typer.Option(False, "--plan-only", help="Show the rollback plan and stop."),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help=_PROVIDER_HELP),
) -> None:
    """
    Roll a domain back to an earlier applied migration.
    """

    async def use_case(runtime: Runtime) -> None:
        plan = await plan_rollback(runtime, domain, target)
        reporter.print_rollback_plan(plan)
        if plan_only:
            return
        if not yes and not typer.confirm(f"Roll back {domain} to {target}?"):
            typer.echo("Rollback not confirmed.", err=True)
            raise typer.Exit(code=1)
        await execute_rollback(runtime, plan)
        typer.echo(f"Rolled back {domain} to {target}.")

    _run(lambda: _bootstrap(False, provider), use_case)


@app.command()
def health(
    domain: str = typer.Argument(..., help="Domain to inspect."),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help=_PROVIDER_HELP),
) -> None:
    """
    Report schema drift, data integrity and migration performance for a domain.
    """
    snapshot = _run(
        lambda: _bootstrap(False, provider),
        lambda runtime: health_report(runtime, domain),
    )
    reporter.print_health(snapshot)


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
