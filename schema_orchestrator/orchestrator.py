"""
Service layer wiring the orchestrator's components together.

Usage (example from CLI):
    from schema_orchestrator.orchestrator import apply_migrations, build_runtime

    runtime = build_runtime(provider_name="postgres")
    outcome = await apply_migrations(runtime, dry_run=True)
    print(outcome.plan.execution_groups)

Providers are resolved through a small factory registry; each factory builds
the provider together with the audit sink, schema inspector and lease manager
that belong with it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from schema_orchestrator.config import Settings, get_settings
from schema_orchestrator.domain.models import DomainMigration, MigrationPlan, RollbackPlan
from schema_orchestrator.errors import ConfigurationError, CycleDetectedError
from schema_orchestrator.executor import ExecutionResult, PlanExecutor
from schema_orchestrator.health import HealthMonitor, HealthSnapshot
from schema_orchestrator.infrastructure.db_factory import PoolManager, build_dsn
from schema_orchestrator.infrastructure.leases import (
    InProcessLeaseManager,
    LeaseManager,
    PostgresAdvisoryLeaseManager,
)
from schema_orchestrator.planner import MigrationPlanner, topological_order
from schema_orchestrator.providers.abstract import AuditSink, MigrationProvider, SchemaInspector
from schema_orchestrator.providers.audit_log import JsonlAuditSink
from schema_orchestrator.providers.memory import InMemoryMigrationProvider, StaticSchemaInspector
from schema_orchestrator.providers.postgres import (
    PostgresMigrationProvider,
    PostgresSchemaInspector,
    discover_migrations,
)
from schema_orchestrator.registry import DomainRegistry, load_registry, registry_issues
from schema_orchestrator.rollback import RollbackExecutor, RollbackPlanner
from schema_orchestrator.utils.logging import get_logger

log = get_logger(__name__)


@dataclass
class Runtime:
    """Everything one CLI invocation needs, built once and shared."""

    settings: Settings
    registry: DomainRegistry
    provider: MigrationProvider
    audit_sink: AuditSink
    inspector: SchemaInspector
    leases: LeaseManager
    closers: List[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def aclose(self) -> None:
        for close in self.closers:
            await close()


def _memory_runtime(settings: Settings, registry: DomainRegistry) -> Runtime:
    # Known migrations come from the migrations directory; nothing is applied yet.
    migrations = {
        d.name: discover_migrations(Path(settings.migrations_dir), d.name) for d in registry.all()
    }
    return Runtime(
        settings=settings,
        registry=registry,
        provider=InMemoryMigrationProvider(migrations),
        audit_sink=JsonlAuditSink(settings.audit_log_path),
        inspector=StaticSchemaInspector(),
        leases=InProcessLeaseManager(),
    )


def _postgres_runtime(settings: Settings, registry: DomainRegistry) -> Runtime:
    provider = PostgresMigrationProvider(
        settings=settings, domain_tables={d.name: d.tables for d in registry.all()}
    )
    return Runtime(
        settings=settings,
        registry=registry,
        provider=provider,
        audit_sink=JsonlAuditSink(settings.audit_log_path),
        inspector=PostgresSchemaInspector(settings=settings),
        leases=PostgresAdvisoryLeaseManager(dsn=build_dsn(settings)),
        closers=[PoolManager().close_all],
    )


def _provider_factories() -> Dict[str, Callable[[Settings, DomainRegistry], Runtime]]:
    """Registry of available providers."""
    return {
        "memory": _memory_runtime,
        "postgres": _postgres_runtime,
    }


def available_providers() -> List[str]:
    """List available provider names."""
    return sorted(_provider_factories().keys())


def build_runtime(
    settings: Optional[Settings] = None, provider_name: Optional[str] = None
) -> Runtime:
    settings = settings or get_settings()
    name = provider_name or settings.provider
    factories = _provider_factories()
    if name not in factories:
        raise ConfigurationError(f"Unknown provider '{name}'. Available: {', '.join(factories)}")
    registry = load_registry(settings)
    log.debug("Runtime built", extra={"provider": name, "domains": len(registry)})
    return factories[name](settings, registry)


@dataclass
class ApplyOutcome:
    plan: MigrationPlan
    result: Optional[ExecutionResult] = None

    @property
    def success(self) -> bool:
        return self.result is None or self.result.success


async def apply_migrations(
    runtime: Runtime,
    domain: Optional[str] = None,
    dry_run: bool = False,
    cancel_event: Optional[asyncio.Event] = None,
) -> ApplyOutcome:
    """
    Plan and (unless `dry_run`) execute pending migrations.

    Parameters
    ----------
    runtime : Runtime
        Wired components.
    domain : str | None
        Restrict the run to one domain; its dependencies are assumed applied.
    dry_run : bool
        Return the plan without executing it.
    cancel_event : asyncio.Event | None
        Set to stop at the next domain boundary.
    """
    planner = MigrationPlanner(runtime.registry, runtime.provider, runtime.settings)
    plan = await planner.create_plan([domain] if domain else None)
    if dry_run:
        log.info("[DRY RUN] Plan created, nothing executed", extra={"plan_id": str(plan.plan_id)})
        return ApplyOutcome(plan=plan)
    executor = PlanExecutor(
        runtime.provider,
        runtime.audit_sink,
        runtime.settings,
        leases=runtime.leases,
        registry=runtime.registry,
    )
    result = await executor.execute(plan, cancel_event=cancel_event)
    return ApplyOutcome(plan=plan, result=result)


@dataclass
class DomainStatus:
    domain: str
    applied_count: int
    pending: Tuple[str, ...]
    last_applied: Optional[str] = None
    is_core_domain: bool = False

    @property
    def pending_count(self) -> int:
        return len(self.pending)


async def _domain_status(runtime: Runtime, name: str) -> DomainStatus:
    known, applied = await asyncio.gather(
        runtime.provider.list_all_migrations(name),
        runtime.provider.list_applied_migrations(name),
    )
    applied_set = set(applied)
    return DomainStatus(
        domain=name,
        applied_count=len(applied),
        pending=tuple(m for m in known if m not in applied_set),
        last_applied=applied[-1] if applied else None,
        is_core_domain=runtime.registry.get(name).is_core_domain,
    )


async def collect_status(runtime: Runtime, domain: Optional[str] = None) -> List[DomainStatus]:
    domains = runtime.registry.enabled(only=[domain] if domain else None)
    return list(await asyncio.gather(*(_domain_status(runtime, d.name) for d in domains)))


@dataclass
class ValidationIssue:
    message: str
    domain: Optional[str] = None
    severity: str = "error"


@dataclass
class ValidationReport:
    issues: List[ValidationIssue] = field(default_factory=list)
    checked_domains: int = 0

    @property
    def errors(self) -> List[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "error"]

    @property
    def ok(self) -> bool:
        return not self.errors

    def add(self, message: str, domain: Optional[str] = None, severity: str = "error") -> None:
        self.issues.append(ValidationIssue(message=message, domain=domain, severity=severity))


async def validate_configuration(runtime: Runtime) -> ValidationReport:
    """
    Check registry consistency, the dependency graph, and provider state.

    Never raises for the problems it looks for; they are collected instead.
    """
    report = ValidationReport()
    registry = runtime.registry
    domains = registry.all()
    report.checked_domains = len(domains)

    for message in registry_issues(domains):
        report.add(message)
    for name in runtime.settings.enabled_domain_names:
        if name not in registry:
            report.add(f"MIGRATION_ENABLED_DOMAINS names unknown domain {name!r}")
    for d in domains:
        for dep in sorted(d.dependencies):
            if dep in registry and not registry.get(dep).enabled and d.enabled:
                report.add(f"Depends on disabled domain {dep}", domain=d.name, severity="warning")

    nodes = [
        DomainMigration(domain=d.name, dependencies=d.dependencies, priority=d.priority)
        for d in domains
    ]
    try:
        topological_order(nodes)
    except CycleDetectedError as exc:
        report.add(str(exc))

    if not await runtime.provider.can_connect():
        report.add(f"Provider {runtime.provider.name} is not reachable")
        return report

    for d in registry.enabled():
        known, applied = await asyncio.gather(
            runtime.provider.list_all_migrations(d.name),
            runtime.provider.list_applied_migrations(d.name),
        )
        unknown = [m for m in applied if m not in set(known)]
        if unknown:
            report.add(
                f"Applied migrations missing from definitions: {', '.join(unknown)}",
                domain=d.name,
            )
    log.info(
        "[VALIDATION]",
        extra={
            "domains": report.checked_domains,
            "errors": len(report.errors),
            "issues": len(report.issues),
        },
    )
    return report


async def generate_scripts(
    runtime: Runtime, domain: Optional[str] = None, target: Optional[str] = None
) -> Dict[str, str]:
    """
    Reversal script per domain, keyed by domain name.

    Without `target` only the most recent applied migration is reversed.
    Domains with nothing applied are skipped.
    """
    if target and not domain:
        raise ConfigurationError("--target requires --domain")
    domains = runtime.registry.enabled(only=[domain] if domain else None)
    scripts: Dict[str, str] = {}
    for d in domains:
        applied = await runtime.provider.list_applied_migrations(d.name)
        if not applied:
            continue
        if target is not None:
            if target not in applied:
                raise ConfigurationError(f"Migration {target} has not been applied to domain {d.name}")
            if target == applied[-1]:
                scripts[d.name] = f"-- {d.name} is already at {target}; nothing to reverse\n"
                continue
            to_migration: Optional[str] = target
        else:
            to_migration = applied[-2] if len(applied) > 1 else None
        scripts[d.name] = await runtime.provider.generate_reversal_script(
            d.name, applied[-1], to_migration
        )
    return scripts


async def plan_rollback(runtime: Runtime, domain: str, target: str) -> RollbackPlan:
    planner = RollbackPlanner(runtime.registry, runtime.provider)
    return await planner.create_rollback_plan(domain, target)


async def execute_rollback(runtime: Runtime, plan: RollbackPlan) -> None:
    executor = RollbackExecutor(
        runtime.provider,
        runtime.audit_sink,
        runtime.inspector,
        runtime.settings,
        leases=runtime.leases,
    )
    await executor.execute_rollback(plan)


async def health_report(runtime: Runtime, domain: str) -> HealthSnapshot:
    monitor = HealthMonitor(runtime.registry, runtime.inspector, runtime.audit_sink)
    return await monitor.health_snapshot(domain)


__all__ = [
    "ApplyOutcome",
    "DomainStatus",
    "Runtime",
    "ValidationIssue",
    "ValidationReport",
    "apply_migrations",
    "available_providers",
    "build_runtime",
    "collect_status",
    "execute_rollback",
    "generate_scripts",
    "health_report",
    "plan_rollback",
    "validate_configuration",
]
