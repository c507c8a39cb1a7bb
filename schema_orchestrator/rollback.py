"""
Rollback planning and execution for a single domain.

RollbackPlanner works out which applied migrations lie after a target, who
depends on the domain, and how risky undoing them is. RollbackExecutor then
checks preconditions, takes a backup checkpoint, reverses the migrations
most-recent-first inside one provider transaction, validates the result and
writes an audit entry whether it succeeded or not.
"""

from __future__ import annotations

import asyncio
import json
import time
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from schema_orchestrator.config import Settings, get_settings
from schema_orchestrator.domain.models import AuditEntry, Domain, RiskLevel, RollbackPlan, utcnow
from schema_orchestrator.errors import (
    ConfigurationError,
    LeaseUnavailableError,
    RollbackError,
    RollbackPreconditionError,
)
from schema_orchestrator.infrastructure.leases import InProcessLeaseManager, LeaseManager
from schema_orchestrator.providers.abstract import (
    AuditSink,
    MigrationProvider,
    ProviderCapability,
    SchemaInspector,
    checksum_for,
)
from schema_orchestrator.registry import DomainRegistry
from schema_orchestrator.utils.logging import get_logger

log = get_logger(__name__)

BASE_ROLLBACK_MINUTES = 1.0
PER_MIGRATION_MINUTES = 0.5
PER_TABLE_MINUTES = 0.25
HIGH_MIGRATION_COUNT = 3
UNKNOWN_CHECKSUM = "unavailable"


def assess_risk(domain: Domain, migration_count: int, dependent_count: int) -> RiskLevel:
    """Dependents dominate; core status and migration count only matter without them."""
    if dependent_count > 0:
        return RiskLevel.CRITICAL if domain.is_core_domain else RiskLevel.HIGH
    if migration_count > HIGH_MIGRATION_COUNT or domain.is_core_domain:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def estimate_rollback_duration(migration_count: int, table_count: int) -> timedelta:
    return timedelta(
        minutes=BASE_ROLLBACK_MINUTES
        + PER_MIGRATION_MINUTES * migration_count
        + PER_TABLE_MINUTES * table_count
    )


class RollbackPlanner:
    def __init__(self, registry: DomainRegistry, provider: MigrationProvider) -> None:
        self.registry = registry
        self.provider = provider

    async def create_rollback_plan(self, domain: str, target_migration: str) -> RollbackPlan:
        """
        Plan undoing every migration applied after `target_migration`.

        Raises
        ------
        ConfigurationError
            Unknown or disabled domain, unknown target, or a target that was
            never applied.
        """
        definition = self.registry.get(domain)
        if not definition.enabled:
            raise ConfigurationError(f"Domain {domain} is disabled")

        known, applied = await asyncio.gather(
            self.provider.list_all_migrations(domain),
            self.provider.list_applied_migrations(domain),
        )
        if target_migration not in known:
            raise ConfigurationError(f"Migration {target_migration} does not exist in domain {domain}")
        if target_migration not in applied:
            raise ConfigurationError(
                f"Migration {target_migration} has not been applied to domain {domain}"
            )

        to_rollback = tuple(applied[applied.index(target_migration) + 1 :])
        dependents = self.registry.dependents_of(domain)
        plan = RollbackPlan(
            domain=domain,
            target_migration=target_migration,
            affected_tables=definition.tables,
            migrations_to_rollback=to_rollback,
            dependent_domains=dependents,
            estimated_duration=estimate_rollback_duration(len(to_rollback), len(definition.tables)),
            risk_level=assess_risk(definition, len(to_rollback), len(dependents)),
        )
        log.info(
            f"[ROLLBACK PLAN] {domain} -> {target_migration}",
            extra={
                "domain": domain,
                "migrations": len(to_rollback),
                "dependents": list(dependents),
                "risk": plan.risk_level.value,
            },
        )
        return plan


class RollbackExecutor:
    """
    Execute a RollbackPlan.

    The domain lease is requested without waiting: a rollback never queues
    behind a running migration or another rollback.
    """

    def __init__(
        self,
        provider: MigrationProvider,
        audit_sink: AuditSink,
        inspector: SchemaInspector,
        settings: Optional[Settings] = None,
        leases: Optional[LeaseManager] = None,
    ) -> None:
        self.provider = provider
        self.audit_sink = audit_sink
        self.inspector = inspector
        self.settings = settings or get_settings()
        self.leases = leases or InProcessLeaseManager()

    async def execute_rollback(self, plan: RollbackPlan) -> None:
        """
        Raises
        ------
        RollbackPreconditionError
            Nothing was changed: provider unreachable, reversal unsupported,
            domain busy, or the plan no longer matches the applied history.
        RollbackError
            Backup, reversal or post-rollback validation failed.
        """
        started = time.perf_counter()
        checksum_before = await self._checksum(plan.domain)
        log.info(
            f"[ROLLBACK START] {plan.domain} -> {plan.target_migration}",
            extra={"domain": plan.domain, "migrations": list(plan.reversal_order)},
        )
        committed = False
        try:
            await self._check_preconditions(plan)
            owner = f"rollback:{plan.target_migration}"
            async with self.leases.acquire(plan.domain, owner, wait=False):
                await self._check_not_stale(plan)
                if plan.migrations_to_rollback:
                    checkpoint = await self._checkpoint(plan)
                    log.info(
                        "Backup checkpoint taken",
                        extra={"domain": plan.domain, "checkpoint": checkpoint},
                    )
                    await self._reverse(plan)
                    committed = True
                    await self._validate(plan)
                else:
                    log.info("Nothing to roll back", extra={"domain": plan.domain})
        except LeaseUnavailableError as exc:
            await self._record_failure(plan, checksum_before, started, str(exc), committed)
            raise RollbackPreconditionError(plan.domain, str(exc)) from exc
        except RollbackError as exc:
            await self._record_failure(plan, checksum_before, started, str(exc), committed)
            raise
        except Exception as exc:  # noqa: BLE001 - every failed rollback is audited
            message = f"Rollback of {plan.domain} failed: {type(exc).__name__}: {exc}"
            await self._record_failure(plan, checksum_before, started, message, committed)
            raise RollbackError(plan.domain, message) from exc

        checksum_after = await self._checksum(plan.domain)
        await self._record(
            AuditEntry(
                domain=plan.domain,
                migration_name=f"ROLLBACK_TO_{plan.target_migration}",
                applied_at=utcnow(),
                applied_by=self.settings.applied_by,
                environment=self.settings.app_env,
                checksum_before=checksum_before,
                checksum_after=checksum_after,
                duration=timedelta(seconds=time.perf_counter() - started),
                attempts=1,
            )
        )
        log.info(
            f"[ROLLBACK COMPLETE] {plan.domain} -> {plan.target_migration}",
            extra={"domain": plan.domain, "reverted": len(plan.migrations_to_rollback)},
        )

    async def _check_preconditions(self, plan: RollbackPlan) -> None:
        if not await self.provider.can_connect():
            raise RollbackPreconditionError(plan.domain, f"Cannot connect to the {plan.domain} schema")
        if plan.migrations_to_rollback and ProviderCapability.REVERT not in self.provider.capabilities:
            raise RollbackPreconditionError(
                plan.domain,
                f"Provider {self.provider.name} cannot revert migrations; "
                f"generate a reversal script with `script --domain {plan.domain} "
                f"--target {plan.target_migration}` and apply it manually",
            )
        if plan.dependent_domains:
            log.warning(
                f"Rolling back {plan.domain} may affect dependent domains: "
                f"{', '.join(plan.dependent_domains)}",
                extra={"domain": plan.domain, "dependents": list(plan.dependent_domains)},
            )

    async def _check_not_stale(self, plan: RollbackPlan) -> None:
        applied = await self.provider.list_applied_migrations(plan.domain)
        if plan.target_migration not in applied:
            raise RollbackPreconditionError(
                plan.domain, f"Target {plan.target_migration} is no longer applied"
            )
        current = tuple(applied[applied.index(plan.target_migration) + 1 :])
        if current != plan.migrations_to_rollback:
            raise RollbackPreconditionError(
                plan.domain, "Applied migrations changed since the rollback plan was created"
            )

    async def _checkpoint(self, plan: RollbackPlan) -> str:
        try:
            if ProviderCapability.BACKUP in self.provider.capabilities:
                return await self.provider.create_backup(plan.domain)
            script = await self.provider.generate_reversal_script(
                plan.domain, plan.migrations_to_rollback[-1], plan.target_migration
            )
            return await asyncio.to_thread(self._write_checkpoint, plan, script)
        except Exception as exc:  # noqa: BLE001 - no reversal without a checkpoint
            raise RollbackError(plan.domain, f"Backup failed for {plan.domain}: {exc}") from exc

    def _write_checkpoint(self, plan: RollbackPlan, script: str) -> str:
        stamp = plan.created_at.strftime("%Y%m%dT%H%M%SZ")
        folder = Path(self.settings.backup_dir) / plan.domain / f"{stamp}-{plan.target_migration}"
        folder.mkdir(parents=True, exist_ok=True)
        (folder / "reversal.sql").write_text(script, encoding="utf-8")
        manifest = {
            "domain": plan.domain,
            "target_migration": plan.target_migration,
            "migrations_to_rollback": list(plan.migrations_to_rollback),
            "affected_tables": list(plan.affected_tables),
            "created_at": plan.created_at.isoformat(),
        }
        with (folder / "manifest.json").open("w", encoding="utf-8") as f:
            json.dump(manifest, f, indent=2, sort_keys=True)
        return str(folder)

    async def _reverse(self, plan: RollbackPlan) -> None:
        try:
            async with self.provider.transaction(plan.domain) as tx:
                for migration in plan.reversal_order:
                    log.info(f"[REVERT] {plan.domain}/{migration}", extra={"domain": plan.domain})
                    await self.provider.revert_migration(plan.domain, migration, tx)
        except Exception as exc:  # noqa: BLE001 - the transaction is already aborted
            raise RollbackError(plan.domain, f"Rollback of {plan.domain} aborted: {exc}") from exc

    async def _validate(self, plan: RollbackPlan) -> None:
        problems: List[str] = []
        for table in plan.affected_tables:
            if not await self.inspector.table_exists(plan.domain, table):
                problems.append(f"table {table} is missing")
        applied = await self.provider.list_applied_migrations(plan.domain)
        if not applied or applied[-1] != plan.target_migration:
            head = applied[-1] if applied else "<none>"
            problems.append(f"latest applied migration is {head}, expected {plan.target_migration}")
        if problems:
            raise RollbackError(
                plan.domain, f"Post-rollback validation failed for {plan.domain}: {'; '.join(problems)}"
            )

    async def _record_failure(
        self, plan: RollbackPlan, checksum: str, started: float, error: str, committed: bool
    ) -> None:
        # After the reversal committed the schema no longer matches `checksum`.
        checksum_after = await self._checksum(plan.domain) if committed else checksum
        log.error(
            f"[ROLLBACK FAILED] {plan.domain} -> {plan.target_migration}",
            extra={"domain": plan.domain, "error": error},
        )
        await self._record(
            AuditEntry(
                domain=plan.domain,
                migration_name=f"ROLLBACK_TO_{plan.target_migration}_FAILED",
                applied_at=utcnow(),
                applied_by=self.settings.applied_by,
                environment=self.settings.app_env,
                checksum_before=checksum,
                checksum_after=checksum_after,
                duration=timedelta(seconds=time.perf_counter() - started),
                success=False,
                error=error,
                attempts=1,
            )
        )

    async def _checksum(self, domain: str) -> str:
        try:
            return await checksum_for(self.provider, domain)
        except Exception as exc:  # noqa: BLE001 - a missing checksum must not block the audit entry
            log.warning("Checksum unavailable", extra={"domain": domain, "error": str(exc)})
            return UNKNOWN_CHECKSUM

    async def _record(self, entry: AuditEntry) -> None:
        try:
            await self.audit_sink.record(entry)
        except Exception as exc:  # noqa: BLE001 - audit failures never mask the rollback outcome
            log.error(
                "[AUDIT WRITE FAILED] compliance event",
                extra={
                    "domain": entry.domain,
                    "migration": entry.migration_name,
                    "error": str(exc),
                    "compliance": True,
                },
            )


__all__ = [
    "RollbackExecutor",
    "RollbackPlanner",
    "assess_risk",
    "estimate_rollback_duration",
]
