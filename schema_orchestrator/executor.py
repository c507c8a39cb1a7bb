"""
Plan execution.

Domains run in plan order (sequential mode) or group by group with bounded
concurrency inside each group (parallel mode). Each domain's pending
migrations are applied through the provider under a tenacity retry policy
with exponential backoff and a per-attempt timeout. The first domain that
exhausts its retries halts the run; domains that already completed are left
as they are.

Every attempted domain produces audit entries. Audit write failures are
logged as compliance events and counted, never allowed to change the outcome.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from schema_orchestrator.config import Settings, get_settings
from schema_orchestrator.domain.models import AuditEntry, DomainMigration, MigrationPlan, utcnow
from schema_orchestrator.errors import DependencyNotSatisfiedError, ExecutionError, LeaseUnavailableError
from schema_orchestrator.infrastructure.leases import InProcessLeaseManager, LeaseManager
from schema_orchestrator.providers.abstract import (
    ApplyContext,
    AuditSink,
    MigrationProvider,
    checksum_for,
)
from schema_orchestrator.registry import DomainRegistry
from schema_orchestrator.utils.logging import get_logger
from schema_orchestrator.utils.profiler import profile_block

log = get_logger(__name__)

UNKNOWN_CHECKSUM = "unavailable"


@dataclass
class DomainExecutionResult:
    domain: str
    success: bool = False
    applied_migrations: Tuple[str, ...] = ()
    attempts: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None


@dataclass
class ExecutionResult:
    """Outcome of one plan execution."""

    plan_id: str
    completed_domains: List[str] = field(default_factory=list)
    failed_domain: Optional[str] = None
    error: Optional[ExecutionError] = None
    cancelled: bool = False
    not_started: List[str] = field(default_factory=list)
    domain_results: Dict[str, DomainExecutionResult] = field(default_factory=dict)
    audit_write_failures: int = 0
    duration_seconds: float = 0.0
    peak_rss_bytes: Optional[int] = None
    cpu_percent: Optional[float] = None

    @property
    def success(self) -> bool:
        return self.failed_domain is None and not self.cancelled

    def as_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "success": self.success,
            "completed_domains": list(self.completed_domains),
            "failed_domain": self.failed_domain,
            "error": str(self.error) if self.error else None,
            "cancelled": self.cancelled,
            "not_started": list(self.not_started),
            "audit_write_failures": self.audit_write_failures,
            "duration_seconds": round(self.duration_seconds, 3),
            "peak_rss_bytes": self.peak_rss_bytes,
            "cpu_percent": round(self.cpu_percent, 1) if self.cpu_percent is not None else None,
        }


class PlanExecutor:
    """
    Apply a MigrationPlan through a MigrationProvider.

    Parameters
    ----------
    provider : MigrationProvider
        Adapter that applies the migrations.
    audit_sink : AuditSink
        Append-only audit log.
    settings : Settings | None
        Retry, timeout and parallelism settings.
    leases : LeaseManager | None
        Per-domain mutual exclusion; shared with the rollback executor.
    registry : DomainRegistry | None
        Used only for per-domain timeout overrides.
    """

    def __init__(
        self,
        provider: MigrationProvider,
        audit_sink: AuditSink,
        settings: Optional[Settings] = None,
        leases: Optional[LeaseManager] = None,
        registry: Optional[DomainRegistry] = None,
    ) -> None:
        self.provider = provider
        self.audit_sink = audit_sink
        self.settings = settings or get_settings()
        self.leases = leases or InProcessLeaseManager()
        self.registry = registry

    def timeout_for(self, domain: str) -> float:
        if self.registry is not None and domain in self.registry:
            override = self.registry.get(domain).timeout_minutes
            if override:
                return override * 60.0
        return self.settings.domain_timeout_seconds

    async def execute(
        self, plan: MigrationPlan, cancel_event: Optional[asyncio.Event] = None
    ) -> ExecutionResult:
        """
        Run the plan to completion, first failure, or cancellation.

        Raises
        ------
        DependencyNotSatisfiedError
            A domain was about to start before its dependencies completed.
            Plans built by MigrationPlanner never trigger this.
        """
        result = ExecutionResult(plan_id=str(plan.plan_id))
        parallel = self.settings.parallel_execution_enabled
        log.info(
            "[EXECUTION START]",
            extra={
                "plan_id": result.plan_id,
                "domains": len(plan.domain_migrations),
                "mode": "parallel" if parallel else "sequential",
            },
        )
        with profile_block(f"plan:{result.plan_id}") as stats:
            if parallel:
                await self._execute_parallel(plan, result, cancel_event)
            else:
                await self._execute_sequential(plan, result, cancel_event)
        result.duration_seconds = stats.duration_seconds
        result.peak_rss_bytes = stats.peak_rss_bytes
        result.cpu_percent = stats.cpu_percent

        if result.success:
            log.info(
                "[EXECUTION COMPLETE]",
                extra={"plan_id": result.plan_id, "completed": len(result.completed_domains)},
            )
        elif result.cancelled:
            log.warning(
                "[EXECUTION CANCELLED]",
                extra={"plan_id": result.plan_id, "not_started": result.not_started},
            )
        else:
            log.error(
                f"[EXECUTION HALTED] {result.failed_domain}",
                extra={
                    "plan_id": result.plan_id,
                    "failed_domain": result.failed_domain,
                    "completed": result.completed_domains,
                    "not_started": result.not_started,
                },
            )
        return result

    async def _execute_sequential(
        self,
        plan: MigrationPlan,
        result: ExecutionResult,
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        ordered = list(plan.domain_migrations)
        for position, dm in enumerate(ordered):
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                result.not_started = [d.domain for d in ordered[position:]]
                return
            self._check_dependencies(dm, result.completed_domains)
            outcome = await self._execute_domain(plan, dm, result)
            result.domain_results[dm.domain] = outcome
            if outcome.success:
                result.completed_domains.append(dm.domain)
                continue
            result.failed_domain = dm.domain
            result.error = ExecutionError(dm.domain, outcome.error or "unknown error", outcome.attempts)
            result.not_started = [d.domain for d in ordered[position + 1 :]]
            return

    async def _execute_parallel(
        self,
        plan: MigrationPlan,
        result: ExecutionResult,
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        semaphore = asyncio.Semaphore(self.settings.max_parallel_domains)
        groups = list(plan.execution_groups)

        async def run(dm: DomainMigration) -> DomainExecutionResult:
            async with semaphore:
                return await self._execute_domain(plan, dm, result)

        for position, group in enumerate(groups):
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                result.not_started = [dm.domain for g in groups[position:] for dm in g]
                return
            for dm in group:
                self._check_dependencies(dm, result.completed_domains)
            log.info(
                f"[GROUP {position + 1}/{len(groups)}] {', '.join(dm.domain for dm in group)}",
                extra={"plan_id": result.plan_id, "group": position + 1},
            )
            # Every sibling finishes before the group is judged.
            settled = await asyncio.gather(*(run(dm) for dm in group), return_exceptions=True)
            outcomes = [self._settle(dm, outcome) for dm, outcome in zip(group, settled)]

            failed: Optional[DomainExecutionResult] = None
            for dm, outcome in zip(group, outcomes):
                result.domain_results[dm.domain] = outcome
                if outcome.success:
                    result.completed_domains.append(dm.domain)
                elif failed is None:
                    failed = outcome
            if failed is not None:
                result.failed_domain = failed.domain
                result.error = ExecutionError(failed.domain, failed.error or "unknown error", failed.attempts)
                result.not_started = [dm.domain for g in groups[position + 1 :] for dm in g]
                return

    def _settle(self, dm: DomainMigration, outcome: Any) -> DomainExecutionResult:
        if not isinstance(outcome, BaseException):
            return outcome
        if not isinstance(outcome, Exception):
            raise outcome
        message = _describe(outcome, self.timeout_for(dm.domain))
        log.error(f"[DOMAIN FAILED] {dm.domain}", extra={"domain": dm.domain, "error": message})
        return DomainExecutionResult(domain=dm.domain, success=False, error=message)

    @staticmethod
    def _check_dependencies(dm: DomainMigration, completed: Sequence[str]) -> None:
        done: Set[str] = set(completed)
        missing = sorted(dep for dep in dm.dependencies if dep not in done)
        if missing:
            raise DependencyNotSatisfiedError(dm.domain, missing)

    async def _execute_domain(
        self, plan: MigrationPlan, dm: DomainMigration, result: ExecutionResult
    ) -> DomainExecutionResult:
        if not dm.has_pending:
            log.info(f"[DOMAIN UP TO DATE] {dm.domain}", extra={"domain": dm.domain})
            return DomainExecutionResult(domain=dm.domain, success=True)

        owner = f"plan:{plan.plan_id}"
        outcome: Optional[DomainExecutionResult] = None
        try:
            async with self.leases.acquire(dm.domain, owner, wait=True):
                outcome = await self._apply_with_retry(plan, dm, result)
        except LeaseUnavailableError as exc:
            log.error(f"[DOMAIN LOCKED] {dm.domain}", extra={"domain": dm.domain, "error": str(exc)})
            return await self._lease_failure(plan, dm, result, str(exc))
        except Exception as exc:  # noqa: BLE001 - lease backend errors end the domain like provider errors
            message = _describe(exc, self.timeout_for(dm.domain))
            if outcome is not None:
                # The migrations ran; only releasing the lease failed.
                log.error(
                    f"[LEASE RELEASE FAILED] {dm.domain}",
                    extra={"domain": dm.domain, "error": message},
                )
                return outcome
            log.error(f"[LEASE FAILED] {dm.domain}", extra={"domain": dm.domain, "error": message})
            return await self._lease_failure(plan, dm, result, message)
        return outcome

    async def _lease_failure(
        self, plan: MigrationPlan, dm: DomainMigration, result: ExecutionResult, error: str
    ) -> DomainExecutionResult:
        checksum = await self._checksum(dm.domain)
        await self._record(
            result,
            self._entry(
                plan,
                dm.domain,
                dm.pending_migrations[0],
                checksum,
                checksum,
                0.0,
                success=False,
                error=error,
                attempts=0,
            ),
        )
        return DomainExecutionResult(domain=dm.domain, success=False, error=error)

    async def _apply_with_retry(
        self, plan: MigrationPlan, dm: DomainMigration, result: ExecutionResult
    ) -> DomainExecutionResult:
        domain = dm.domain
        timeout = self.timeout_for(domain)
        checksum_before = await self._checksum(domain)
        attempts = 0
        started = time.perf_counter()
        log.info(
            f"[DOMAIN START] {domain}",
            extra={"domain": domain, "pending": len(dm.pending_migrations), "timeout_s": timeout},
        )
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.max_retry_attempts + 1),
                wait=wait_exponential(
                    multiplier=self.settings.retry_backoff_base_seconds,
                    exp_base=2,
                    max=self.settings.retry_backoff_max_seconds,
                ),
                retry=retry_if_exception_type(Exception),
                before_sleep=self._log_retry(domain),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    ctx = ApplyContext(
                        plan_id=str(plan.plan_id),
                        environment=plan.environment,
                        applied_by=self.settings.applied_by,
                        migrations=dm.pending_migrations,
                        attempt=attempts,
                    )
                    await asyncio.wait_for(self.provider.apply_pending(domain, ctx), timeout=timeout)
        except Exception as exc:  # noqa: BLE001 - any provider failure ends the domain
            elapsed = time.perf_counter() - started
            message = _describe(exc, timeout)
            log.error(
                f"[DOMAIN FAILED] {domain}",
                extra={"domain": domain, "attempts": attempts, "error": message},
            )
            await self._record(
                result,
                self._entry(
                    plan,
                    domain,
                    dm.pending_migrations[0],
                    checksum_before,
                    checksum_before,
                    elapsed,
                    success=False,
                    error=message,
                    attempts=attempts,
                ),
            )
            return DomainExecutionResult(
                domain=domain, success=False, attempts=attempts, duration_seconds=elapsed, error=message
            )

        elapsed = time.perf_counter() - started
        checksum_after = await self._checksum(domain)
        # One entry per migration; the domain's elapsed time is shared evenly.
        share = elapsed / len(dm.pending_migrations)
        for migration in dm.pending_migrations:
            await self._record(
                result,
                self._entry(
                    plan,
                    domain,
                    migration,
                    checksum_before,
                    checksum_after,
                    share,
                    success=True,
                    attempts=attempts,
                ),
            )
        log.info(
            f"[DOMAIN SUCCESS] {domain}",
            extra={
                "domain": domain,
                "applied": len(dm.pending_migrations),
                "attempts": attempts,
                "duration_ms": round(elapsed * 1000, 1),
            },
        )
        return DomainExecutionResult(
            domain=domain,
            success=True,
            applied_migrations=dm.pending_migrations,
            attempts=attempts,
            duration_seconds=elapsed,
        )

    @staticmethod
    def _log_retry(domain: str) -> Callable[[RetryCallState], None]:
        def before_sleep(state: RetryCallState) -> None:
            delay = state.next_action.sleep if state.next_action else 0.0
            exc = state.outcome.exception() if state.outcome else None
            log.warning(
                f"[RETRY] {domain} attempt {state.attempt_number} failed; retrying in {delay:.1f}s",
                extra={
                    "domain": domain,
                    "attempt": state.attempt_number,
                    "delay_s": delay,
                    "error": str(exc) if exc else None,
                },
            )

        return before_sleep

    async def _checksum(self, domain: str) -> str:
        try:
            return await checksum_for(self.provider, domain)
        except Exception as exc:  # noqa: BLE001 - a missing checksum must not block the audit entry
            log.warning("Checksum unavailable", extra={"domain": domain, "error": str(exc)})
            return UNKNOWN_CHECKSUM

    def _entry(
        self,
        plan: MigrationPlan,
        domain: str,
        migration: str,
        checksum_before: str,
        checksum_after: str,
        duration_seconds: float,
        success: bool,
        error: Optional[str] = None,
        attempts: int = 1,
    ) -> AuditEntry:
        return AuditEntry(
            domain=domain,
            migration_name=migration,
            applied_at=utcnow(),
            applied_by=self.settings.applied_by,
            environment=plan.environment,
            checksum_before=checksum_before,
            checksum_after=checksum_after,
            duration=timedelta(seconds=max(duration_seconds, 0.0)),
            success=success,
            error=error,
            attempts=attempts,
        )

    async def _record(self, result: ExecutionResult, entry: AuditEntry) -> None:
        try:
            await self.audit_sink.record(entry)
        except Exception as exc:  # noqa: BLE001 - audit failures never mask the migration outcome
            result.audit_write_failures += 1
            log.error(
                "[AUDIT WRITE FAILED] compliance event",
                extra={
                    "domain": entry.domain,
                    "migration": entry.migration_name,
                    "success": entry.success,
                    "error": str(exc),
                    "compliance": True,
                },
            )


def _describe(exc: BaseException, timeout: float) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return f"timed out after {timeout:.0f}s"
    return f"{type(exc).__name__}: {exc}"


__all__ = ["DomainExecutionResult", "ExecutionResult", "PlanExecutor"]
