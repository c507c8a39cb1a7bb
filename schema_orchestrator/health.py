"""
Schema health monitoring: drift, data integrity, and migration performance.

All checks are read-only. Integrity problems are reported with recommended
fixes and never repaired automatically.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from schema_orchestrator.domain.models import (
    AuditEntry,
    Domain,
    DriftSeverity,
    IntegrityReport,
    IntegrityRule,
    IntegrityRuleKind,
    IntegritySeverity,
    IntegrityViolation,
    PerformanceMetrics,
    SchemaDriftReport,
)
from schema_orchestrator.providers.abstract import AuditSink, SchemaInspector
from schema_orchestrator.registry import DomainRegistry
from schema_orchestrator.utils.logging import get_logger

log = get_logger(__name__)

# (min success rate, max average seconds, grade), best first
_GRADES = (
    (0.98, 5.0, "A+"),
    (0.95, 10.0, "A"),
    (0.90, 30.0, "B"),
    (0.80, 60.0, "C"),
)


def drift_severity(drifted_count: int, is_core_domain: bool) -> DriftSeverity:
    if drifted_count == 0:
        return DriftSeverity.NONE
    if is_core_domain and drifted_count > 2:
        return DriftSeverity.CRITICAL
    if drifted_count == 1:
        return DriftSeverity.LOW
    if drifted_count <= 3:
        return DriftSeverity.MEDIUM
    return DriftSeverity.HIGH


def integrity_severity(issues: Sequence[IntegrityViolation]) -> IntegritySeverity:
    if not issues:
        return IntegritySeverity.NONE
    if any(issue.kind is IntegrityRuleKind.ORPHAN_REFERENCE for issue in issues):
        return IntegritySeverity.HIGH
    if len(issues) == 1:
        return IntegritySeverity.LOW
    if len(issues) <= 3:
        return IntegritySeverity.MEDIUM
    return IntegritySeverity.HIGH


def performance_grade(success_rate: float, average_seconds: float) -> str:
    for min_rate, max_seconds, grade in _GRADES:
        if success_rate >= min_rate and average_seconds <= max_seconds:
            return grade
    return "D"


def _index_table(domain: Domain, index: str) -> str:
    """Table an expected index belongs to, from the `IX_<Table>_...` convention."""
    for table in sorted(domain.tables, key=len, reverse=True):
        if index.startswith(f"IX_{table}_"):
            return table
    return domain.tables[0] if domain.tables else index


@dataclass
class HealthSnapshot:
    drift: SchemaDriftReport
    integrity: IntegrityReport
    performance: PerformanceMetrics

    @property
    def healthy(self) -> bool:
        return not self.drift.has_drift and self.integrity.is_healthy

    def as_dict(self) -> Dict[str, Any]:
        return {
            "drift": self.drift.model_dump(mode="json"),
            "integrity": self.integrity.model_dump(mode="json"),
            "performance": self.performance.model_dump(mode="json"),
        }


class HealthMonitor:
    def __init__(
        self,
        registry: DomainRegistry,
        inspector: SchemaInspector,
        audit_sink: AuditSink,
    ) -> None:
        self.registry = registry
        self.inspector = inspector
        self.audit_sink = audit_sink

    async def detect_schema_drift(self, domain: str) -> SchemaDriftReport:
        """
        Compare each declared table with its expected structure.

        A missing expected index counts as drift on the table it belongs to.
        """
        definition = self.registry.get(domain)
        drifted: List[str] = []
        for table in definition.tables:
            if await self.inspector.table_drifted(domain, table):
                drifted.append(table)
        for index in definition.expected_indexes:
            table = _index_table(definition, index)
            if not await self.inspector.index_exists(domain, table, index):
                log.warning("Expected index missing", extra={"domain": domain, "index": index})
                if table not in drifted:
                    drifted.append(table)

        actions: List[str] = []
        if drifted:
            actions.append("Review and update migration scripts to match expected schema")
            actions.append("Consider running schema validation tools")
            if definition.is_core_domain:
                actions.append(f"{domain} domain drift detected - prioritize immediate remediation")

        report = SchemaDriftReport(
            domain=domain,
            has_drift=bool(drifted),
            drifted_tables=tuple(drifted),
            severity=drift_severity(len(drifted), definition.is_core_domain),
            recommended_actions=tuple(actions),
        )
        log.info(
            f"[DRIFT] {domain}",
            extra={"domain": domain, "drifted": list(drifted), "severity": report.severity.value},
        )
        return report

    async def _check_rule(self, domain: str, rule: IntegrityRule) -> Optional[IntegrityViolation]:
        if rule.kind is IntegrityRuleKind.ORPHAN_REFERENCE:
            count = await self.inspector.count_orphans(
                domain, rule.table, rule.column or "", rule.reference_table, rule.reference_column
            )
            if count:
                return IntegrityViolation(
                    kind=rule.kind,
                    table=rule.table,
                    count=count,
                    message=f"{count} orphaned {rule.table}.{rule.column} rows without {rule.references}",
                )
        elif rule.kind is IntegrityRuleKind.DUPLICATE:
            count = await self.inspector.count_duplicates(domain, rule.table, rule.columns)
            if count:
                return IntegrityViolation(
                    kind=rule.kind,
                    table=rule.table,
                    count=count,
                    message=f"{count} duplicate {rule.table}({', '.join(rule.columns)}) values",
                )
        elif rule.kind is IntegrityRuleKind.INDEX_PRESENCE:
            if not await self.inspector.index_exists(domain, rule.table, rule.name or ""):
                return IntegrityViolation(
                    kind=rule.kind, table=rule.table, message=f"Index {rule.name} is missing"
                )
        elif not await self.inspector.constraint_exists(domain, rule.table, rule.name or ""):
            return IntegrityViolation(
                kind=rule.kind, table=rule.table, message=f"Constraint {rule.name} is missing"
            )
        return None

    async def perform_integrity_check(self, domain: str) -> IntegrityReport:
        definition = self.registry.get(domain)
        issues: List[IntegrityViolation] = []
        for rule in definition.integrity_rules:
            violation = await self._check_rule(domain, rule)
            if violation is not None:
                issues.append(violation)

        kinds = {issue.kind for issue in issues}
        fixes: List[str] = []
        if IntegrityRuleKind.ORPHAN_REFERENCE in kinds:
            fixes.append("Clean up orphaned records with foreign key violations")
            fixes.append("Review data import processes to prevent future orphaned records")
        if IntegrityRuleKind.DUPLICATE in kinds:
            fixes.append("Implement unique constraints to prevent duplicates")
        if kinds & {IntegrityRuleKind.INDEX_PRESENCE, IntegrityRuleKind.CONSTRAINT_PRESENCE}:
            fixes.append("Re-apply the migrations that create the missing indexes and constraints")

        report = IntegrityReport(
            domain=domain,
            is_healthy=not issues,
            issues=tuple(issues),
            severity=integrity_severity(issues),
            recommended_fixes=tuple(fixes),
        )
        log.info(
            f"[INTEGRITY] {domain}",
            extra={"domain": domain, "issues": len(issues), "severity": report.severity.value},
        )
        return report

    async def get_performance_metrics(self, domain: str) -> PerformanceMetrics:
        """Metrics derived solely from the domain's audit history."""
        history: List[AuditEntry] = await self.audit_sink.history(domain)
        successes = [entry for entry in history if entry.success]
        if not successes:
            return PerformanceMetrics(domain=domain, total_executed=len(history))

        durations = [entry.duration for entry in successes]
        average = sum(durations, timedelta(0)) / len(durations)
        success_rate = len(successes) / len(history)

        throughput = 0.0
        if len(successes) >= 2:
            times = [entry.applied_at for entry in successes]
            span_hours = (max(times) - min(times)).total_seconds() / 3600
            throughput = len(successes) / span_hours if span_hours > 0 else float(len(successes))

        return PerformanceMetrics(
            domain=domain,
            total_executed=len(history),
            successful=len(successes),
            average_duration=average,
            fastest=min(durations),
            slowest=max(durations),
            success_rate=success_rate,
            throughput_per_hour=throughput,
            grade=performance_grade(success_rate, average.total_seconds()),
        )

    async def health_snapshot(self, domain: str) -> HealthSnapshot:
        self.registry.get(domain)
        drift, integrity, performance = await asyncio.gather(
            self.detect_schema_drift(domain),
            self.perform_integrity_check(domain),
            self.get_performance_metrics(domain),
        )
        return HealthSnapshot(drift=drift, integrity=integrity, performance=performance)


__all__ = [
    "HealthMonitor",
    "HealthSnapshot",
    "drift_severity",
    "integrity_severity",
    "performance_grade",
]
