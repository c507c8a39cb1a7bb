"""
Domain package for the migration orchestrator.

Exports the immutable records shared by the planner, executors and health
monitor. Keep this package focused on data definitions and validation.
"""

from schema_orchestrator.domain.models import (
    AuditEntry,
    Domain,
    DomainMigration,
    DriftSeverity,
    IntegrityReport,
    IntegrityRule,
    IntegrityRuleKind,
    IntegritySeverity,
    IntegrityViolation,
    MigrationPlan,
    PerformanceMetrics,
    RiskLevel,
    RollbackPlan,
    SchemaDriftReport,
)

__all__ = [
    "AuditEntry",
    "Domain",
    "DomainMigration",
    "DriftSeverity",
    "IntegrityReport",
    "IntegrityRule",
    "IntegrityRuleKind",
    "IntegritySeverity",
    "IntegrityViolation",
    "MigrationPlan",
    "PerformanceMetrics",
    "RiskLevel",
    "RollbackPlan",
    "SchemaDriftReport",
]
