"""
Domain models for the migration orchestrator.

Every record here is immutable once built. Plans are created once per
orchestration run and consumed exactly once; reports are read-only snapshots
that the caller may persist.
"""
from __future__ import annotations

import re
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

_DOMAIN_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")

_FROZEN = {
    "frozen": True,
    "populate_by_name": True,
    "arbitrary_types_allowed": False,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _RankedEnum(str, Enum):
    """String enum whose members compare by declaration order."""

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)


class RiskLevel(_RankedEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class DriftSeverity(_RankedEnum):
    NONE = "None"
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class IntegritySeverity(_RankedEnum):
    NONE = "None"
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class IntegrityRuleKind(str, Enum):
    ORPHAN_REFERENCE = "orphan_reference"
    DUPLICATE = "duplicate"
    INDEX_PRESENCE = "index_presence"
    CONSTRAINT_PRESENCE = "constraint_presence"


class IntegrityRule(BaseModel):
    """
    A domain-declared integrity check.

    - orphan_reference: `table.column` must resolve into `references` ("table.column").
    - duplicate: `columns` must be unique across `table`.
    - index_presence / constraint_presence: `name` must exist on `table`.
    """

    kind: IntegrityRuleKind
    table: str
    column: Optional[str] = None
    references: Optional[str] = None
    columns: Tuple[str, ...] = ()
    name: Optional[str] = None

    model_config = _FROZEN

    @model_validator(mode="after")
    def _check_shape(self) -> "IntegrityRule":
        if self.kind is IntegrityRuleKind.ORPHAN_REFERENCE:
            if not self.column or not self.references or "." not in self.references:
                raise ValueError("orphan_reference rules need column and references='table.column'")
        elif self.kind is IntegrityRuleKind.DUPLICATE:
            if not self.columns:
                raise ValueError("duplicate rules need at least one column")
        elif not self.name:
            raise ValueError(f"{self.kind.value} rules need a name")
        return self

    @property
    def reference_table(self) -> str:
        return (self.references or "").split(".", 1)[0]

    @property
    def reference_column(self) -> str:
        return (self.references or "").split(".", 1)[-1]


class Domain(BaseModel):
    """
    An independently versioned schema unit with its own migration history.
    """

    name: str = Field(..., description="Unique domain key.")
    dependencies: FrozenSet[str] = Field(default_factory=frozenset)
    priority: int = Field(100, ge=0, le=1000, description="Lower sorts earlier on ties.")
    enabled: bool = True
    is_core_domain: bool = Field(False, alias="isCoreDomain")
    tables: Tuple[str, ...] = ()
    expected_indexes: Tuple[str, ...] = ()
    integrity_rules: Tuple[IntegrityRule, ...] = ()
    timeout_minutes: Optional[int] = Field(None, gt=0, le=1440)

    model_config = _FROZEN

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        if not _DOMAIN_NAME.match(value):
            raise ValueError(
                f"Domain name {value!r} must start with a letter and contain only letters, digits or '_'"
            )
        return value

    @model_validator(mode="after")
    def _no_self_dependency(self) -> "Domain":
        if self.name in self.dependencies:
            raise ValueError(f"Domain {self.name} cannot depend on itself")
        return self


class DomainMigration(BaseModel):
    """Pending work for one domain, captured during a single planning run."""

    domain: str
    dependencies: FrozenSet[str] = Field(default_factory=frozenset)
    pending_migrations: Tuple[str, ...] = ()
    estimated_duration: timedelta = timedelta(0)
    priority: int = 100

    model_config = _FROZEN

    @property
    def has_pending(self) -> bool:
        return bool(self.pending_migrations)


class MigrationPlan(BaseModel):
    """
    Topologically sorted, group-annotated plan for one orchestration run.

    Construction enforces that execution groups partition the domain list and
    that every dependency sits in a strictly earlier group.
    """

    plan_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    domain_migrations: Tuple[DomainMigration, ...]
    execution_groups: Tuple[Tuple[DomainMigration, ...], ...]
    created_at: datetime = Field(default_factory=utcnow)
    environment: str = "development"
    max_parallelism: int = Field(4, ge=1)
    estimated_total_duration: timedelta = timedelta(0)

    model_config = _FROZEN

    @model_validator(mode="after")
    def _groups_partition_domains(self) -> "MigrationPlan":
        sorted_names = [dm.domain for dm in self.domain_migrations]
        grouped = [dm.domain for group in self.execution_groups for dm in group]
        if sorted(grouped) != sorted(sorted_names) or len(set(grouped)) != len(grouped):
            raise ValueError("execution groups must partition the planned domains exactly once")

        index: Dict[str, int] = {}
        for position, group in enumerate(self.execution_groups):
            if len(group) > self.max_parallelism:
                raise ValueError(f"group {position} exceeds max parallelism {self.max_parallelism}")
            for dm in group:
                index[dm.domain] = position
        for dm in self.domain_migrations:
            for dep in dm.dependencies:
                if dep in index and index[dep] >= index[dm.domain]:
                    raise ValueError(f"{dm.domain} is grouped no later than its dependency {dep}")
        return self

    @property
    def domain_names(self) -> Tuple[str, ...]:
        return tuple(dm.domain for dm in self.domain_migrations)

    @property
    def pending_count(self) -> int:
        return sum(len(dm.pending_migrations) for dm in self.domain_migrations)

    def group_index(self, domain: str) -> int:
        for position, group in enumerate(self.execution_groups):
            if any(dm.domain == domain for dm in group):
                return position
        raise KeyError(domain)

    def get(self, domain: str) -> DomainMigration:
        for dm in self.domain_migrations:
            if dm.domain == domain:
                return dm
        raise KeyError(domain)


class RollbackPlan(BaseModel):
    """Migrations to undo for one domain, with blast-radius assessment."""

    domain: str
    target_migration: str
    affected_tables: Tuple[str, ...] = ()
    migrations_to_rollback: Tuple[str, ...] = ()
    dependent_domains: Tuple[str, ...] = ()
    estimated_duration: timedelta = timedelta(0)
    risk_level: RiskLevel = RiskLevel.LOW
    created_at: datetime = Field(default_factory=utcnow)

    model_config = _FROZEN

    @property
    def reversal_order(self) -> Tuple[str, ...]:
        """Migrations in the order they must be undone (most recent first)."""
        return tuple(reversed(self.migrations_to_rollback))


class AuditEntry(BaseModel):
    """Immutable record of one migration or rollback attempt and its outcome."""

    domain: str
    migration_name: str
    applied_at: datetime
    applied_by: str
    environment: str
    checksum_before: str
    checksum_after: str
    duration: timedelta
    success: bool = True
    error: Optional[str] = None
    attempts: int = 1

    model_config = _FROZEN

    @field_validator("domain", "migration_name", "applied_by", "environment")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("audit fields cannot be empty")
        return value

    @field_validator("duration")
    @classmethod
    def _non_negative(cls, value: timedelta) -> timedelta:
        if value < timedelta(0):
            raise ValueError("duration cannot be negative")
        return value


class SchemaDriftReport(BaseModel):
    domain: str
    has_drift: bool
    drifted_tables: Tuple[str, ...] = ()
    severity: DriftSeverity = DriftSeverity.NONE
    recommended_actions: Tuple[str, ...] = ()
    detected_at: datetime = Field(default_factory=utcnow)

    model_config = _FROZEN


class IntegrityViolation(BaseModel):
    """A single integrity issue. Reported, never auto-repaired."""

    kind: IntegrityRuleKind
    table: str
    message: str
    count: int = 0

    model_config = _FROZEN


class IntegrityReport(BaseModel):
    domain: str
    is_healthy: bool
    issues: Tuple[IntegrityViolation, ...] = ()
    severity: IntegritySeverity = IntegritySeverity.NONE
    recommended_fixes: Tuple[str, ...] = ()
    checked_at: datetime = Field(default_factory=utcnow)

    model_config = _FROZEN


class PerformanceMetrics(BaseModel):
    domain: str
    total_executed: int = 0
    successful: int = 0
    average_duration: timedelta = timedelta(0)
    fastest: timedelta = timedelta(0)
    slowest: timedelta = timedelta(0)
    success_rate: float = 0.0
    throughput_per_hour: float = 0.0
    grade: str = "N/A"
    calculated_at: datetime = Field(default_factory=utcnow)

    model_config = _FROZEN


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
    "utcnow",
]
