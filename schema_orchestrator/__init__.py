"""
Schema Orchestrator - dependency-aware migrations for multi-domain databases.

Each business domain owns its own migration history against a shared
database. This package decides in what order and how in parallel pending
migrations are applied, and provides:

- Dependency-ordered planning with cycle detection and execution groups
- Retrying, audited plan execution with per-domain leases
- Risk-scored rollback planning and transactional rollback
- Schema drift, integrity and performance monitoring
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from schema_orchestrator.config import Settings, get_settings
from schema_orchestrator.errors import (
    ConfigurationError,
    CycleDetectedError,
    DependencyNotSatisfiedError,
    ExecutionError,
    LeaseUnavailableError,
    OrchestrationError,
    RollbackError,
    RollbackPreconditionError,
)
from schema_orchestrator.executor import DomainExecutionResult, ExecutionResult, PlanExecutor
from schema_orchestrator.health import HealthMonitor
from schema_orchestrator.planner import MigrationPlanner
from schema_orchestrator.providers.abstract import (
    AbstractMigrationProvider,
    ApplyContext,
    AuditSink,
    MigrationProvider,
    ProviderCapability,
    SchemaInspector,
)
from schema_orchestrator.registry import DomainRegistry, load_registry
from schema_orchestrator.rollback import RollbackExecutor, RollbackPlanner
from schema_orchestrator.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "get_settings",
    # Core components
    "DomainRegistry",
    "load_registry",
    "MigrationPlanner",
    "PlanExecutor",
    "ExecutionResult",
    "DomainExecutionResult",
    "RollbackPlanner",
    "RollbackExecutor",
    "HealthMonitor",
    # Provider abstractions
    "MigrationProvider",
    "AbstractMigrationProvider",
    "ApplyContext",
    "AuditSink",
    "ProviderCapability",
    "SchemaInspector",
    # Errors
    "OrchestrationError",
    "ConfigurationError",
    "CycleDetectedError",
    "DependencyNotSatisfiedError",
    "ExecutionError",
    "LeaseUnavailableError",
    "RollbackError",
    "RollbackPreconditionError",
    # Logging
    "configure_logging",
    "get_logger",
]
