"""
Provider package: the interfaces the orchestrator consumes and the adapters
that implement them.

The PostgreSQL adapter is not imported here so that importing the package
never requires a database driver to be configured.
"""

from schema_orchestrator.providers.abstract import (
    AbstractMigrationProvider,
    ApplyContext,
    AuditSink,
    MigrationProvider,
    ProviderCapability,
    SchemaInspector,
    checksum_for,
    fingerprint,
    pending_migrations,
)
from schema_orchestrator.providers.audit_log import JsonlAuditSink
from schema_orchestrator.providers.memory import (
    InMemoryAuditSink,
    InMemoryMigrationProvider,
    StaticSchemaInspector,
)

__all__ = [
    "AbstractMigrationProvider",
    "ApplyContext",
    "AuditSink",
    "InMemoryAuditSink",
    "InMemoryMigrationProvider",
    "JsonlAuditSink",
    "MigrationProvider",
    "ProviderCapability",
    "SchemaInspector",
    "StaticSchemaInspector",
    "checksum_for",
    "fingerprint",
    "pending_migrations",
]
