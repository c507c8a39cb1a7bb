"""
Capability interfaces consumed by the orchestrator.

The orchestrator never talks to a schema-migration technology directly. A
MigrationProvider lists and applies migrations for a domain and advertises
what else it can do (reversal, scripting, backups, checksums) through
`capabilities`. The AuditSink is an append-only log; the SchemaInspector is
the injectable comparison strategy behind drift, integrity and post-rollback
checks.
"""

from __future__ import annotations

import abc
import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    AsyncContextManager,
    FrozenSet,
    List,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

from schema_orchestrator.domain.models import AuditEntry


class ProviderCapability(str, Enum):
    APPLY = "apply"
    REVERT = "revert"
    SCRIPT = "script"
    BACKUP = "backup"
    CHECKSUM = "checksum"


@dataclass(frozen=True)
class ApplyContext:
    """Per-call context handed to `MigrationProvider.apply_pending`."""

    plan_id: str
    environment: str
    applied_by: str
    dry_run: bool = False
    migrations: Sequence[str] = field(default_factory=tuple)
    attempt: int = 1


@runtime_checkable
class MigrationProvider(Protocol):
    """
    Common interface every migration technology adapter must implement.

    Attributes
    ----------
    name : str
        A short machine-friendly identifier.
    capabilities : frozenset[ProviderCapability]
        What the adapter supports beyond listing migrations.
    """

    name: str
    capabilities: FrozenSet[ProviderCapability]

    async def list_all_migrations(self, domain: str) -> List[str]:
        """Every known migration for the domain, in definition order."""
        ...

    async def list_applied_migrations(self, domain: str) -> List[str]:
        """Applied migrations for the domain, in applied order."""
        ...

    async def apply_pending(self, domain: str, ctx: ApplyContext) -> None:
        """Apply pending migrations for the domain in order; raise on failure."""
        ...

    async def generate_reversal_script(
        self, domain: str, from_migration: str, to_migration: Optional[str]
    ) -> str:
        """
        Script that undoes everything after `to_migration` up to and including
        `from_migration`. `to_migration=None` reverses the whole history.
        """
        ...

    async def can_connect(self) -> bool:
        ...

    async def schema_checksum(self, domain: str) -> str:
        ...

    def transaction(self, domain: str) -> AsyncContextManager[Any]:
        ...

    async def revert_migration(self, domain: str, migration: str, tx: Any) -> None:
        ...

    async def create_backup(self, domain: str) -> str:
        ...


class AbstractMigrationProvider(abc.ABC):
    """
    Optional ABC helper for class-based providers.

    Subclasses implement the four listing/apply/script operations and opt
    into further capabilities by overriding the matching methods and adding
    the capability to `capabilities`.
    """

    name: str
    capabilities: FrozenSet[ProviderCapability] = frozenset(
        {ProviderCapability.APPLY, ProviderCapability.SCRIPT}
    )

    @abc.abstractmethod
    async def list_all_migrations(self, domain: str) -> List[str]:  # pragma: no cover
        raise NotImplementedError

    @abc.abstractmethod
    async def list_applied_migrations(self, domain: str) -> List[str]:  # pragma: no cover
        raise NotImplementedError

    @abc.abstractmethod
    async def apply_pending(self, domain: str, ctx: ApplyContext) -> None:  # pragma: no cover
        raise NotImplementedError

    @abc.abstractmethod
    async def generate_reversal_script(
        self, domain: str, from_migration: str, to_migration: Optional[str]
    ) -> str:  # pragma: no cover
        raise NotImplementedError

    async def can_connect(self) -> bool:
        return True

    async def schema_checksum(self, domain: str) -> str:
        return fingerprint(domain, await self.list_applied_migrations(domain))

    def transaction(self, domain: str) -> AsyncContextManager[Any]:
        raise NotImplementedError(f"{self.name} cannot revert migrations")

    async def revert_migration(self, domain: str, migration: str, tx: Any) -> None:
        raise NotImplementedError(f"{self.name} cannot revert migrations")

    async def create_backup(self, domain: str) -> str:
        raise NotImplementedError(f"{self.name} cannot create backups")


@runtime_checkable
class AuditSink(Protocol):
    """Append-only audit log."""

    async def record(self, entry: AuditEntry) -> None:
        """Durably append an entry; raise on failure."""
        ...

    async def history(self, domain: str) -> List[AuditEntry]:
        """All entries for a domain, oldest first."""
        ...


@runtime_checkable
class SchemaInspector(Protocol):
    """Read-only view of the live schema, used for health and post-rollback checks."""

    async def table_exists(self, domain: str, table: str) -> bool:
        ...

    async def table_drifted(self, domain: str, table: str) -> bool:
        """True when the table's actual structure differs from its expected baseline."""
        ...

    async def index_exists(self, domain: str, table: str, index: str) -> bool:
        ...

    async def constraint_exists(self, domain: str, table: str, constraint: str) -> bool:
        ...

    async def count_orphans(
        self, domain: str, table: str, column: str, ref_table: str, ref_column: str
    ) -> int:
        ...

    async def count_duplicates(self, domain: str, table: str, columns: Sequence[str]) -> int:
        ...


def fingerprint(domain: str, applied: Sequence[str]) -> str:
    """Opaque SHA-256 fingerprint of a domain's applied-migration history."""
    digest = hashlib.sha256(domain.encode("utf-8"))
    for migration in applied:
        digest.update(b"\x00")
        digest.update(migration.encode("utf-8"))
    return digest.hexdigest()[:16]


async def checksum_for(provider: MigrationProvider, domain: str) -> str:
    """Schema checksum from the provider, or a history fingerprint when unsupported."""
    if ProviderCapability.CHECKSUM in provider.capabilities:
        return await provider.schema_checksum(domain)
    return fingerprint(domain, await provider.list_applied_migrations(domain))


async def pending_migrations(provider: MigrationProvider, domain: str) -> List[str]:
    """All known minus applied, preserving the provider's order."""
    known = await provider.list_all_migrations(domain)
    applied = set(await provider.list_applied_migrations(domain))
    return [migration for migration in known if migration not in applied]


__all__ = [
    "AbstractMigrationProvider",
    "ApplyContext",
    "AuditSink",
    "MigrationProvider",
    "ProviderCapability",
    "SchemaInspector",
    "checksum_for",
    "fingerprint",
    "pending_migrations",
]
