"""
In-memory provider, audit sink and schema inspector.

Backs the `memory` provider of the CLI (planning and dry runs without a
database) and the unit tests. State lives in plain dicts; the reversal
transaction works on a copy of the applied list and only commits it when the
block exits cleanly.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from schema_orchestrator.domain.models import AuditEntry
from schema_orchestrator.providers.abstract import (
    AbstractMigrationProvider,
    ApplyContext,
    ProviderCapability,
)
from schema_orchestrator.utils.logging import get_logger

log = get_logger(__name__)


@dataclass
class _MemoryTransaction:
    domain: str
    applied: List[str]
    reverted: List[str] = field(default_factory=list)


class InMemoryMigrationProvider(AbstractMigrationProvider):
    """
    Keep known and applied migrations per domain in memory.

    Failure injection for tests: `failures[domain]` is the number of
    `apply_pending` calls that raise before one succeeds; `apply_delay`
    stretches every apply; `failing_reversals` lists migrations whose
    reversal raises.
    """

    name: str = "memory"
    capabilities: FrozenSet[ProviderCapability] = frozenset(
        {
            ProviderCapability.APPLY,
            ProviderCapability.SCRIPT,
            ProviderCapability.REVERT,
            ProviderCapability.CHECKSUM,
        }
    )

    def __init__(
        self,
        migrations: Mapping[str, Sequence[str]],
        applied: Optional[Mapping[str, Sequence[str]]] = None,
        failures: Optional[Mapping[str, int]] = None,
        apply_delay: float = 0.0,
        failing_reversals: Iterable[str] = (),
        reachable: bool = True,
    ) -> None:
        self._known: Dict[str, List[str]] = {d: list(m) for d, m in migrations.items()}
        self._applied: Dict[str, List[str]] = {d: list(m) for d, m in (applied or {}).items()}
        self._failures: Dict[str, int] = dict(failures or {})
        self.apply_delay = apply_delay
        self.failing_reversals: Set[str] = set(failing_reversals)
        self.reachable = reachable
        self.apply_calls: List[str] = []
        self.reverted: List[Tuple[str, str]] = []
        self._in_flight = 0
        self.max_in_flight = 0

    async def list_all_migrations(self, domain: str) -> List[str]:
        return list(self._known.get(domain, []))

    async def list_applied_migrations(self, domain: str) -> List[str]:
        return list(self._applied.get(domain, []))

    async def apply_pending(self, domain: str, ctx: ApplyContext) -> None:
        self.apply_calls.append(domain)
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self.apply_delay:
                await asyncio.sleep(self.apply_delay)
            if self._failures.get(domain, 0) > 0:
                self._failures[domain] -= 1
                raise ConnectionError(f"simulated apply failure for {domain}")
            applied = self._applied.setdefault(domain, [])
            for migration in self._known.get(domain, []):
                if migration not in applied:
                    applied.append(migration)
                    log.debug("Applied %s/%s", domain, migration, extra={"plan_id": ctx.plan_id})
        finally:
            self._in_flight -= 1

    async def generate_reversal_script(
        self, domain: str, from_migration: str, to_migration: Optional[str]
    ) -> str:
        applied = self._applied.get(domain, [])
        start = applied.index(to_migration) + 1 if to_migration else 0
        end = applied.index(from_migration) + 1
        lines = [f"-- Reversal script for {domain}: {from_migration} -> {to_migration or '<empty>'}"]
        for migration in reversed(applied[start:end]):
            lines.append(f"-- revert {migration}")
        return "\n".join(lines) + "\n"

    async def can_connect(self) -> bool:
        return self.reachable

    @contextlib.asynccontextmanager
    async def _transaction(self, domain: str) -> AsyncIterator[_MemoryTransaction]:
        tx = _MemoryTransaction(domain=domain, applied=list(self._applied.get(domain, [])))
        yield tx
        # Reached only when the block raised nothing.
        self._applied[domain] = tx.applied
        self.reverted.extend((domain, migration) for migration in tx.reverted)

    def transaction(self, domain: str) -> contextlib.AbstractAsyncContextManager[Any]:
        return self._transaction(domain)

    async def revert_migration(self, domain: str, migration: str, tx: Any) -> None:
        if migration in self.failing_reversals:
            raise RuntimeError(f"simulated reversal failure for {domain}/{migration}")
        if not tx.applied or tx.applied[-1] != migration:
            raise RuntimeError(f"{migration} is not the most recent migration of {domain}")
        tx.applied.pop()
        tx.reverted.append(migration)


class InMemoryAuditSink:
    """List-backed append-only audit sink."""

    def __init__(self, entries: Iterable[AuditEntry] = (), fail_writes: bool = False) -> None:
        self._entries: List[AuditEntry] = list(entries)
        self.fail_writes = fail_writes

    @property
    def entries(self) -> Tuple[AuditEntry, ...]:
        return tuple(self._entries)

    async def record(self, entry: AuditEntry) -> None:
        if self.fail_writes:
            raise OSError("audit sink unavailable")
        self._entries.append(entry)

    async def history(self, domain: str) -> List[AuditEntry]:
        return [entry for entry in self._entries if entry.domain == domain]


class StaticSchemaInspector:
    """
    Inspector answering from fixed sets; every table exists and nothing is
    drifted unless configured otherwise.
    """

    def __init__(
        self,
        missing_tables: Iterable[str] = (),
        drifted_tables: Iterable[str] = (),
        missing_indexes: Iterable[str] = (),
        missing_constraints: Iterable[str] = (),
        orphans: Optional[Mapping[Tuple[str, str], int]] = None,
        duplicates: Optional[Mapping[Tuple[str, Tuple[str, ...]], int]] = None,
    ) -> None:
        self.missing_tables = set(missing_tables)
        self.drifted_tables = set(drifted_tables)
        self.missing_indexes = set(missing_indexes)
        self.missing_constraints = set(missing_constraints)
        self.orphans = dict(orphans or {})
        self.duplicates = dict(duplicates or {})

    async def table_exists(self, domain: str, table: str) -> bool:
        return table not in self.missing_tables

    async def table_drifted(self, domain: str, table: str) -> bool:
        return table in self.drifted_tables

    async def index_exists(self, domain: str, table: str, index: str) -> bool:
        return index not in self.missing_indexes

    async def constraint_exists(self, domain: str, table: str, constraint: str) -> bool:
        return constraint not in self.missing_constraints

    async def count_orphans(
        self, domain: str, table: str, column: str, ref_table: str, ref_column: str
    ) -> int:
        return self.orphans.get((table, column), 0)

    async def count_duplicates(self, domain: str, table: str, columns: Sequence[str]) -> int:
        return self.duplicates.get((table, tuple(columns)), 0)


__all__ = ["InMemoryAuditSink", "InMemoryMigrationProvider", "StaticSchemaInspector"]
