"""
Migration planning: pending work per domain, dependency ordering, and
parallel execution groups.

Planning is pure apart from the provider fan-out that collects pending
migrations. A cyclic dependency graph fails the whole plan; nothing partial
is ever returned.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from enum import IntEnum
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from schema_orchestrator.config import Settings, get_settings
from schema_orchestrator.domain.models import Domain, DomainMigration, MigrationPlan
from schema_orchestrator.errors import ConfigurationError, CycleDetectedError
from schema_orchestrator.providers.abstract import MigrationProvider, pending_migrations
from schema_orchestrator.registry import DomainRegistry
from schema_orchestrator.utils.logging import get_logger

log = get_logger(__name__)


class _Mark(IntEnum):
    WHITE = 0
    GREY = 1
    BLACK = 2


def _sort_key(dm: DomainMigration) -> Tuple[int, str]:
    return (dm.priority, dm.domain)


def topological_order(items: Sequence[DomainMigration]) -> List[DomainMigration]:
    """
    Dependencies-first ordering by depth-first search with three-colour marking.

    Roots and edges are visited in (priority, name) order, so the result is
    deterministic and priority only breaks ties. Dependencies naming domains
    outside `items` are ignored.

    Raises
    ------
    CycleDetectedError
        When a GREY node is reached again; carries the cycle path.
    """
    nodes = sorted(items, key=_sort_key)
    index: Dict[str, int] = {dm.domain: i for i, dm in enumerate(nodes)}
    # Nodes are already sorted, so ascending indices follow (priority, name).
    edges: List[List[int]] = [
        sorted(index[dep] for dep in dm.dependencies if dep in index) for dm in nodes
    ]
    marks = [_Mark.WHITE] * len(nodes)
    path: List[int] = []
    order: List[DomainMigration] = []

    def visit(i: int) -> None:
        if marks[i] is _Mark.BLACK:
            return
        if marks[i] is _Mark.GREY:
            start = path.index(i)
            cycle = [nodes[j].domain for j in path[start:]] + [nodes[i].domain]
            raise CycleDetectedError(cycle)
        marks[i] = _Mark.GREY
        path.append(i)
        for j in edges[i]:
            visit(j)
        path.pop()
        marks[i] = _Mark.BLACK
        order.append(nodes[i])

    for i in range(len(nodes)):
        visit(i)
    return order


def execution_groups(
    ordered: Sequence[DomainMigration], max_parallel: int
) -> List[List[DomainMigration]]:
    """
    Greedy layering of a topologically sorted list.

    Each pass scans unprocessed domains in sorted order and admits those whose
    dependencies all sit in already sealed groups, up to `max_parallel`.
    """
    if max_parallel < 1:
        raise ValueError("max_parallel must be at least 1")
    present = {dm.domain for dm in ordered}
    sealed: Set[str] = set()
    remaining = list(ordered)
    groups: List[List[DomainMigration]] = []
    while remaining:
        group: List[DomainMigration] = []
        for dm in remaining:
            if len(group) >= max_parallel:
                break
            if all(dep in sealed or dep not in present for dep in dm.dependencies):
                group.append(dm)
        if not group:
            raise CycleDetectedError(
                [dm.domain for dm in remaining],
                "No domain could be scheduled; unresolved dependencies among: "
                + ", ".join(dm.domain for dm in remaining),
            )
        admitted = {dm.domain for dm in group}
        remaining = [dm for dm in remaining if dm.domain not in admitted]
        sealed |= admitted
        groups.append(group)
    return groups


class MigrationPlanner:
    """Build a MigrationPlan from the registry and the provider's migration state."""

    def __init__(
        self,
        registry: DomainRegistry,
        provider: MigrationProvider,
        settings: Optional[Settings] = None,
    ) -> None:
        self.registry = registry
        self.provider = provider
        self.settings = settings or get_settings()

    def estimate_duration(self, pending_count: int) -> timedelta:
        if pending_count <= 0:
            return timedelta(0)
        per_migration = self.settings.base_migration_minutes + self.settings.migration_complexity_minutes
        return timedelta(minutes=per_migration * pending_count)

    def participating_domains(self, domains: Optional[Iterable[str]] = None) -> Tuple[Domain, ...]:
        """Enabled domains, narrowed by `EnabledDomains` and by the caller's subset."""
        allowed = self.settings.enabled_domain_names
        selected = self.registry.enabled(only=allowed or None)
        if domains is not None:
            wanted = list(domains)
            for name in wanted:
                domain = self.registry.get(name)
                if not domain.enabled:
                    raise ConfigurationError(f"Domain {name} is disabled")
                if allowed and name not in allowed:
                    raise ConfigurationError(
                        f"Domain {name} is excluded by MIGRATION_ENABLED_DOMAINS ({', '.join(allowed)})"
                    )
            selected = tuple(d for d in selected if d.name in set(wanted))
        return selected

    def _resolve_dependencies(self, domain: Domain, participants: Set[str]) -> frozenset:
        kept = set()
        for dep in domain.dependencies:
            if dep not in self.registry:
                raise ConfigurationError(f"Domain {domain.name} depends on unknown domain {dep!r}")
            if dep in participants:
                kept.add(dep)
            else:
                log.warning(
                    f"Dependency {dep} of {domain.name} is not part of this plan; treating it as satisfied",
                    extra={"domain": domain.name, "dependency": dep},
                )
        return frozenset(kept)

    async def _domain_migration(self, domain: Domain, participants: Set[str]) -> DomainMigration:
        pending = await pending_migrations(self.provider, domain.name)
        return DomainMigration(
            domain=domain.name,
            dependencies=self._resolve_dependencies(domain, participants),
            pending_migrations=tuple(pending),
            estimated_duration=self.estimate_duration(len(pending)),
            priority=domain.priority,
        )

    async def create_plan(self, domains: Optional[Iterable[str]] = None) -> MigrationPlan:
        """
        Plan every participating domain.

        Parameters
        ----------
        domains : iterable[str] | None
            Restrict the plan to these domain names. Dependencies outside the
            subset are treated as already satisfied.

        Raises
        ------
        ConfigurationError
            Unknown or disabled domain names, or unknown dependencies.
        CycleDetectedError
            The dependency graph among participating domains is cyclic.
        """
        selected = self.participating_domains(domains)
        participants = {d.name for d in selected}
        migrations = await asyncio.gather(
            *(self._domain_migration(domain, participants) for domain in selected)
        )

        ordered = topological_order(migrations)
        groups = execution_groups(ordered, self.settings.max_parallel_domains)
        total = sum((dm.estimated_duration for dm in ordered), timedelta(0))

        plan = MigrationPlan(
            domain_migrations=tuple(ordered),
            execution_groups=tuple(tuple(group) for group in groups),
            environment=self.settings.app_env,
            max_parallelism=self.settings.max_parallel_domains,
            estimated_total_duration=total,
        )
        log.info(
            "[PLAN CREATED]",
            extra={
                "plan_id": str(plan.plan_id),
                "domains": len(ordered),
                "groups": len(groups),
                "pending": plan.pending_count,
                "estimated_minutes": round(total.total_seconds() / 60, 1),
            },
        )
        for position, group in enumerate(groups, start=1):
            log.info(
                f"[PLAN GROUP {position}/{len(groups)}] {', '.join(dm.domain for dm in group)}",
                extra={"plan_id": str(plan.plan_id), "group": position},
            )
        return plan


__all__ = ["MigrationPlanner", "execution_groups", "topological_order"]
