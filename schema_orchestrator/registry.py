"""
Domain registry: the set of schema domains the orchestrator knows about.

Domains come from a JSON file (`MIGRATION_DOMAINS_FILE`, a list of Domain
objects) or from the built-in platform catalogue. The registry is read-only
after construction and validates the dependency graph's references; cycle
detection is left to the planner.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from schema_orchestrator.config import Settings, get_settings
from schema_orchestrator.domain.models import Domain, IntegrityRule, IntegrityRuleKind
from schema_orchestrator.errors import ConfigurationError
from schema_orchestrator.utils.logging import get_logger

log = get_logger(__name__)


def builtin_domains() -> List[Domain]:
    """The platform's default domain catalogue."""
    return [
        Domain(
            name="Services",
            priority=1,
            is_core_domain=True,
            tables=("Services", "ServiceCategories"),
            expected_indexes=(
                "IX_Services_Status_Available_Featured",
                "IX_Services_Category",
                "IX_Services_SortOrder_Title",
                "IX_ServiceCategories_Active_DisplayOrder",
            ),
            integrity_rules=(
                IntegrityRule(
                    kind=IntegrityRuleKind.ORPHAN_REFERENCE,
                    table="Services",
                    column="CategoryId",
                    references="ServiceCategories.Id",
                ),
                IntegrityRule(kind=IntegrityRuleKind.DUPLICATE, table="Services", columns=("Slug",)),
            ),
        ),
        Domain(
            name="News",
            priority=2,
            tables=("NewsArticles", "NewsCategories"),
            expected_indexes=(
                "IX_NewsArticles_Published_PublishDate",
                "IX_NewsArticles_CategoryId",
                "IX_NewsArticles_Featured_PublishDate",
                "IX_NewsCategories_Active_SortOrder",
            ),
            integrity_rules=(
                IntegrityRule(
                    kind=IntegrityRuleKind.ORPHAN_REFERENCE,
                    table="NewsArticles",
                    column="CategoryId",
                    references="NewsCategories.Id",
                ),
            ),
        ),
        Domain(name="Contacts", priority=3, tables=("Contacts",)),
        Domain(name="Research", priority=4, tables=("ResearchArticles",)),
        Domain(
            name="Events",
            priority=5,
            dependencies=frozenset({"Services"}),
            tables=("Events", "EventRegistrations"),
            integrity_rules=(
                IntegrityRule(
                    kind=IntegrityRuleKind.ORPHAN_REFERENCE,
                    table="EventRegistrations",
                    column="EventId",
                    references="Events.Id",
                ),
            ),
        ),
        Domain(
            name="Search",
            priority=8,
            dependencies=frozenset({"Services"}),
            tables=("UnifiedSearchIndex",),
        ),
        Domain(
            name="Newsletter",
            priority=9,
            dependencies=frozenset({"News"}),
            tables=("NewsletterSubscriptions",),
            integrity_rules=(
                IntegrityRule(
                    kind=IntegrityRuleKind.DUPLICATE,
                    table="NewsletterSubscriptions",
                    columns=("Email",),
                ),
            ),
        ),
    ]


def registry_issues(domains: Iterable[Domain]) -> List[str]:
    """Duplicate (case-insensitive) names and dependencies on unknown domains."""
    issues: List[str] = []
    seen: Dict[str, str] = {}
    names = set()
    domains = list(domains)
    for domain in domains:
        key = domain.name.lower()
        if key in seen:
            issues.append(f"Duplicate domain name {domain.name!r} (conflicts with {seen[key]!r})")
        else:
            seen[key] = domain.name
        names.add(domain.name)
    for domain in domains:
        for dep in sorted(domain.dependencies):
            if dep not in names:
                issues.append(f"Domain {domain.name} depends on unknown domain {dep!r}")
    return issues


class DomainRegistry:
    """Read-only lookup over registered domains."""

    def __init__(self, domains: Iterable[Domain]) -> None:
        domains = list(domains)
        issues = registry_issues(domains)
        if issues:
            raise ConfigurationError("; ".join(issues))
        self._domains: Dict[str, Domain] = {d.name: d for d in domains}

    @classmethod
    def from_file(cls, path: Path | str) -> "DomainRegistry":
        path = Path(path)
        try:
            with path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Cannot read domains file {path}: {exc}") from exc
        if not isinstance(raw, list):
            raise ConfigurationError(f"Domains file {path} must contain a JSON list")
        try:
            domains = [Domain.model_validate(item) for item in raw]
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid domain definition in {path}: {exc}") from exc
        log.info("Loaded domains", extra={"path": str(path), "count": len(domains)})
        return cls(domains)

    def __contains__(self, name: object) -> bool:
        return name in self._domains

    def __len__(self) -> int:
        return len(self._domains)

    def get(self, name: str) -> Domain:
        try:
            return self._domains[name]
        except KeyError:
            raise ConfigurationError(f"Unknown domain {name!r}") from None

    def all(self) -> Tuple[Domain, ...]:
        return tuple(sorted(self._domains.values(), key=lambda d: (d.priority, d.name)))

    def enabled(self, only: Optional[Iterable[str]] = None) -> Tuple[Domain, ...]:
        """
        Enabled domains sorted by (priority, name), optionally restricted to
        `only`. Unknown names in `only` raise ConfigurationError.
        """
        domains = [d for d in self.all() if d.enabled]
        if only is None:
            return tuple(domains)
        wanted = list(only)
        for name in wanted:
            self.get(name)
        return tuple(d for d in domains if d.name in set(wanted))

    def dependents_of(self, name: str) -> Tuple[str, ...]:
        """Registered domains that declare `name` as a dependency."""
        return tuple(d.name for d in self.all() if name in d.dependencies)


def load_registry(settings: Optional[Settings] = None) -> DomainRegistry:
    """Registry from `settings.domains_file`, or the built-in catalogue."""
    settings = settings or get_settings()
    if settings.domains_file:
        return DomainRegistry.from_file(settings.domains_file)
    return DomainRegistry(builtin_domains())


__all__ = ["DomainRegistry", "builtin_domains", "load_registry", "registry_issues"]
