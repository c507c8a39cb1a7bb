"""
Pytest configuration for the schema orchestrator.

Provides fixtures for:
- Settings with instant retries and temporary audit/backup locations
- Small domain registries and in-memory providers
- Database settings for integration tests
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional, Sequence

import pytest

from schema_orchestrator.config import Settings
from schema_orchestrator.domain.models import Domain
from schema_orchestrator.infrastructure.leases import InProcessLeaseManager
from schema_orchestrator.orchestrator import Runtime
from schema_orchestrator.providers.memory import (
    InMemoryAuditSink,
    InMemoryMigrationProvider,
    StaticSchemaInspector,
)
from schema_orchestrator.registry import DomainRegistry


def _domain(name: str, deps: Iterable[str] = (), priority: int = 100, **kwargs) -> Domain:
    return Domain(name=name, dependencies=frozenset(deps), priority=priority, **kwargs)


@pytest.fixture
def make_domain() -> Callable[..., Domain]:
    return _domain


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """
    Settings fixture with test-specific overrides.

    Backoff is zero so retried tests run instantly.
    """
    return Settings(
        max_retry_attempts=3,
        max_parallel_domains=4,
        retry_backoff_base_seconds=0,
        domain_timeout_minutes=1,
        applied_by="pytest",
        app_env="test",
        audit_log_path=tmp_path / "audit" / "migrations.jsonl",
        backup_dir=tmp_path / "backups",
        migrations_dir=tmp_path / "migrations",
        enabled_domains="",
    )


@pytest.fixture
def make_settings(settings: Settings) -> Callable[..., Settings]:
    def factory(**overrides) -> Settings:
        return settings.model_copy(update=overrides)

    return factory


@pytest.fixture
def abc_registry() -> DomainRegistry:
    """A, B -> A, C: the smallest graph with two execution groups."""
    return DomainRegistry([_domain("A"), _domain("B", ["A"]), _domain("C")])


@pytest.fixture
def platform_registry() -> DomainRegistry:
    """Core Services with two dependents, plus an independent News -> Newsletter chain."""
    return DomainRegistry(
        [
            _domain(
                "Services",
                priority=1,
                is_core_domain=True,
                tables=("Services", "ServiceCategories"),
            ),
            _domain("News", priority=2, tables=("NewsArticles",)),
            _domain("Events", ["Services"], priority=5, tables=("Events",)),
            _domain("Search", ["Services"], priority=8, tables=("UnifiedSearchIndex",)),
            _domain("Newsletter", ["News"], priority=9, tables=("NewsletterSubscriptions",)),
        ]
    )


@pytest.fixture
def memory_provider_factory() -> Callable[..., InMemoryMigrationProvider]:
    def factory(
        migrations: Mapping[str, Sequence[str]],
        applied: Optional[Mapping[str, Sequence[str]]] = None,
        **kwargs,
    ) -> InMemoryMigrationProvider:
        return InMemoryMigrationProvider(migrations, applied=applied, **kwargs)

    return factory


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def make_runtime(settings: Settings, audit_sink: InMemoryAuditSink) -> Callable[..., Runtime]:
    def factory(
        registry: DomainRegistry,
        provider: InMemoryMigrationProvider,
        inspector: Optional[StaticSchemaInspector] = None,
        runtime_settings: Optional[Settings] = None,
    ) -> Runtime:
        return Runtime(
            settings=runtime_settings or settings,
            registry=registry,
            provider=provider,
            audit_sink=audit_sink,
            inspector=inspector or StaticSchemaInspector(),
            leases=InProcessLeaseManager(),
        )

    return factory


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Database settings for integration tests.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "migrations"),
        log_level="DEBUG",
    )


@pytest.fixture(scope="session")
def test_dsn(test_settings: Settings) -> str:
    return (
        f"postgresql://{test_settings.db_user}:{test_settings.db_password}"
        f"@{test_settings.db_host}:{test_settings.db_port}/{test_settings.db_name}"
    )
