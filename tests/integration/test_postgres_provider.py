"""
Integration tests for the PostgreSQL migration provider.

These tests run against a real PostgreSQL instance and verify that:
1. Pending `.up.sql` files are applied and recorded in the history table
2. A rollback reverts with `.down.sql` files inside one transaction
3. Schema inspection sees the resulting tables, indexes and data problems

Run with: RUN_INTEGRATION_TESTS=1 pytest tests/integration/
"""

from __future__ import annotations

import os
import uuid

import psycopg
import pytest

from schema_orchestrator.domain.models import Domain
from schema_orchestrator.executor import PlanExecutor
from schema_orchestrator.infrastructure.db_factory import PoolManager
from schema_orchestrator.infrastructure.leases import PostgresAdvisoryLeaseManager
from schema_orchestrator.planner import MigrationPlanner
from schema_orchestrator.providers.memory import InMemoryAuditSink
from schema_orchestrator.providers.postgres import PostgresMigrationProvider, PostgresSchemaInspector
from schema_orchestrator.registry import DomainRegistry
from schema_orchestrator.rollback import RollbackExecutor, RollbackPlanner

pytestmark = pytest.mark.skipif(
    os.getenv("RUN_INTEGRATION_TESTS", "0") != "1",
    reason="Integration tests require RUN_INTEGRATION_TESTS=1 and reachable Postgres",
)

MIGRATIONS = {
    "001_create_items": (
        "CREATE TABLE it_items (id SERIAL PRIMARY KEY, sku TEXT NOT NULL);",
        "DROP TABLE it_items;",
    ),
    "002_index_sku": (
        "CREATE INDEX ix_it_items_sku ON it_items (sku);",
        "DROP INDEX ix_it_items_sku;",
    ),
    "003_add_price": (
        "ALTER TABLE it_items ADD COLUMN price NUMERIC;",
        "ALTER TABLE it_items DROP COLUMN price;",
    ),
}


@pytest.fixture
def pg_settings(test_settings, tmp_path):
    domain_dir = tmp_path / "migrations" / "Inventory"
    domain_dir.mkdir(parents=True)
    for name, (up, down) in MIGRATIONS.items():
        (domain_dir / f"{name}.up.sql").write_text(up, encoding="utf-8")
        (domain_dir / f"{name}.down.sql").write_text(down, encoding="utf-8")
    return test_settings.model_copy(
        update={
            "migrations_dir": tmp_path / "migrations",
            "backup_dir": tmp_path / "backups",
            "history_table": f"it_history_{uuid.uuid4().hex[:8]}",
            "retry_backoff_base_seconds": 0,
        }
    )


@pytest.fixture
def cleanup(test_dsn, pg_settings):
    yield
    with psycopg.connect(test_dsn, autocommit=True) as conn:
        conn.execute("DROP TABLE IF EXISTS it_items")
        conn.execute(f"DROP TABLE IF EXISTS {pg_settings.history_table}")


@pytest.fixture
def registry():
    return DomainRegistry([Domain(name="Inventory", tables=("it_items",))])


@pytest.mark.asyncio
async def test_apply_then_rollback(pg_settings, test_dsn, registry, cleanup):
    provider = PostgresMigrationProvider(
        settings=pg_settings, domain_tables={"Inventory": ("it_items",)}, dsn_override=test_dsn
    )
    inspector = PostgresSchemaInspector(settings=pg_settings, dsn_override=test_dsn)
    leases = PostgresAdvisoryLeaseManager(dsn=test_dsn)
    audit = InMemoryAuditSink()
    try:
        assert await provider.can_connect()

        plan = await MigrationPlanner(registry, provider, pg_settings).create_plan()
        result = await PlanExecutor(provider, audit, pg_settings, leases=leases).execute(plan)

        assert result.success
        assert await provider.list_applied_migrations("Inventory") == list(MIGRATIONS)
        assert await inspector.table_exists("Inventory", "it_items")
        assert await inspector.index_exists("Inventory", "it_items", "ix_it_items_sku")
        checksum_applied = await provider.schema_checksum("Inventory")

        rollback_plan = await RollbackPlanner(registry, provider).create_rollback_plan(
            "Inventory", "001_create_items"
        )
        await RollbackExecutor(
            provider, audit, inspector, pg_settings, leases=leases
        ).execute_rollback(rollback_plan)

        assert await provider.list_applied_migrations("Inventory") == ["001_create_items"]
        assert not await inspector.index_exists("Inventory", "it_items", "ix_it_items_sku")
        assert await provider.schema_checksum("Inventory") != checksum_applied
        assert audit.entries[-1].migration_name == "ROLLBACK_TO_001_create_items"
    finally:
        await PoolManager().close_all()


@pytest.mark.asyncio
async def test_integrity_queries(pg_settings, test_dsn, cleanup):
    provider = PostgresMigrationProvider(settings=pg_settings, dsn_override=test_dsn)
    inspector = PostgresSchemaInspector(settings=pg_settings, dsn_override=test_dsn)
    try:
        plan = await MigrationPlanner(
            DomainRegistry([Domain(name="Inventory")]), provider, pg_settings
        ).create_plan()
        await PlanExecutor(provider, InMemoryAuditSink(), pg_settings).execute(plan)
        with psycopg.connect(test_dsn, autocommit=True) as conn:
            conn.execute("INSERT INTO it_items (sku) VALUES ('a'), ('a'), ('b')")

        assert await inspector.count_duplicates("Inventory", "it_items", ["sku"]) == 1
        assert await inspector.constraint_exists("Inventory", "it_items", "it_items_pkey")
        assert not await inspector.table_drifted("Inventory", "it_items")
    finally:
        await PoolManager().close_all()
