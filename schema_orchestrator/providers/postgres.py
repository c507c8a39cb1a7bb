"""
PostgreSQL adapters: a file-based migration provider and a schema inspector.

Migrations live on disk, one directory per domain:

    migrations/
      Services/
        20250822025618_InitialCreate.up.sql
        20250822025618_InitialCreate.down.sql
        schema.baseline.json          # optional, used for drift detection

Migration ids are the file stems without `.up`/`.down`; lexical order is
definition order, so ids should start with a sortable timestamp. Applied
migrations are tracked in a history table keyed by (domain, migration_id).
"""

from __future__ import annotations

import contextlib
import json
from pathlib import Path
from typing import Any, AsyncIterator, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from psycopg import AsyncConnection, sql
from psycopg_pool import AsyncConnectionPool

from schema_orchestrator.config import Settings, get_settings
from schema_orchestrator.infrastructure.db_factory import build_dsn, get_async_pool
from schema_orchestrator.providers.abstract import (
    AbstractMigrationProvider,
    ApplyContext,
    ProviderCapability,
    fingerprint,
)
from schema_orchestrator.utils.logging import get_logger

log = get_logger(__name__)

UP_SUFFIX = ".up.sql"
DOWN_SUFFIX = ".down.sql"
BASELINE_FILE = "schema.baseline.json"


def discover_migrations(migrations_dir: Path, domain: str) -> List[str]:
    """Migration ids defined for a domain, in lexical (definition) order."""
    domain_dir = migrations_dir / domain
    if not domain_dir.is_dir():
        return []
    return sorted(p.name[: -len(UP_SUFFIX)] for p in domain_dir.glob(f"*{UP_SUFFIX}"))


class PostgresMigrationProvider(AbstractMigrationProvider):
    """
    Apply `*.up.sql` files and revert with `*.down.sql` files, tracking state
    in `settings.history_table`.
    """

    name: str = "postgres"
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
        settings: Optional[Settings] = None,
        domain_tables: Optional[Mapping[str, Sequence[str]]] = None,
        dsn_override: Optional[str] = None,
        schema: str = "public",
    ) -> None:
        self.settings = settings or get_settings()
        self.migrations_dir = Path(self.settings.migrations_dir)
        self.domain_tables: Dict[str, Tuple[str, ...]] = {
            d: tuple(t) for d, t in (domain_tables or {}).items()
        }
        self.schema = schema
        self._dsn = dsn_override or build_dsn(self.settings)
        self._history = sql.Identifier(self.settings.history_table)
        self._history_ready = False

    async def _pool(self) -> AsyncConnectionPool:
        return await get_async_pool(dsn=self._dsn, max_size=self.settings.db_pool_max_size)

    async def _ensure_history(self, conn: AsyncConnection) -> None:
        if self._history_ready:
            return
        await conn.execute(
            sql.SQL(
                """
                CREATE TABLE IF NOT EXISTS {} (
                    id BIGSERIAL PRIMARY KEY,
                    domain TEXT NOT NULL,
                    migration_id TEXT NOT NULL,
                    applied_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    applied_by TEXT NOT NULL,
                    UNIQUE (domain, migration_id)
                )
                """
            ).format(self._history)
        )
        self._history_ready = True

    def _read_script(self, domain: str, migration: str, suffix: str) -> str:
        path = self.migrations_dir / domain / f"{migration}{suffix}"
        if not path.exists():
            raise FileNotFoundError(f"Missing {suffix} script for {domain}/{migration}: {path}")
        return path.read_text(encoding="utf-8")

    async def list_all_migrations(self, domain: str) -> List[str]:
        return discover_migrations(self.migrations_dir, domain)

    async def list_applied_migrations(self, domain: str) -> List[str]:
        pool = await self._pool()
        async with pool.connection() as conn:
            await self._ensure_history(conn)
            cur = await conn.execute(
                sql.SQL("SELECT migration_id FROM {} WHERE domain = %s ORDER BY id").format(
                    self._history
                ),
                (domain,),
            )
            return [row[0] for row in await cur.fetchall()]

    async def apply_pending(self, domain: str, ctx: ApplyContext) -> None:
        known = discover_migrations(self.migrations_dir, domain)
        pool = await self._pool()
        async with pool.connection() as conn:
            await self._ensure_history(conn)
            async with conn.transaction():
                cur = await conn.execute(
                    sql.SQL("SELECT migration_id FROM {} WHERE domain = %s").format(self._history),
                    (domain,),
                )
                applied = {row[0] for row in await cur.fetchall()}
                for migration in known:
                    if migration in applied:
                        continue
                    log.info(
                        f"Applying {domain}/{migration}",
                        extra={"domain": domain, "migration": migration, "plan_id": ctx.plan_id},
                    )
                    await conn.execute(self._read_script(domain, migration, UP_SUFFIX))
                    await conn.execute(
                        sql.SQL(
                            "INSERT INTO {} (domain, migration_id, applied_by) VALUES (%s, %s, %s)"
                        ).format(self._history),
                        (domain, migration, ctx.applied_by),
                    )

    async def generate_reversal_script(
        self, domain: str, from_migration: str, to_migration: Optional[str]
    ) -> str:
        applied = await self.list_applied_migrations(domain)
        start = applied.index(to_migration) + 1 if to_migration else 0
        end = applied.index(from_migration) + 1
        parts = [
            f"-- Reversal script for domain {domain}",
            f"-- From {from_migration} back to {to_migration or '<empty schema>'}",
            "BEGIN;",
        ]
        for migration in reversed(applied[start:end]):
            parts.append(f"\n-- Revert {migration}")
            parts.append(self._read_script(domain, migration, DOWN_SUFFIX).rstrip())
            parts.append(self._forget_statement(domain, migration))
        parts.append("COMMIT;")
        return "\n".join(parts) + "\n"

    def _forget_statement(self, domain: str, migration: str) -> str:
        """History cleanup for a reversal script, with values rendered as SQL literals."""
        return (
            sql.SQL("DELETE FROM {} WHERE domain = {} AND migration_id = {};")
            .format(self._history, sql.Literal(domain), sql.Literal(migration))
            .as_string(None)
        )

    async def can_connect(self) -> bool:
        try:
            pool = await self._pool()
            async with pool.connection() as conn:
                await conn.execute("SELECT 1")
            return True
        except Exception as exc:  # noqa: BLE001 - connectivity check reports, never raises
            log.warning("Database connectivity check failed", extra={"error": str(exc)})
            return False

    async def schema_checksum(self, domain: str) -> str:
        tables = list(self.domain_tables.get(domain, ()))
        if not tables:
            return fingerprint(domain, await self.list_applied_migrations(domain))
        pool = await self._pool()
        async with pool.connection() as conn:
            cur = await conn.execute(
                """
                SELECT md5(coalesce(string_agg(
                    table_name || '.' || column_name || ':' || data_type || ':' || is_nullable,
                    ',' ORDER BY table_name, ordinal_position), ''))
                FROM information_schema.columns
                WHERE table_schema = %s AND table_name = ANY(%s)
                """,
                (self.schema, tables),
            )
            row = await cur.fetchone()
        return str(row[0])[:16] if row else fingerprint(domain, [])

    @contextlib.asynccontextmanager
    async def _transaction(self, domain: str) -> AsyncIterator[AsyncConnection]:
        pool = await self._pool()
        async with pool.connection() as conn:
            await self._ensure_history(conn)
            async with conn.transaction():
                yield conn

    def transaction(self, domain: str) -> contextlib.AbstractAsyncContextManager[Any]:
        return self._transaction(domain)

    async def revert_migration(self, domain: str, migration: str, tx: Any) -> None:
        conn: AsyncConnection = tx
        log.info(f"Reverting {domain}/{migration}", extra={"domain": domain, "migration": migration})
        await conn.execute(self._read_script(domain, migration, DOWN_SUFFIX))
        await conn.execute(
            sql.SQL("DELETE FROM {} WHERE domain = %s AND migration_id = %s").format(self._history),
            (domain, migration),
        )


class PostgresSchemaInspector:
    """
    Live-schema checks against information_schema / pg_catalog.

    Drift compares each table's `(column, data_type, is_nullable)` rows with the
    domain's `schema.baseline.json`; tables without a baseline never drift.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        dsn_override: Optional[str] = None,
        schema: str = "public",
    ) -> None:
        self.settings = settings or get_settings()
        self.schema = schema
        self._dsn = dsn_override or build_dsn(self.settings)

    async def _fetch(self, query: Any, params: Sequence[Any] = ()) -> List[Tuple[Any, ...]]:
        pool = await get_async_pool(dsn=self._dsn, max_size=self.settings.db_pool_max_size)
        async with pool.connection() as conn:
            cur = await conn.execute(query, params)
            return list(await cur.fetchall())

    def _baseline(self, domain: str) -> Dict[str, List[List[str]]]:
        path = Path(self.settings.migrations_dir) / domain / BASELINE_FILE
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)

    async def table_exists(self, domain: str, table: str) -> bool:
        rows = await self._fetch(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = %s AND table_name = %s",
            (self.schema, table),
        )
        return bool(rows)

    async def table_drifted(self, domain: str, table: str) -> bool:
        expected = self._baseline(domain).get(table)
        if expected is None:
            log.debug("No baseline for table", extra={"domain": domain, "table": table})
            return False
        rows = await self._fetch(
            """
            SELECT column_name, data_type, is_nullable
            FROM information_schema.columns
            WHERE table_schema = %s AND table_name = %s
            ORDER BY ordinal_position
            """,
            (self.schema, table),
        )
        return [list(row) for row in rows] != [list(col) for col in expected]

    async def index_exists(self, domain: str, table: str, index: str) -> bool:
        rows = await self._fetch(
            "SELECT 1 FROM pg_indexes WHERE schemaname = %s AND tablename = %s AND indexname = %s",
            (self.schema, table, index),
        )
        return bool(rows)

    async def constraint_exists(self, domain: str, table: str, constraint: str) -> bool:
        rows = await self._fetch(
            """
            SELECT 1 FROM information_schema.table_constraints
            WHERE table_schema = %s AND table_name = %s AND constraint_name = %s
            """,
            (self.schema, table, constraint),
        )
        return bool(rows)

    async def count_orphans(
        self, domain: str, table: str, column: str, ref_table: str, ref_column: str
    ) -> int:
        query = sql.SQL(
            """
            SELECT count(*) FROM {schema}.{table} AS c
            LEFT JOIN {schema}.{ref_table} AS p ON c.{column} = p.{ref_column}
            WHERE c.{column} IS NOT NULL AND p.{ref_column} IS NULL
            """
        ).format(
            schema=sql.Identifier(self.schema),
            table=sql.Identifier(table),
            ref_table=sql.Identifier(ref_table),
            column=sql.Identifier(column),
            ref_column=sql.Identifier(ref_column),
        )
        rows = await self._fetch(query)
        return int(rows[0][0]) if rows else 0

    async def count_duplicates(self, domain: str, table: str, columns: Sequence[str]) -> int:
        cols = sql.SQL(", ").join(sql.Identifier(c) for c in columns)
        query = sql.SQL(
            "SELECT count(*) FROM (SELECT {cols} FROM {schema}.{table} "
            "GROUP BY {cols} HAVING count(*) > 1) AS dup"
        ).format(cols=cols, schema=sql.Identifier(self.schema), table=sql.Identifier(table))
        rows = await self._fetch(query)
        return int(rows[0][0]) if rows else 0


__all__ = ["PostgresMigrationProvider", "PostgresSchemaInspector", "discover_migrations"]
