"""
Migration scaffolding for the schema orchestrator.

Creates timestamped `<id>.up.sql` / `<id>.down.sql` pairs under the migrations
directory and can snapshot a domain's live table structure into
`schema.baseline.json`, which drift detection compares against.
"""

from __future__ import annotations

import json
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import psycopg
import typer

from schema_orchestrator.config import get_settings
from schema_orchestrator.infrastructure.db_factory import build_dsn
from schema_orchestrator.providers.postgres import BASELINE_FILE, DOWN_SUFFIX, UP_SUFFIX
from schema_orchestrator.registry import load_registry

app = typer.Typer(help="Scaffold migrations and schema baselines.")

_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def _migration_id(name: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d%H%M%S")
    return f"{stamp}_{name}"


def _write_pair(domain_dir: Path, migration_id: str) -> List[Path]:
    domain_dir.mkdir(parents=True, exist_ok=True)
    up = domain_dir / f"{migration_id}{UP_SUFFIX}"
    down = domain_dir / f"{migration_id}{DOWN_SUFFIX}"
    for path in (up, down):
        if path.exists():
            raise FileExistsError(path)
    up.write_text(f"-- {migration_id}: forward changes\n", encoding="utf-8")
    down.write_text(f"-- {migration_id}: undo the forward changes\n", encoding="utf-8")
    return [up, down]


def _snapshot_tables(dsn: str, tables: List[str], schema: str = "public") -> Dict[str, List[List[str]]]:
    baseline: Dict[str, List[List[str]]] = {}
    with psycopg.connect(dsn) as conn:
        with conn.cursor() as cur:
            for table in tables:
                cur.execute(
                    """
                    SELECT column_name, data_type, is_nullable
                    FROM information_schema.columns
                    WHERE table_schema = %s AND table_name = %s
                    ORDER BY ordinal_position
                    """,
                    (schema, table),
                )
                rows = cur.fetchall()
                if rows:
                    baseline[table] = [list(row) for row in rows]
    return baseline


@app.command()
def new(
    domain: str = typer.Argument(..., help="Domain the migration belongs to."),
    name: str = typer.Argument(..., help="Migration name, e.g. AddServiceSlug."),
    migrations_dir: Optional[Path] = typer.Option(
        None,
        "--migrations-dir",
        "-m",
        help="Override MIGRATIONS_DIR.",
    ),
) -> None:
    """
    Create an empty up/down migration pair for a registered domain.
    """
    if not _NAME.match(name):
        typer.echo(f"Invalid migration name {name!r}.", err=True)
        raise typer.Exit(code=1)
    settings = get_settings()
    registry = load_registry(settings)
    if domain not in registry:
        typer.echo(f"Unknown domain {domain!r}.", err=True)
        raise typer.Exit(code=1)
    root = migrations_dir or Path(settings.migrations_dir)
    for path in _write_pair(root / domain, _migration_id(name)):
        typer.echo(f"Created {path}")


@app.command()
def baseline(
    domain: str = typer.Argument(..., help="Domain whose tables to snapshot."),
    dsn: Optional[str] = typer.Option(
        None,
        "--dsn",
        help="Optional DSN override for Postgres.",
    ),
) -> None:
    """
    Record the live structure of a domain's tables as its drift baseline.
    """
    settings = get_settings()
    registry = load_registry(settings)
    definition = registry.get(domain)
    snapshot = _snapshot_tables(dsn or build_dsn(settings), list(definition.tables))
    path = Path(settings.migrations_dir) / domain / BASELINE_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(snapshot, f, indent=2, sort_keys=True)
    missing = sorted(set(definition.tables) - set(snapshot))
    typer.echo(f"Baseline for {domain} written to {path} ({len(snapshot)} table(s)).")
    if missing:
        typer.echo(f"Tables not found: {', '.join(missing)}", err=True)


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
