"""
Append-only JSON-lines audit sink.

One AuditEntry per line. Files are only ever opened in append mode; entries
are never rewritten or deleted. Writes are serialized with an asyncio lock and
pushed to a worker thread so the event loop never blocks on disk I/O.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import List

from schema_orchestrator.domain.models import AuditEntry
from schema_orchestrator.utils.logging import get_logger

log = get_logger(__name__)


class JsonlAuditSink:
    """Durable audit log stored as newline-delimited JSON."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    def _read(self) -> List[AuditEntry]:
        if not self.path.exists():
            return []
        entries: List[AuditEntry] = []
        with self.path.open("r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(AuditEntry.model_validate_json(line))
                except ValueError:
                    log.warning(
                        "Skipping unreadable audit line",
                        extra={"path": str(self.path), "line": line_no},
                    )
        return entries

    async def record(self, entry: AuditEntry) -> None:
        async with self._lock:
            await asyncio.to_thread(self._append, entry.model_dump_json())
        log.info(
            "Audit entry recorded",
            extra={
                "domain": entry.domain,
                "migration": entry.migration_name,
                "success": entry.success,
                "duration_ms": round(entry.duration.total_seconds() * 1000, 1),
            },
        )

    async def history(self, domain: str) -> List[AuditEntry]:
        entries = await asyncio.to_thread(self._read)
        return [entry for entry in entries if entry.domain == domain]


__all__ = ["JsonlAuditSink"]
