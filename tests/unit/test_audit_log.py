from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from schema_orchestrator.domain.models import AuditEntry
from schema_orchestrator.providers.audit_log import JsonlAuditSink


def _entry(domain: str, name: str, success: bool = True) -> AuditEntry:
    return AuditEntry(
        domain=domain,
        migration_name=name,
        applied_at=datetime(2025, 8, 22, tzinfo=timezone.utc),
        applied_by="pytest",
        environment="test",
        checksum_before="before",
        checksum_after="after",
        duration=timedelta(seconds=1.5),
        success=success,
        error=None if success else "boom",
    )


@pytest.mark.asyncio
async def test_entries_are_appended_and_filtered_by_domain(tmp_path):
    sink = JsonlAuditSink(tmp_path / "audit" / "log.jsonl")

    await sink.record(_entry("News", "001"))
    await sink.record(_entry("Events", "001"))
    await sink.record(_entry("News", "002", success=False))

    history = await sink.history("News")
    assert [e.migration_name for e in history] == ["001", "002"]
    assert history[1].error == "boom"
    assert history[0].duration == timedelta(seconds=1.5)
    assert len(sink.path.read_text(encoding="utf-8").splitlines()) == 3


@pytest.mark.asyncio
async def test_new_sink_appends_to_existing_file(tmp_path):
    path = tmp_path / "log.jsonl"
    await JsonlAuditSink(path).record(_entry("News", "001"))
    await JsonlAuditSink(path).record(_entry("News", "002"))

    assert [e.migration_name for e in await JsonlAuditSink(path).history("News")] == ["001", "002"]


@pytest.mark.asyncio
async def test_missing_file_has_empty_history(tmp_path):
    assert await JsonlAuditSink(tmp_path / "absent.jsonl").history("News") == []


@pytest.mark.asyncio
async def test_unreadable_lines_are_skipped(tmp_path):
    path = tmp_path / "log.jsonl"
    sink = JsonlAuditSink(path)
    await sink.record(_entry("News", "001"))
    with path.open("a", encoding="utf-8") as f:
        f.write("not json\n\n")
    await sink.record(_entry("News", "002"))

    assert [e.migration_name for e in await sink.history("News")] == ["001", "002"]
