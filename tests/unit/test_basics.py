import asyncio
from datetime import datetime, timezone
from pathlib import Path
from time import sleep

import psutil
import pytest

from schema_orchestrator import config
from schema_orchestrator.infrastructure import db_factory
from schema_orchestrator.orchestrator import available_providers
from schema_orchestrator.utils import profiler
from scripts import new_migration


def test_get_settings_defaults():
    settings = config.get_settings()
    assert settings.db_host == "localhost"
    assert settings.db_port == 5432
    assert settings.max_retry_attempts >= 0
    assert settings.max_parallel_domains > 0
    assert settings.domain_timeout_minutes > 0
    assert settings.history_table == "schema_migration_history"


def test_settings_derived_values(make_settings):
    settings = make_settings(enabled_domains=" Services, ,News ", domain_timeout_minutes=2)
    assert settings.enabled_domain_names == ["Services", "News"]
    assert settings.domain_timeout_seconds == 120


def test_settings_read_environment_aliases(monkeypatch):
    monkeypatch.setenv("MIGRATION_MAX_PARALLEL_DOMAINS", "7")
    monkeypatch.setenv("MIGRATION_PARALLEL_EXECUTION_ENABLED", "true")
    settings = config.Settings()
    assert settings.max_parallel_domains == 7
    assert settings.parallel_execution_enabled is True


def test_profile_block_measures_time():
    with profiler.profile_block("sleep") as stats:
        sleep(0.05)
    assert stats.duration_seconds >= 0.05
    assert isinstance(stats.cpu_percent, float)
    assert stats.as_dict()["label"] == "sleep"


def test_profile_block_samples_peak_memory():
    size = 32 * 1024 * 1024
    rss_before = psutil.Process().memory_info().rss
    with profiler.profile_block("burst", sample_interval_ms=5) as stats:
        burst = b"x" * size
        sleep(0.1)
        del burst

    assert stats.peak_rss_bytes - rss_before >= size // 2


def test_pool_manager_lock_follows_the_event_loop(monkeypatch):
    monkeypatch.setattr(db_factory.PoolManager, "_instance", None)
    manager = db_factory.PoolManager()

    async def current_lock():
        return manager._loop_lock()

    first = asyncio.run(current_lock())
    manager._pools["postgresql://stale"] = object()
    second = asyncio.run(current_lock())

    assert first is not second
    assert manager._pools == {}

    asyncio.run(manager.close_all())
    assert manager._lock is None


def test_available_providers_contains_known_entries():
    names = available_providers()
    assert "memory" in names
    assert "postgres" in names


def test_migration_id_is_timestamped():
    now = datetime(2025, 8, 22, 9, 30, 5, tzinfo=timezone.utc)
    assert new_migration._migration_id("AddSlug", now) == "20250822093005_AddSlug"


def test_write_pair_creates_up_and_down(tmp_path: Path):
    up, down = new_migration._write_pair(tmp_path / "Services", "20250822093005_AddSlug")

    assert up.name == "20250822093005_AddSlug.up.sql"
    assert down.name == "20250822093005_AddSlug.down.sql"
    assert "forward" in up.read_text(encoding="utf-8")

    with pytest.raises(FileExistsError):
        new_migration._write_pair(tmp_path / "Services", "20250822093005_AddSlug")
