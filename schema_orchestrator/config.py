"""
Configuration settings for the migration orchestrator.

Uses Pydantic Settings to load environment variables for orchestration
limits, retry policy, database connectivity, audit/backup locations and
logging. Values are read-only once loaded.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Orchestration
    max_retry_attempts: int = Field(3, ge=0, le=10, alias="MIGRATION_MAX_RETRY_ATTEMPTS")
    max_parallel_domains: int = Field(4, ge=1, alias="MIGRATION_MAX_PARALLEL_DOMAINS")
    enabled_domains: str = Field("", alias="MIGRATION_ENABLED_DOMAINS")
    domain_timeout_minutes: float = Field(15, gt=0, le=1440, alias="MIGRATION_DOMAIN_TIMEOUT_MINUTES")
    parallel_execution_enabled: bool = Field(False, alias="MIGRATION_PARALLEL_EXECUTION_ENABLED")
    retry_backoff_base_seconds: float = Field(
        2.0, ge=0, alias="MIGRATION_RETRY_BACKOFF_BASE_SECONDS"
    )
    retry_backoff_max_seconds: float = Field(300.0, gt=0, alias="MIGRATION_RETRY_BACKOFF_MAX_SECONDS")

    # Estimation constants (minutes)
    base_migration_minutes: float = Field(2.0, ge=0, alias="MIGRATION_BASE_MINUTES")
    migration_complexity_minutes: float = Field(0.5, ge=0, alias="MIGRATION_COMPLEXITY_MINUTES")

    # Domains / provider
    provider: str = Field("postgres", alias="MIGRATION_PROVIDER")
    domains_file: Optional[Path] = Field(None, alias="MIGRATION_DOMAINS_FILE")
    migrations_dir: Path = Field(Path("migrations"), alias="MIGRATIONS_DIR")
    history_table: str = Field(
        "schema_migration_history", pattern=r"^[A-Za-z_][A-Za-z0-9_]*$", alias="MIGRATION_HISTORY_TABLE"
    )

    # Audit / rollback
    applied_by: str = Field("migration-orchestrator", alias="MIGRATION_APPLIED_BY")
    audit_log_path: Path = Field(Path("audit/migrations.jsonl"), alias="MIGRATION_AUDIT_LOG")
    backup_dir: Path = Field(Path("backups"), alias="MIGRATION_BACKUP_DIR")

    # Database
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str = Field("postgres", alias="DB_PASSWORD")
    db_name: str = Field("migrations", alias="DB_NAME")
    db_pool_max_size: int = Field(4, ge=1, alias="DB_POOL_MAX_SIZE")

    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def enabled_domain_names(self) -> List[str]:
        """`MIGRATION_ENABLED_DOMAINS` as a list; empty means every enabled domain."""
        return [name.strip() for name in self.enabled_domains.split(",") if name.strip()]

    @property
    def domain_timeout_seconds(self) -> float:
        return self.domain_timeout_minutes * 60


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


__all__ = ["Settings", "get_settings"]
