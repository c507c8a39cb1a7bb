"""
Infrastructure package for the migration orchestrator.

Centralizes database connectivity (async pool, retrying connect) and the
per-domain lease managers. Keep this layer focused on I/O and resource
management, decoupled from planning and execution logic.
"""

from schema_orchestrator.infrastructure.db_factory import (
    PoolManager,
    build_dsn,
    get_async_connection,
    get_async_pool,
)
from schema_orchestrator.infrastructure.leases import (
    InProcessLeaseManager,
    LeaseManager,
    PostgresAdvisoryLeaseManager,
)

__all__ = [
    "InProcessLeaseManager",
    "LeaseManager",
    "PoolManager",
    "PostgresAdvisoryLeaseManager",
    "build_dsn",
    "get_async_connection",
    "get_async_pool",
]
