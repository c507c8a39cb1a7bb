"""
Database connection factory utilities for the PostgreSQL adapters.

Provides centralized management of the async PostgreSQL connection pool with
explicit lifecycle management. The PoolManager singleton hands out one pool
per DSN and closes every pool on `close_all()`.

Includes retry logic for transient connection failures using tenacity.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional

import psycopg
from psycopg import AsyncConnection
from psycopg_pool import AsyncConnectionPool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from schema_orchestrator.config import Settings, get_settings
from schema_orchestrator.utils.logging import get_logger

log = get_logger(__name__)


def build_dsn(settings: Optional[Settings] = None) -> str:
    """Compose a DSN string from settings."""
    settings = settings or get_settings()
    return (
        f"postgresql://{settings.db_user}:{settings.db_password}"
        f"@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    )


class PoolManager:
    """
    Process-wide singleton for async connection pools, keyed by DSN.

    Pools and the guarding lock belong to the event loop that created them.
    A new loop (each CLI command runs its own) starts with a fresh lock and
    drops pools left over from a previous loop.
    """

    _instance: Optional["PoolManager"] = None

    def __new__(cls) -> "PoolManager":
        """Create or return the singleton instance."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._pools = {}
            cls._instance._lock = None
            cls._instance._loop = None
        return cls._instance

    _pools: Dict[str, AsyncConnectionPool]
    _lock: Optional[asyncio.Lock]
    _loop: Optional[asyncio.AbstractEventLoop]

    def _loop_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._loop is not loop:
            if self._pools:
                log.warning(
                    "Dropping pools opened on a previous event loop",
                    extra={"pools": len(self._pools)},
                )
                self._pools = {}
            self._lock = asyncio.Lock()
            self._loop = loop
        return self._lock

    async def get_async_pool(
        self, dsn: Optional[str] = None, min_size: int = 1, max_size: int = 4
    ) -> AsyncConnectionPool:
        """
        Get or create (and open) the pool for a DSN.

        Parameters
        ----------
        dsn : str | None
            Connection string; defaults to the one built from settings.
        min_size : int
            Minimum number of idle connections to keep.
        max_size : int
            Maximum total connections in the pool.
        """
        conninfo = dsn or build_dsn()
        async with self._loop_lock():
            pool = self._pools.get(conninfo)
            if pool is None:
                pool = AsyncConnectionPool(
                    conninfo=conninfo, min_size=min_size, max_size=max_size, open=False
                )
                await pool.open()
                self._pools[conninfo] = pool
                log.debug("Opened async pool", extra={"max_size": max_size})
            return pool

    async def close_all(self) -> None:
        """Close all managed pools and release resources."""
        async with self._loop_lock():
            pools, self._pools = list(self._pools.values()), {}
        for pool in pools:
            await pool.close()
        self._lock = None
        self._loop = None


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((psycopg.OperationalError, OSError)),
    reraise=True,
)
async def get_async_connection(dsn: Optional[str] = None) -> AsyncConnection:
    """
    Acquire a dedicated asynchronous connection with automatic retry.

    Retries up to 3 times with exponential backoff for transient connection
    errors. Used for session-scoped work such as advisory locks; prefer the
    pool for everything else.

    Raises
    ------
    psycopg.OperationalError
        If connection fails after all retry attempts.
    """
    return await AsyncConnection.connect(dsn or build_dsn(), autocommit=True)


async def get_async_pool(
    dsn: Optional[str] = None, min_size: int = 1, max_size: int = 4
) -> AsyncConnectionPool:
    """Get or create the async pool via PoolManager."""
    return await PoolManager().get_async_pool(dsn=dsn, min_size=min_size, max_size=max_size)


__all__ = [
    "PoolManager",
    "build_dsn",
    "get_async_connection",
    "get_async_pool",
]
