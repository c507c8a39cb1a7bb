"""
Per-domain mutual exclusion.

A plan execution and a rollback must never touch the same domain at the same
time. Both go through a LeaseManager: executions wait for the lease, rollbacks
ask with `wait=False` and are rejected if the domain is busy.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
from typing import AsyncIterator, Dict, Optional, Protocol, runtime_checkable

from schema_orchestrator.errors import LeaseUnavailableError
from schema_orchestrator.infrastructure.db_factory import get_async_connection
from schema_orchestrator.utils.logging import get_logger

log = get_logger(__name__)


@runtime_checkable
class LeaseManager(Protocol):
    def acquire(
        self, domain: str, owner: str, wait: bool = True
    ) -> contextlib.AbstractAsyncContextManager[None]:
        """Hold the domain for the duration of the block."""
        ...


class InProcessLeaseManager:
    """asyncio locks keyed by domain; valid within a single process."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, str] = {}

    def holder(self, domain: str) -> Optional[str]:
        return self._holders.get(domain)

    @contextlib.asynccontextmanager
    async def acquire(self, domain: str, owner: str, wait: bool = True) -> AsyncIterator[None]:
        lock = self._locks.setdefault(domain, asyncio.Lock())
        if not wait and lock.locked():
            raise LeaseUnavailableError(domain, self._holders.get(domain))
        await lock.acquire()
        self._holders[domain] = owner
        log.debug("Lease acquired", extra={"domain": domain, "owner": owner})
        try:
            yield
        finally:
            self._holders.pop(domain, None)
            lock.release()
            log.debug("Lease released", extra={"domain": domain, "owner": owner})


def advisory_key(domain: str) -> int:
    """Stable signed 64-bit key for pg advisory locks."""
    digest = hashlib.sha256(f"schema-orchestrator:{domain}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class PostgresAdvisoryLeaseManager:
    """
    Session-level `pg_try_advisory_lock` on a dedicated connection, so leases
    are honoured across processes and hosts sharing the database.
    """

    def __init__(self, dsn: Optional[str] = None, poll_interval: float = 0.5) -> None:
        self._dsn = dsn
        self.poll_interval = poll_interval

    @contextlib.asynccontextmanager
    async def acquire(self, domain: str, owner: str, wait: bool = True) -> AsyncIterator[None]:
        key = advisory_key(domain)
        conn = await get_async_connection(self._dsn)
        try:
            while True:
                cur = await conn.execute("SELECT pg_try_advisory_lock(%s)", (key,))
                row = await cur.fetchone()
                if row and row[0]:
                    break
                if not wait:
                    raise LeaseUnavailableError(domain)
                await asyncio.sleep(self.poll_interval)
            log.debug("Advisory lease acquired", extra={"domain": domain, "owner": owner})
            try:
                yield
            finally:
                await conn.execute("SELECT pg_advisory_unlock(%s)", (key,))
        finally:
            await conn.close()


__all__ = [
    "InProcessLeaseManager",
    "LeaseManager",
    "PostgresAdvisoryLeaseManager",
    "advisory_key",
]
