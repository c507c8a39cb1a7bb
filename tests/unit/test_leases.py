from __future__ import annotations

import asyncio

import pytest

from schema_orchestrator.errors import LeaseUnavailableError
from schema_orchestrator.infrastructure.leases import InProcessLeaseManager, LeaseManager, advisory_key


@pytest.mark.asyncio
async def test_lease_records_holder_while_held():
    leases = InProcessLeaseManager()

    async with leases.acquire("News", "plan:1"):
        assert leases.holder("News") == "plan:1"
    assert leases.holder("News") is None


@pytest.mark.asyncio
async def test_non_waiting_acquire_fails_fast():
    leases = InProcessLeaseManager()

    async with leases.acquire("News", "plan:1"):
        with pytest.raises(LeaseUnavailableError) as excinfo:
            async with leases.acquire("News", "rollback:News", wait=False):
                pass  # pragma: no cover

    assert excinfo.value.holder == "plan:1"
    assert "locked" in str(excinfo.value)


@pytest.mark.asyncio
async def test_waiting_acquire_serializes_holders():
    leases = InProcessLeaseManager()
    order = []

    async def hold(owner: str) -> None:
        async with leases.acquire("Events", owner):
            order.append(f"{owner}:in")
            await asyncio.sleep(0.01)
            order.append(f"{owner}:out")

    await asyncio.gather(hold("first"), hold("second"))

    assert order == ["first:in", "first:out", "second:in", "second:out"]


@pytest.mark.asyncio
async def test_distinct_domains_do_not_block_each_other():
    leases = InProcessLeaseManager()

    async with leases.acquire("News", "plan:1"):
        async with leases.acquire("Events", "plan:2", wait=False):
            assert leases.holder("Events") == "plan:2"


@pytest.mark.asyncio
async def test_lease_released_after_error():
    leases = InProcessLeaseManager()

    with pytest.raises(RuntimeError):
        async with leases.acquire("News", "plan:1"):
            raise RuntimeError("boom")

    async with leases.acquire("News", "plan:2", wait=False):
        pass


def test_in_process_manager_satisfies_protocol():
    assert isinstance(InProcessLeaseManager(), LeaseManager)


def test_advisory_key_is_stable_signed_64_bit():
    key = advisory_key("Services")

    assert key == advisory_key("Services")
    assert key != advisory_key("News")
    assert -(2**63) <= key < 2**63
