from __future__ import annotations

import asyncio
import contextlib
from typing import AsyncIterator

import pytest

from schema_orchestrator.domain.models import DomainMigration, MigrationPlan
from schema_orchestrator.errors import DependencyNotSatisfiedError, ExecutionError, LeaseUnavailableError
from schema_orchestrator.executor import PlanExecutor
from schema_orchestrator.planner import MigrationPlanner
from schema_orchestrator.providers.memory import InMemoryAuditSink
from schema_orchestrator.registry import DomainRegistry

MAX_RETRIES = 3
TOTAL_ATTEMPTS = MAX_RETRIES + 1


async def _plan(registry, provider, settings, domains=None) -> MigrationPlan:
    return await MigrationPlanner(registry, provider, settings).create_plan(domains)


class _BusyLeases:
    """Lease manager whose domains are always held elsewhere."""

    @contextlib.asynccontextmanager
    async def acquire(self, domain: str, owner: str, wait: bool = True) -> AsyncIterator[None]:
        raise LeaseUnavailableError(domain, "someone-else")
        yield  # pragma: no cover


class _UnreachableLeases:
    """Lease backend that cannot be reached for the given domains."""

    def __init__(self, *domains: str) -> None:
        self.domains = set(domains)

    @contextlib.asynccontextmanager
    async def acquire(self, domain: str, owner: str, wait: bool = True) -> AsyncIterator[None]:
        if domain in self.domains:
            raise OSError("lease backend unreachable")
        yield


class _LeakyReleaseLeases:
    """Grants every lease but fails while releasing it."""

    @contextlib.asynccontextmanager
    async def acquire(self, domain: str, owner: str, wait: bool = True) -> AsyncIterator[None]:
        yield
        raise OSError("unlock failed")


@pytest.mark.asyncio
async def test_sequential_run_applies_everything_and_audits(
    platform_registry, memory_provider_factory, settings, audit_sink
):
    provider = memory_provider_factory({"Services": ["s1", "s2"], "News": ["n1"], "Events": ["e1"]})
    plan = await _plan(platform_registry, provider, settings)

    result = await PlanExecutor(provider, audit_sink, settings).execute(plan)

    assert result.success
    assert result.completed_domains == list(plan.domain_names)
    assert provider.apply_calls == ["Services", "News", "Events"]
    assert [e.migration_name for e in audit_sink.entries] == ["s1", "s2", "n1", "e1"]
    assert all(e.success and e.attempts == 1 for e in audit_sink.entries)
    assert all(e.applied_by == "pytest" and e.environment == "test" for e in audit_sink.entries)
    services = [e for e in audit_sink.entries if e.domain == "Services"]
    assert services[0].checksum_before != services[0].checksum_after


@pytest.mark.asyncio
async def test_domains_without_pending_work_skip_provider_and_audit(
    abc_registry, memory_provider_factory, settings, audit_sink
):
    provider = memory_provider_factory({"A": ["a1"]}, applied={"A": ["a1"]})
    plan = await _plan(abc_registry, provider, settings)

    result = await PlanExecutor(provider, audit_sink, settings).execute(plan)

    assert result.success
    assert result.completed_domains == ["A", "B", "C"]
    assert provider.apply_calls == []
    assert audit_sink.entries == ()


@pytest.mark.asyncio
async def test_transient_failures_are_retried(abc_registry, memory_provider_factory, settings, audit_sink):
    provider = memory_provider_factory({"A": ["a1"]}, failures={"A": 2})
    plan = await _plan(abc_registry, provider, settings, ["A"])

    result = await PlanExecutor(provider, audit_sink, settings).execute(plan)

    assert result.success
    assert provider.apply_calls == ["A", "A", "A"]
    assert result.domain_results["A"].attempts == 3
    assert audit_sink.entries[0].attempts == 3


@pytest.mark.asyncio
async def test_exhausted_retries_halt_without_compensation(
    abc_registry, memory_provider_factory, settings, audit_sink
):
    provider = memory_provider_factory(
        {"A": ["a1"], "B": ["b1"], "C": ["c1"]}, failures={"C": TOTAL_ATTEMPTS}
    )
    plan = await _plan(abc_registry, provider, settings)
    assert plan.domain_names == ("A", "B", "C")

    result = await PlanExecutor(provider, audit_sink, settings).execute(plan)

    assert not result.success
    assert result.completed_domains == ["A", "B"]
    assert result.failed_domain == "C"
    assert isinstance(result.error, ExecutionError)
    assert result.error.attempts == TOTAL_ATTEMPTS
    assert provider.apply_calls.count("C") == TOTAL_ATTEMPTS
    assert await provider.list_applied_migrations("A") == ["a1"]
    failure = audit_sink.entries[-1]
    assert failure.domain == "C" and not failure.success
    assert failure.checksum_before == failure.checksum_after
    assert "ConnectionError" in (failure.error or "")


@pytest.mark.asyncio
async def test_failure_reports_domains_never_started(
    abc_registry, memory_provider_factory, settings, audit_sink
):
    provider = memory_provider_factory({"A": ["a1"], "B": ["b1"]}, failures={"A": TOTAL_ATTEMPTS})
    plan = await _plan(abc_registry, provider, settings)

    result = await PlanExecutor(provider, audit_sink, settings).execute(plan)

    assert result.failed_domain == "A"
    assert result.completed_domains == []
    assert result.not_started == ["B", "C"]
    assert "B" not in provider.apply_calls


@pytest.mark.asyncio
async def test_attempt_timeout_counts_as_failure(
    abc_registry, memory_provider_factory, make_settings, audit_sink
):
    settings = make_settings(domain_timeout_minutes=0.0005, max_retry_attempts=1)
    provider = memory_provider_factory({"A": ["a1"]}, apply_delay=0.2)
    plan = await _plan(abc_registry, provider, settings, ["A"])

    result = await PlanExecutor(provider, audit_sink, settings).execute(plan)

    assert result.failed_domain == "A"
    assert result.domain_results["A"].attempts == 2
    assert "timed out" in (result.domain_results["A"].error or "")


@pytest.mark.asyncio
async def test_cancellation_stops_at_domain_boundary(
    abc_registry, memory_provider_factory, settings, audit_sink
):
    provider = memory_provider_factory({"A": ["a1"], "B": ["b1"], "C": ["c1"]})
    plan = await _plan(abc_registry, provider, settings)
    cancel = asyncio.Event()

    class _CancelAfterFirst(InMemoryAuditSink):
        async def record(self, entry):
            await super().record(entry)
            cancel.set()

    sink = _CancelAfterFirst()
    result = await PlanExecutor(provider, sink, settings).execute(plan, cancel_event=cancel)

    assert result.cancelled
    assert not result.success
    assert result.completed_domains == ["A"]
    assert result.not_started == ["B", "C"]


@pytest.mark.asyncio
async def test_parallel_mode_runs_groups_concurrently(
    make_domain, memory_provider_factory, make_settings, audit_sink
):
    settings = make_settings(parallel_execution_enabled=True, max_parallel_domains=3)
    registry = DomainRegistry(
        [make_domain("A"), make_domain("B"), make_domain("C"), make_domain("D", ["A", "B", "C"])]
    )
    provider = memory_provider_factory(
        {"A": ["a1"], "B": ["b1"], "C": ["c1"], "D": ["d1"]}, apply_delay=0.05
    )
    plan = await _plan(registry, provider, settings)

    result = await PlanExecutor(provider, audit_sink, settings).execute(plan)

    assert result.success
    assert provider.max_in_flight == 3
    assert provider.apply_calls[-1] == "D"
    assert result.completed_domains[-1] == "D"


@pytest.mark.asyncio
async def test_parallel_failure_halts_later_groups(
    abc_registry, memory_provider_factory, make_settings, audit_sink
):
    settings = make_settings(parallel_execution_enabled=True)
    provider = memory_provider_factory({"A": ["a1"], "B": ["b1"], "C": ["c1"]}, failures={"A": TOTAL_ATTEMPTS})
    plan = await _plan(abc_registry, provider, settings)

    result = await PlanExecutor(provider, audit_sink, settings).execute(plan)

    assert result.failed_domain == "A"
    assert result.completed_domains == ["C"]
    assert result.not_started == ["B"]


@pytest.mark.asyncio
async def test_out_of_order_plan_is_a_defect(memory_provider_factory, settings, audit_sink):
    child = DomainMigration(domain="Child", dependencies=frozenset({"Base"}), pending_migrations=("c1",))
    base = DomainMigration(domain="Base", pending_migrations=("b1",))
    # Hand-built plan whose sorted order contradicts its groups.
    plan = MigrationPlan(domain_migrations=(child, base), execution_groups=((base,), (child,)))
    provider = memory_provider_factory({"Child": ["c1"], "Base": ["b1"]})

    with pytest.raises(DependencyNotSatisfiedError) as excinfo:
        await PlanExecutor(provider, audit_sink, settings).execute(plan)

    assert excinfo.value.missing == ("Base",)
    assert provider.apply_calls == []


@pytest.mark.asyncio
async def test_audit_failures_are_counted_not_raised(abc_registry, memory_provider_factory, settings):
    provider = memory_provider_factory({"A": ["a1", "a2"]})
    plan = await _plan(abc_registry, provider, settings, ["A"])

    result = await PlanExecutor(provider, InMemoryAuditSink(fail_writes=True), settings).execute(plan)

    assert result.success
    assert result.audit_write_failures == 2


@pytest.mark.asyncio
async def test_busy_lease_fails_domain_without_retry(
    abc_registry, memory_provider_factory, settings, audit_sink
):
    provider = memory_provider_factory({"A": ["a1"]})
    plan = await _plan(abc_registry, provider, settings, ["A"])

    result = await PlanExecutor(provider, audit_sink, settings, leases=_BusyLeases()).execute(plan)

    assert result.failed_domain == "A"
    assert provider.apply_calls == []
    assert audit_sink.entries[-1].success is False


def test_domain_timeout_override(make_domain, memory_provider_factory, audit_sink, settings):
    registry = DomainRegistry([make_domain("Slow", timeout_minutes=30), make_domain("Fast")])
    executor = PlanExecutor(memory_provider_factory({}), audit_sink, settings, registry=registry)

    assert executor.timeout_for("Slow") == 30 * 60
    assert executor.timeout_for("Fast") == settings.domain_timeout_seconds


@pytest.mark.asyncio
async def test_lease_backend_error_returns_partial_result(
    abc_registry, memory_provider_factory, settings, audit_sink
):
    provider = memory_provider_factory({"A": ["a1"], "B": ["b1"], "C": ["c1"]})
    plan = await _plan(abc_registry, provider, settings)

    result = await PlanExecutor(provider, audit_sink, settings, leases=_UnreachableLeases("B")).execute(plan)

    assert result.completed_domains == ["A"]
    assert result.failed_domain == "B"
    assert result.not_started == ["C"]
    assert "lease backend unreachable" in str(result.error)
    failure = audit_sink.entries[-1]
    assert (failure.domain, failure.migration_name, failure.success) == ("B", "b1", False)
    assert "OSError" in failure.error


@pytest.mark.asyncio
async def test_parallel_lease_backend_error_lets_siblings_finish(
    abc_registry, memory_provider_factory, make_settings, audit_sink
):
    settings = make_settings(parallel_execution_enabled=True)
    provider = memory_provider_factory({"A": ["a1"], "B": ["b1"], "C": ["c1"]}, apply_delay=0.02)
    plan = await _plan(abc_registry, provider, settings)

    result = await PlanExecutor(provider, audit_sink, settings, leases=_UnreachableLeases("A")).execute(plan)

    assert result.failed_domain == "A"
    assert result.completed_domains == ["C"]
    assert result.not_started == ["B"]
    assert provider.apply_calls == ["C"]
    assert [e.domain for e in audit_sink.entries if not e.success] == ["A"]


@pytest.mark.asyncio
async def test_lease_release_error_keeps_applied_outcome(
    abc_registry, memory_provider_factory, settings, audit_sink
):
    provider = memory_provider_factory({"A": ["a1"]})
    plan = await _plan(abc_registry, provider, settings, ["A"])

    result = await PlanExecutor(provider, audit_sink, settings, leases=_LeakyReleaseLeases()).execute(plan)

    assert result.success
    assert result.completed_domains == ["A"]
    assert [e.success for e in audit_sink.entries] == [True]


@pytest.mark.asyncio
async def test_result_carries_profile_figures(abc_registry, memory_provider_factory, settings, audit_sink):
    provider = memory_provider_factory({"A": ["a1"]})
    plan = await _plan(abc_registry, provider, settings, ["A"])

    result = await PlanExecutor(provider, audit_sink, settings).execute(plan)

    summary = result.as_dict()
    assert summary["peak_rss_bytes"] > 0
    assert isinstance(summary["cpu_percent"], float)


def test_parallel_settle_turns_errors_into_failed_outcomes(memory_provider_factory, settings, audit_sink):
    executor = PlanExecutor(memory_provider_factory({}), audit_sink, settings)
    dm = DomainMigration(domain="A", pending_migrations=("a1",))

    outcome = executor._settle(dm, RuntimeError("worker crashed"))

    assert not outcome.success
    assert outcome.error == "RuntimeError: worker crashed"
    with pytest.raises(asyncio.CancelledError):
        executor._settle(dm, asyncio.CancelledError())
