"""
Error taxonomy for the migration orchestrator.

Planning and rollback-planning errors fail closed: nothing is returned and
nothing is mutated. Execution errors are always preceded by an audit entry
before they reach the caller.
"""

from __future__ import annotations

from typing import Optional, Sequence


class OrchestrationError(Exception):
    """Base class for every error raised by the orchestrator."""


class ConfigurationError(OrchestrationError):
    """Unknown domain, bad registry entry, or unknown/unapplied target migration."""


class CycleDetectedError(OrchestrationError):
    """The domain dependency graph contains a cycle; no plan is produced."""

    def __init__(self, cycle: Sequence[str], message: Optional[str] = None) -> None:
        self.cycle = tuple(cycle)
        super().__init__(
            message or f"Circular dependency detected: {' -> '.join(self.cycle)}"
        )


class ExecutionError(OrchestrationError):
    """A provider failure while applying a domain, after retries were exhausted."""

    def __init__(self, domain: str, message: str, attempts: int = 0) -> None:
        self.domain = domain
        self.attempts = attempts
        super().__init__(message)


class DependencyNotSatisfiedError(OrchestrationError):
    """
    A domain was about to run before one of its dependencies completed.

    Unreachable when the plan came from MigrationPlanner; treated as a defect.
    """

    def __init__(self, domain: str, missing: Sequence[str]) -> None:
        self.domain = domain
        self.missing = tuple(missing)
        super().__init__(
            f"Domain {domain} depends on {', '.join(self.missing)} which has not been completed"
        )


class LeaseUnavailableError(OrchestrationError):
    """Another execution or rollback currently holds the domain."""

    def __init__(self, domain: str, holder: Optional[str] = None) -> None:
        self.domain = domain
        self.holder = holder
        detail = f" (held by {holder})" if holder else ""
        super().__init__(f"Domain {domain} is locked by another operation{detail}")


class RollbackError(OrchestrationError):
    """Rollback failed; the reversal transaction was aborted."""

    def __init__(self, domain: str, message: str) -> None:
        self.domain = domain
        super().__init__(message)


class RollbackPreconditionError(RollbackError):
    """Connectivity, capability or concurrent-access check failed; nothing was mutated."""


__all__ = [
    "OrchestrationError",
    "ConfigurationError",
    "CycleDetectedError",
    "ExecutionError",
    "DependencyNotSatisfiedError",
    "LeaseUnavailableError",
    "RollbackError",
    "RollbackPreconditionError",
]
