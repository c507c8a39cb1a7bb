"""
Utilities package for the migration orchestrator.

Exports shared helpers for logging and profiling. Keep this package
lightweight and free of orchestration logic.
"""

from schema_orchestrator.utils.logging import configure_logging, get_logger
from schema_orchestrator.utils.profiler import ProfileStats, profile_block

__all__ = [
    "configure_logging",
    "get_logger",
    "ProfileStats",
    "profile_block",
]
