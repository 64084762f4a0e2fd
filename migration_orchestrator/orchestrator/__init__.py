"""Batch and incremental engines, scheduler and the orchestrator facade."""

from migration_orchestrator.orchestrator.batch import BatchMigrationEngine
from migration_orchestrator.orchestrator.incremental import IncrementalMigrationEngine
from migration_orchestrator.orchestrator.orchestrator import MigrationOrchestrator
from migration_orchestrator.orchestrator.scheduler import MigrationScheduler, calculate_next_execution

__all__ = [
    "BatchMigrationEngine",
    "IncrementalMigrationEngine",
    "MigrationOrchestrator",
    "MigrationScheduler",
    "calculate_next_execution",
]
