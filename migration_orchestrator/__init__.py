"""
Migration Orchestrator

Orchestration core for resumable migration jobs: batch and incremental
engines, progress monitoring with stall detection, backup/restore and
rollback, and a scheduler for recurring incremental runs.
"""

__version__ = "0.1.0"

from migration_orchestrator.models.config import OrchestratorConfig
from migration_orchestrator.orchestrator.orchestrator import MigrationOrchestrator

__all__ = [
    "MigrationOrchestrator",
    "OrchestratorConfig",
]
