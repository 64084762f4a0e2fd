"""Backup, restore and rollback of migration jobs."""

from migration_orchestrator.backup.manager import BackupManager
from migration_orchestrator.backup.rollback import RollbackManager, RollbackStatus
from migration_orchestrator.backup.storage import BackupStorage, RetentionPolicy
from migration_orchestrator.backup.strategies import (
    EntityConfigStrategy,
    LogsStrategy,
    MigrationDataStrategy,
    SnapshotStrategy,
    default_strategies,
)

__all__ = [
    "BackupManager",
    "BackupStorage",
    "EntityConfigStrategy",
    "LogsStrategy",
    "MigrationDataStrategy",
    "RetentionPolicy",
    "RollbackManager",
    "RollbackStatus",
    "SnapshotStrategy",
    "default_strategies",
]
