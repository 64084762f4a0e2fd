"""
Backup and rollback models for the Migration Orchestrator.
"""

from datetime import datetime, timedelta, UTC
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict


def _now() -> datetime:
    return datetime.now(UTC)


class BackupType(str, Enum):
    """Backup types."""
    FULL = "full"
    INCREMENTAL = "incremental"


class BackupStatus(str, Enum):
    """Backup lifecycle status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CORRUPTED = "corrupted"


class BackupInfo(BaseModel):
    """Metadata and archive pointer for one backup."""
    backup_id: str
    migration_id: str
    backup_type: BackupType
    status: BackupStatus = BackupStatus.PENDING
    created_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None
    backup_file_path: str = ""
    backup_size: int = 0
    parent_backup_id: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BackupResult(BaseModel):
    """Outcome of a backup request."""
    success: bool
    backup_id: str = ""
    backup_info: Optional[BackupInfo] = None
    message: str = ""
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


class RestoreResult(BaseModel):
    """Outcome of a restore request."""
    success: bool
    backup_id: str
    restored_at: Optional[datetime] = None
    message: str = ""
    error: Optional[str] = None
    restored_items: List[str] = Field(default_factory=list)


class BackupSchedule(BaseModel):
    """Recurring backup definition used by ``create_scheduled_backup``."""
    schedule_id: str
    migration_id: str
    backup_type: BackupType = BackupType.FULL
    interval: timedelta = timedelta(days=1)
    next_run: datetime = Field(default_factory=_now)
    is_active: bool = True
    max_retention_days: int = 30

    model_config = ConfigDict(ser_json_timedelta='iso8601')


class SystemState(BaseModel):
    """Entities of one platform, keyed by entity type."""
    system: str = ""
    entities: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)

    def entity_ids(self, entity_type: str) -> List[str]:
        return [str(e["id"]) for e in self.entities.get(entity_type, []) if "id" in e]

    @property
    def entity_count(self) -> int:
        return sum(len(v) for v in self.entities.values())


class MigrationSnapshot(BaseModel):
    """State of both systems captured before a migration starts."""
    migration_id: str
    timestamp: datetime = Field(default_factory=_now)
    snapshot_path: str = ""
    source_state: SystemState = Field(default_factory=SystemState)
    destination_state: SystemState = Field(default_factory=SystemState)


class SnapshotInfo(BaseModel):
    """Listing entry for a snapshot file on disk."""
    migration_id: str
    timestamp: datetime
    file_path: str
    size: int
    is_valid: bool


class RollbackResult(BaseModel):
    """Outcome of a snapshot, rollback, validation or recovery call."""
    success: bool
    message: str = ""
    error: Optional[str] = None
    snapshot_path: Optional[str] = None
    details: List[str] = Field(default_factory=list)
    validation_result: Optional["RollbackResult"] = None
    failure_type: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


RollbackResult.model_rebuild()
