"""
Job models for the Migration Orchestrator.

This module defines Pydantic models for batch and incremental migration
jobs, the deltas they apply, their request/result envelopes and the
schedules that trigger incremental runs.
"""

import math
from datetime import datetime, timedelta, UTC
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator


def _now() -> datetime:
    return datetime.now(UTC)


EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class BatchStatus(str, Enum):
    """Batch job status."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _BATCH_TERMINAL


_BATCH_TERMINAL = {
    BatchStatus.COMPLETED,
    BatchStatus.COMPLETED_WITH_ERRORS,
    BatchStatus.FAILED,
    BatchStatus.CANCELLED,
}


class BatchItemStatus(str, Enum):
    """Outcome of one batch item."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class IncrementalStatus(str, Enum):
    """Incremental job status."""
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    FAILED = "failed"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (IncrementalStatus.STOPPED, IncrementalStatus.FAILED, IncrementalStatus.COMPLETED)


class ChangeType(str, Enum):
    """Kind of change carried by a delta."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class RecurrencePattern(str, Enum):
    """Named recurrence patterns; anything else is treated as a cron expression."""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


# Batch jobs

class BatchConfiguration(BaseModel):
    """Per-job processing options."""
    processing_delay_ms: int = 100
    max_retries: int = 3
    continue_on_error: bool = True
    create_detailed_log: bool = True
    auto_recover: bool = False
    custom_settings: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('processing_delay_ms', 'max_retries')
    @classmethod
    def must_not_be_negative(cls, v):
        if v < 0:
            raise ValueError('Value must not be negative')
        return v


class BatchItem(BaseModel):
    """A single unit of work in a batch job."""
    item_id: str
    item_type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    status: BatchItemStatus = BatchItemStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    retry_count: int = 0

    def start(self):
        self.status = BatchItemStatus.PROCESSING
        self.started_at = _now()

    def complete(self):
        self.status = BatchItemStatus.COMPLETED
        self.completed_at = _now()
        self.error_message = None

    def fail(self, error_message: str):
        self.status = BatchItemStatus.FAILED
        self.completed_at = _now()
        self.error_message = error_message

    def skip(self, reason: str):
        self.status = BatchItemStatus.SKIPPED
        self.completed_at = _now()
        self.error_message = reason


class BatchJob(BaseModel):
    """Persisted state of a batch migration."""
    batch_id: str
    batch_name: str = ""
    status: BatchStatus = BatchStatus.PENDING
    total_items: int = 0
    batch_size: int = 10
    current_batch_number: int = 0
    started_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    items: List[BatchItem] = Field(default_factory=list)
    processed_items: List[BatchItem] = Field(default_factory=list)
    failed_items: List[BatchItem] = Field(default_factory=list)
    configuration: BatchConfiguration = Field(default_factory=BatchConfiguration)
    backup_id: Optional[str] = None
    snapshot_path: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def total_batches(self) -> int:
        if self.batch_size <= 0:
            return 0
        return math.ceil(self.total_items / self.batch_size)

    @property
    def done_count(self) -> int:
        return len(self.processed_items) + len(self.failed_items)

    @property
    def progress_percentage(self) -> float:
        if self.total_items == 0:
            return 0.0
        return self.done_count / self.total_items * 100

    def estimated_time_remaining(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        """Remaining items divided by observed throughput (items per minute)."""
        if self.status != BatchStatus.RUNNING:
            return None
        processed = len(self.processed_items)
        elapsed_minutes = ((now or _now()) - self.started_at).total_seconds() / 60
        if processed == 0 or elapsed_minutes <= 0:
            return None
        rate = processed / elapsed_minutes
        remaining = self.total_items - processed
        return timedelta(minutes=remaining / rate)


class BatchMigrationRequest(BaseModel):
    """Request to start a batch migration."""
    batch_name: str = ""
    items: List[BatchItem] = Field(default_factory=list)
    batch_size: int = 10
    create_backup: bool = True
    create_snapshot: bool = True
    configuration: BatchConfiguration = Field(default_factory=BatchConfiguration)


class BatchMigrationResult(BaseModel):
    """Outcome of a batch start request."""
    success: bool
    batch_id: str = ""
    message: str = ""
    estimated_duration: timedelta = timedelta(0)
    started_at: datetime = Field(default_factory=_now)
    error: Optional[str] = None


class BatchJobStatus(BaseModel):
    """Status query result for a batch job."""
    batch_id: str
    found: bool = False
    batch_name: str = ""
    status: Optional[BatchStatus] = None
    total_items: int = 0
    processed_items: int = 0
    failed_items: int = 0
    progress_percentage: float = 0.0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_time_remaining: Optional[timedelta] = None
    current_batch_number: int = 0
    total_batches: int = 0
    error_messages: List[str] = Field(default_factory=list)
    message: str = ""


# Incremental jobs

class DataDelta(BaseModel):
    """A detected change to one entity."""
    delta_id: str
    entity_type: str
    entity_id: str
    change_type: ChangeType
    changed_at: datetime
    changed_fields: List[str] = Field(default_factory=list)
    old_values: Dict[str, Any] = Field(default_factory=dict)
    new_values: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 1
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def sort_key(self):
        return (self.priority, self.changed_at, self.delta_id)


class ChangeDetectionRule(BaseModel):
    """Selects which entity changes are detected and how they are prioritized."""
    rule_id: str
    entity_type: str
    monitored_fields: List[str] = Field(default_factory=list)
    condition: str = ""
    priority: int = 1
    is_active: bool = True


class IncrementalConfiguration(BaseModel):
    """Options for an incremental job."""
    max_changes_per_sync: int = 100
    create_backup_before_sync: bool = False
    excluded_entity_types: List[str] = Field(default_factory=list)
    single_cycle: bool = False
    custom_settings: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('max_changes_per_sync')
    @classmethod
    def must_be_positive(cls, v):
        if v < 1:
            raise ValueError('max_changes_per_sync must be at least 1')
        return v


class IncrementalJob(BaseModel):
    """Persisted state of an incremental migration."""
    migration_id: str
    migration_name: str = ""
    status: IncrementalStatus = IncrementalStatus.RUNNING
    started_at: datetime = Field(default_factory=_now)
    last_sync_at: datetime = EPOCH
    detected_through: Optional[datetime] = None
    sync_interval: timedelta = timedelta(hours=1)
    total_changes: int = 0
    processed_changes: int = 0
    failed_changes: int = 0
    pending_changes: List[DataDelta] = Field(default_factory=list)
    configuration: IncrementalConfiguration = Field(default_factory=IncrementalConfiguration)
    change_detection_rules: List[ChangeDetectionRule] = Field(default_factory=list)
    cycle_count: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    backup_id: Optional[str] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(ser_json_timedelta='iso8601')

    @property
    def next_sync_at(self) -> datetime:
        return self.last_sync_at + self.sync_interval

    @property
    def progress_percentage(self) -> float:
        if self.total_changes == 0:
            return 0.0
        return (self.processed_changes + self.failed_changes) / self.total_changes * 100


class IncrementalMigrationRequest(BaseModel):
    """Request to start an incremental migration."""
    migration_name: str = ""
    sync_interval: timedelta = timedelta(hours=1)
    last_sync_timestamp: Optional[datetime] = None
    configuration: IncrementalConfiguration = Field(default_factory=IncrementalConfiguration)
    change_detection_rules: List[ChangeDetectionRule] = Field(default_factory=list)

    @field_validator('sync_interval')
    @classmethod
    def interval_must_be_positive(cls, v):
        if v.total_seconds() <= 0:
            raise ValueError('sync_interval must be positive')
        return v


class IncrementalMigrationResult(BaseModel):
    """Outcome of an incremental start request."""
    success: bool
    migration_id: str = ""
    message: str = ""
    changes_detected: int = 0
    started_at: datetime = Field(default_factory=_now)
    next_sync_at: Optional[datetime] = None
    error: Optional[str] = None


class IncrementalProgress(BaseModel):
    """Status query result for an incremental job."""
    migration_id: str
    found: bool = False
    migration_name: str = ""
    status: Optional[IncrementalStatus] = None
    total_changes: int = 0
    processed_changes: int = 0
    failed_changes: int = 0
    pending_changes: int = 0
    progress_percentage: float = 0.0
    started_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    next_sync_at: Optional[datetime] = None
    sync_interval: Optional[timedelta] = None
    cycle_count: int = 0
    last_error: Optional[str] = None
    message: str = ""


class SyncError(BaseModel):
    """Failure applying one delta."""
    delta_id: str
    entity_type: str
    entity_id: str
    error_message: str
    error_code: str
    error_at: datetime = Field(default_factory=_now)


class SyncResult(BaseModel):
    """Outcome of one ``synchronize_changes`` call."""
    migration_id: str
    success: bool = False
    total_changes: int = 0
    successful_changes: List[str] = Field(default_factory=list)
    failed_changes: List[SyncError] = Field(default_factory=list)
    success_rate: float = 0.0
    started_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None


# Schedules

class ScheduleMigrationRequest(BaseModel):
    """Request to schedule recurring incremental runs."""
    migration_name: str = ""
    scheduled_at: datetime
    recurrence_pattern: str = RecurrencePattern.DAILY.value
    sync_interval: timedelta = timedelta(hours=1)
    configuration: IncrementalConfiguration = Field(
        default_factory=lambda: IncrementalConfiguration(single_cycle=True)
    )
    change_detection_rules: List[ChangeDetectionRule] = Field(default_factory=list)


class MigrationSchedule(BaseModel):
    """A persisted recurring trigger for incremental runs."""
    schedule_id: str
    migration_name: str = ""
    scheduled_at: datetime
    next_execution_at: datetime
    last_executed_at: Optional[datetime] = None
    recurrence_pattern: str = RecurrencePattern.DAILY.value
    is_active: bool = True
    created_at: datetime = Field(default_factory=_now)
    execution_count: int = 0
    sync_interval: timedelta = timedelta(hours=1)
    configuration: IncrementalConfiguration = Field(
        default_factory=lambda: IncrementalConfiguration(single_cycle=True)
    )
    change_detection_rules: List[ChangeDetectionRule] = Field(default_factory=list)
    active_migration_id: Optional[str] = None
    skipped_executions: int = 0

    model_config = ConfigDict(ser_json_timedelta='iso8601')
