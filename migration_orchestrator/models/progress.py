"""
Progress monitoring models for the Migration Orchestrator.

This module defines the fixed migration step sequence, per-step progress
records, the per-job progress tracker state and the monitoring report
handed to external report renderers.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict


def _now() -> datetime:
    return datetime.now(UTC)


class MigrationStep(str, Enum):
    """Migration steps, in execution order."""
    INITIALIZATION = "initialization"
    PREREQUISITE_VALIDATION = "prerequisite_validation"
    BACKUP_CREATION = "backup_creation"
    SOURCE_EXTRACTION = "source_extraction"
    TRANSFORMATION = "transformation"
    TARGET_CREATION = "target_creation"
    BOT_SETUP = "bot_setup"
    ROUTING_SETUP = "routing_setup"
    VALIDATION_TESTING = "validation_testing"
    OPTIMIZATION = "optimization"
    COMPLETION = "completion"


class ProgressStatus(str, Enum):
    """Status of one step."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class MonitoringStatus(str, Enum):
    """Status of a monitored job."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class StepProgress(BaseModel):
    """Progress of one step."""
    status: ProgressStatus = ProgressStatus.PENDING
    start_time: datetime = Field(default_factory=_now)
    end_time: Optional[datetime] = None
    details: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def duration(self) -> Optional[timedelta]:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time


class MigrationMetrics(BaseModel):
    completed_steps: int = 0
    failed_steps: int = 0
    active_steps: int = 0
    average_step_duration: float = 0.0  # minutes
    total_entities_migrated: int = 0
    total_errors: int = 0


def _initial_steps() -> Dict[MigrationStep, StepProgress]:
    return {step: StepProgress() for step in MigrationStep}


class MigrationProgress(BaseModel):
    """Per-job step tracker."""
    migration_id: str
    start_time: datetime = Field(default_factory=_now)
    end_time: Optional[datetime] = None
    last_update_time: datetime = Field(default_factory=_now)
    duration: Optional[timedelta] = None
    status: MonitoringStatus = MonitoringStatus.IN_PROGRESS
    current_step: MigrationStep = MigrationStep.INITIALIZATION
    overall_progress: float = 0.0
    steps: Dict[MigrationStep, StepProgress] = Field(default_factory=_initial_steps)
    metrics: MigrationMetrics = Field(default_factory=MigrationMetrics)
    log_file_path: str = ""

    model_config = ConfigDict(ser_json_timedelta='float')

    @property
    def completed_step_count(self) -> int:
        return sum(1 for s in self.steps.values() if s.status == ProgressStatus.COMPLETED)

    def recalculate_progress(self) -> float:
        if not self.steps:
            self.overall_progress = 0.0
        else:
            self.overall_progress = self.completed_step_count / len(self.steps) * 100
        return self.overall_progress


class StepDetail(BaseModel):
    step: MigrationStep
    status: ProgressStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: Optional[timedelta] = None
    details: Optional[str] = None
    error_message: Optional[str] = None

    model_config = ConfigDict(ser_json_timedelta='float')


class MonitoringReport(BaseModel):
    """Report struct consumed by external report renderers."""
    migration_id: str
    generated_at: datetime = Field(default_factory=_now)
    status: MonitoringStatus
    duration: timedelta
    overall_progress: float
    steps_completed: int
    total_steps: int
    metrics: MigrationMetrics
    step_details: List[StepDetail] = Field(default_factory=list)
    bottlenecks: List[str] = Field(default_factory=list)
    statistics: Dict[str, float] = Field(default_factory=dict)
    log_file_path: str = ""
    report_file_path: Optional[str] = None

    model_config = ConfigDict(ser_json_timedelta='float')


class ProgressEventType(str, Enum):
    """Types of progress events."""
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass
class ProgressEvent:
    """Progress event delivered to monitor callbacks."""
    migration_id: str
    event_type: ProgressEventType
    timestamp: datetime
    overall_progress: float
    status: MonitoringStatus
    step: Optional[MigrationStep] = None
    step_status: Optional[ProgressStatus] = None
    message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
