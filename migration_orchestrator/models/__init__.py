"""Data models for the Migration Orchestrator."""

from migration_orchestrator.models.backup import (
    BackupInfo,
    BackupResult,
    BackupSchedule,
    BackupStatus,
    BackupType,
    MigrationSnapshot,
    RestoreResult,
    RollbackResult,
    SnapshotInfo,
    SystemState,
)
from migration_orchestrator.models.config import (
    LoggingSettings,
    OrchestratorConfig,
    RetentionSettings,
)
from migration_orchestrator.models.jobs import (
    BatchConfiguration,
    BatchItem,
    BatchItemStatus,
    BatchJob,
    BatchJobStatus,
    BatchMigrationRequest,
    BatchMigrationResult,
    BatchStatus,
    ChangeDetectionRule,
    ChangeType,
    DataDelta,
    IncrementalConfiguration,
    IncrementalJob,
    IncrementalMigrationRequest,
    IncrementalMigrationResult,
    IncrementalProgress,
    IncrementalStatus,
    MigrationSchedule,
    RecurrencePattern,
    ScheduleMigrationRequest,
    SyncError,
    SyncResult,
)
from migration_orchestrator.models.progress import (
    MigrationMetrics,
    MigrationProgress,
    MigrationStep,
    MonitoringReport,
    MonitoringStatus,
    ProgressEvent,
    ProgressEventType,
    ProgressStatus,
    StepDetail,
    StepProgress,
)
