"""Core exceptions and failure handling."""

from migration_orchestrator.core.error_handler import (
    ErrorHandler,
    FailureInfo,
    FailureType,
    RecoveryStrategy,
    RetryConfig,
    RetryHandler,
)
from migration_orchestrator.core.exceptions import (
    AuthenticationError,
    BackupError,
    ClientError,
    ConfigurationError,
    ErrorKind,
    InvalidStateTransitionError,
    JobNotFoundError,
    MigrationOrchestratorError,
    NetworkError,
    PersistenceError,
    ResourceError,
    RollbackError,
    SchedulingError,
    ValidationError,
)

__all__ = [
    "AuthenticationError",
    "BackupError",
    "ClientError",
    "ConfigurationError",
    "ErrorHandler",
    "ErrorKind",
    "FailureInfo",
    "FailureType",
    "InvalidStateTransitionError",
    "JobNotFoundError",
    "MigrationOrchestratorError",
    "NetworkError",
    "PersistenceError",
    "RecoveryStrategy",
    "ResourceError",
    "RetryConfig",
    "RetryHandler",
    "RollbackError",
    "SchedulingError",
    "ValidationError",
]
