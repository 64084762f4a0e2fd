"""
Custom exceptions for the Migration Orchestrator.

This module defines the exception hierarchy used throughout the
orchestration core. Collaborator clients raise ``ClientError`` with a
structured ``ErrorKind`` so that failure classification never has to
inspect message text.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Structured error kinds reported by entity clients."""
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    RESOURCE = "resource"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class MigrationOrchestratorError(Exception):
    """Base exception class for Migration Orchestrator errors."""
    
    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}


class ConfigurationError(MigrationOrchestratorError):
    """Raised when there's an error in configuration."""
    pass


class ValidationError(MigrationOrchestratorError):
    """Raised when validation of a request or entity fails."""
    
    def __init__(
        self,
        message: str,
        failed_checks: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.failed_checks = failed_checks or []


class PersistenceError(MigrationOrchestratorError):
    """Raised when job state cannot be read from or written to disk."""
    pass


class JobNotFoundError(MigrationOrchestratorError):
    """Raised when a job id is unknown both in memory and on disk."""
    pass


class InvalidStateTransitionError(MigrationOrchestratorError):
    """Raised when a job is asked to move to a state it cannot reach."""
    
    def __init__(self, job_id: str, current: str, requested: str, **kwargs):
        super().__init__(
            f"Job {job_id} cannot go from {current} to {requested}",
            **kwargs
        )
        self.job_id = job_id
        self.current = current
        self.requested = requested


class BackupError(MigrationOrchestratorError):
    """Raised when backup operations fail."""
    pass


class RollbackError(MigrationOrchestratorError):
    """Raised when rollback operations fail."""
    pass


class SchedulingError(MigrationOrchestratorError):
    """Raised when a schedule cannot be created or executed."""
    pass


class ClientError(MigrationOrchestratorError):
    """Raised by entity clients; ``kind`` drives failure classification."""
    
    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.kind = kind


class NetworkError(ClientError):
    """Raised when a platform call times out or the connection drops."""
    
    def __init__(self, message: str, **kwargs):
        super().__init__(message, kind=ErrorKind.NETWORK, **kwargs)


class AuthenticationError(ClientError):
    """Raised when authentication against a platform fails."""
    
    def __init__(self, message: str, **kwargs):
        super().__init__(message, kind=ErrorKind.AUTHENTICATION, **kwargs)


class ResourceError(ClientError):
    """Raised when a platform rejects work because of quota or capacity limits."""
    
    def __init__(self, message: str, **kwargs):
        super().__init__(message, kind=ErrorKind.RESOURCE, **kwargs)
