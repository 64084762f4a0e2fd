"""
Failure classification and retry handling for the Migration Orchestrator.

Failures are classified from exception types and the structured
``ErrorKind`` carried by ``ClientError``; message text is never inspected.
Each failure type maps to the recovery strategy the rollback manager
dispatches on.
"""

import asyncio
import inspect
import logging
import random
import traceback
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

import pydantic

from .exceptions import (
    ClientError,
    ConfigurationError,
    ErrorKind,
    PersistenceError,
    ValidationError,
)


class FailureType(str, Enum):
    """Classes of failure that drive automatic recovery."""
    NETWORK_TIMEOUT = "network_timeout"
    AUTHENTICATION_ERROR = "authentication_error"
    DATA_VALIDATION_ERROR = "data_validation_error"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    UNKNOWN = "unknown"


class RecoveryStrategy(str, Enum):
    """Recovery actions available for a classified failure."""
    RETRY_AFTER_DELAY = "retry_after_delay"
    REFRESH_AUTHENTICATION = "refresh_authentication"
    ROLLBACK = "rollback"


@dataclass
class FailureInfo:
    """Classification result for one failure."""
    error: Exception
    failure_type: FailureType
    strategy: RecoveryStrategy
    migration_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    traceback_str: str = ""

    @property
    def is_transient(self) -> bool:
        return self.strategy == RecoveryStrategy.RETRY_AFTER_DELAY


@dataclass
class RetryConfig:
    """Configuration for retry logic."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_failures: List[FailureType] = field(
        default_factory=lambda: [FailureType.NETWORK_TIMEOUT, FailureType.RESOURCE_EXHAUSTION]
    )


_KIND_TO_FAILURE: Dict[ErrorKind, FailureType] = {
    ErrorKind.NETWORK: FailureType.NETWORK_TIMEOUT,
    ErrorKind.AUTHENTICATION: FailureType.AUTHENTICATION_ERROR,
    ErrorKind.VALIDATION: FailureType.DATA_VALIDATION_ERROR,
    ErrorKind.NOT_FOUND: FailureType.DATA_VALIDATION_ERROR,
    ErrorKind.RESOURCE: FailureType.RESOURCE_EXHAUSTION,
    ErrorKind.UNKNOWN: FailureType.UNKNOWN,
}

_STRATEGIES: Dict[FailureType, RecoveryStrategy] = {
    FailureType.NETWORK_TIMEOUT: RecoveryStrategy.RETRY_AFTER_DELAY,
    FailureType.RESOURCE_EXHAUSTION: RecoveryStrategy.RETRY_AFTER_DELAY,
    FailureType.AUTHENTICATION_ERROR: RecoveryStrategy.REFRESH_AUTHENTICATION,
    FailureType.DATA_VALIDATION_ERROR: RecoveryStrategy.ROLLBACK,
    FailureType.UNKNOWN: RecoveryStrategy.ROLLBACK,
}


class ErrorHandler:
    """
    Classifies failures into ``FailureType`` values and logs them.
    """
    
    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._type_mappings = self._build_type_mappings()
    
    def _build_type_mappings(self) -> List[Tuple[Type[BaseException], FailureType]]:
        """Mapping of non-client exception types, checked in order."""
        return [
            (ValidationError, FailureType.DATA_VALIDATION_ERROR),
            (pydantic.ValidationError, FailureType.DATA_VALIDATION_ERROR),
            (ConfigurationError, FailureType.DATA_VALIDATION_ERROR),
            (TimeoutError, FailureType.NETWORK_TIMEOUT),
            (ConnectionError, FailureType.NETWORK_TIMEOUT),
            (MemoryError, FailureType.RESOURCE_EXHAUSTION),
            (PersistenceError, FailureType.RESOURCE_EXHAUSTION),
        ]
    
    def classify_failure(self, error: BaseException) -> FailureType:
        """Classify an exception by its type or structured error kind."""
        if isinstance(error, ClientError):
            return _KIND_TO_FAILURE.get(error.kind, FailureType.UNKNOWN)
        
        for exc_type, failure_type in self._type_mappings:
            if isinstance(error, exc_type):
                return failure_type
        
        return FailureType.UNKNOWN
    
    def recovery_strategy(self, failure_type: FailureType) -> RecoveryStrategy:
        return _STRATEGIES[failure_type]
    
    def handle_error(self, error: Exception, migration_id: Optional[str] = None) -> FailureInfo:
        """
        Classify and log an error.
        
        Args:
            error: The exception that occurred
            migration_id: Job the failure belongs to, if any
            
        Returns:
            FailureInfo with the failure type and the recovery strategy
        """
        failure_type = self.classify_failure(error)
        info = FailureInfo(
            error=error,
            failure_type=failure_type,
            strategy=self.recovery_strategy(failure_type),
            migration_id=migration_id,
            traceback_str="".join(traceback.format_exception(error)),
        )
        self._log_error(info)
        return info
    
    def _log_error(self, info: FailureInfo) -> None:
        log_data = {
            "error_type": type(info.error).__name__,
            "error_message": str(info.error),
            "failure_type": info.failure_type.value,
            "strategy": info.strategy.value,
            "migration_id": info.migration_id,
        }
        if info.is_transient:
            self.logger.warning("Transient failure occurred", extra=log_data)
        else:
            self.logger.error("Failure occurred", extra=log_data)
            self.logger.debug("Failure traceback", extra={"traceback": info.traceback_str})


class RetryHandler:
    """
    Retries an async callable with exponential backoff while its failures
    classify as retryable.
    """
    
    def __init__(self, error_handler: Optional[ErrorHandler] = None):
        self.error_handler = error_handler or ErrorHandler()
        self.logger = logging.getLogger(__name__)
    
    async def retry_with_backoff(
        self,
        func: Callable,
        *args,
        retry_config: Optional[RetryConfig] = None,
        **kwargs
    ) -> Any:
        """
        Execute ``func`` with retry logic and exponential backoff.
        
        Raises:
            The last exception if it is not retryable or all attempts are exhausted
        """
        config = retry_config or RetryConfig()
        attempts = max(config.max_attempts, 1)
        
        for attempt in range(attempts):
            try:
                if inspect.iscoroutinefunction(func):
                    return await func(*args, **kwargs)
                return func(*args, **kwargs)
            except Exception as e:
                failure_type = self.error_handler.classify_failure(e)
                if failure_type not in config.retryable_failures:
                    raise
                if attempt == attempts - 1:
                    raise
                
                delay = min(
                    config.base_delay * (config.exponential_base ** attempt),
                    config.max_delay
                )
                if config.jitter:
                    delay *= (0.5 + random.random() * 0.5)
                
                self.logger.info(
                    f"Retrying in {delay:.2f} seconds (attempt {attempt + 1}/{attempts}): {e}"
                )
                await asyncio.sleep(delay)
