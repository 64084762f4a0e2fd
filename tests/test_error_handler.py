"""
Unit tests for failure classification and retry handling.
"""

import logging
from unittest.mock import AsyncMock, Mock

import pytest

from migration_orchestrator.core.error_handler import (
    ErrorHandler,
    FailureType,
    RecoveryStrategy,
    RetryConfig,
    RetryHandler,
)
from migration_orchestrator.core.exceptions import (
    AuthenticationError,
    ClientError,
    ConfigurationError,
    ErrorKind,
    InvalidStateTransitionError,
    NetworkError,
    PersistenceError,
    ResourceError,
    ValidationError,
)


class TestErrorHandler:
    """Test cases for ErrorHandler class."""

    def setup_method(self):
        self.logger = Mock(spec=logging.Logger)
        self.error_handler = ErrorHandler(logger=self.logger)

    @pytest.mark.parametrize("error, expected", [
        (NetworkError("timed out"), FailureType.NETWORK_TIMEOUT),
        (AuthenticationError("token expired"), FailureType.AUTHENTICATION_ERROR),
        (ResourceError("quota"), FailureType.RESOURCE_EXHAUSTION),
        (ClientError("bad payload", kind=ErrorKind.VALIDATION), FailureType.DATA_VALIDATION_ERROR),
        (ClientError("gone", kind=ErrorKind.NOT_FOUND), FailureType.DATA_VALIDATION_ERROR),
        (ClientError("???"), FailureType.UNKNOWN),
        (TimeoutError(), FailureType.NETWORK_TIMEOUT),
        (ConnectionResetError(), FailureType.NETWORK_TIMEOUT),
        (MemoryError(), FailureType.RESOURCE_EXHAUSTION),
        (PersistenceError("disk full"), FailureType.RESOURCE_EXHAUSTION),
        (ValidationError("bad", failed_checks=["name"]), FailureType.DATA_VALIDATION_ERROR),
        (ConfigurationError("bad"), FailureType.DATA_VALIDATION_ERROR),
        (RuntimeError("boom"), FailureType.UNKNOWN),
    ])
    def test_classify_failure(self, error, expected):
        assert self.error_handler.classify_failure(error) == expected

    def test_classification_ignores_message_text(self):
        """A generic error mentioning a timeout is still unknown."""
        error = RuntimeError("network timeout while calling the API")
        assert self.error_handler.classify_failure(error) == FailureType.UNKNOWN

    def test_recovery_strategies(self):
        assert self.error_handler.recovery_strategy(FailureType.NETWORK_TIMEOUT) == RecoveryStrategy.RETRY_AFTER_DELAY
        assert self.error_handler.recovery_strategy(FailureType.RESOURCE_EXHAUSTION) == RecoveryStrategy.RETRY_AFTER_DELAY
        assert (
            self.error_handler.recovery_strategy(FailureType.AUTHENTICATION_ERROR)
            == RecoveryStrategy.REFRESH_AUTHENTICATION
        )
        assert self.error_handler.recovery_strategy(FailureType.DATA_VALIDATION_ERROR) == RecoveryStrategy.ROLLBACK
        assert self.error_handler.recovery_strategy(FailureType.UNKNOWN) == RecoveryStrategy.ROLLBACK

    def test_handle_error_logs_transient_as_warning(self):
        info = self.error_handler.handle_error(NetworkError("timed out"), "job-1")

        assert info.failure_type == FailureType.NETWORK_TIMEOUT
        assert info.is_transient
        assert info.migration_id == "job-1"
        assert "NetworkError" in info.traceback_str
        self.logger.warning.assert_called_once()
        self.logger.error.assert_not_called()

    def test_handle_error_logs_permanent_as_error(self):
        info = self.error_handler.handle_error(RuntimeError("boom"))

        assert not info.is_transient
        self.logger.error.assert_called_once()


class TestExceptions:

    def test_default_code_is_class_name(self):
        error = ClientError("bad", kind=ErrorKind.RESOURCE)
        assert error.code == "ClientError"
        assert error.kind == ErrorKind.RESOURCE
        assert error.details == {}

    def test_invalid_state_transition_message(self):
        error = InvalidStateTransitionError("b1", "completed", "paused")
        assert "b1" in str(error)
        assert error.current == "completed"
        assert error.requested == "paused"


class TestRetryHandler:
    """Test cases for RetryHandler class."""

    def setup_method(self):
        self.retry_handler = RetryHandler(ErrorHandler(logger=Mock(spec=logging.Logger)))
        self.config = RetryConfig(max_attempts=3, base_delay=0.0, jitter=False)

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self):
        func = AsyncMock(return_value="ok")

        result = await self.retry_handler.retry_with_backoff(func, "a", retry_config=self.config)

        assert result == "ok"
        func.assert_awaited_once_with("a")

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self):
        func = AsyncMock(side_effect=[NetworkError("t1"), ResourceError("t2"), "ok"])

        result = await self.retry_handler.retry_with_backoff(func, retry_config=self.config)

        assert result == "ok"
        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        func = AsyncMock(side_effect=NetworkError("down"))

        with pytest.raises(NetworkError):
            await self.retry_handler.retry_with_backoff(func, retry_config=self.config)
        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_does_not_retry_permanent_failures(self):
        func = AsyncMock(side_effect=ClientError("invalid", kind=ErrorKind.VALIDATION))

        with pytest.raises(ClientError):
            await self.retry_handler.retry_with_backoff(func, retry_config=self.config)
        func.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sync_callable(self):
        result = await self.retry_handler.retry_with_backoff(lambda x: x * 2, 21, retry_config=self.config)
        assert result == 42
