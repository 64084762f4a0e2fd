"""
Configuration models for the Migration Orchestrator.

This module defines the Pydantic model for the orchestrator settings:
filesystem layout, loop periods, retry/backoff delays, backup retention
and logging.
"""

from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Union

from pydantic import BaseModel, Field, field_validator, ConfigDict

from migration_orchestrator.core.exceptions import ConfigurationError


DEFAULT_ENTITY_TYPES = [
    "Workstream",
    "Queue",
    "RoutingRule",
    "BotConfiguration",
    "Agent",
    "Skill",
]


class LoggingSettings(BaseModel):
    """Logging configuration passed to ``setup_logging``."""
    level: str = "INFO"
    log_file: Optional[str] = None
    rich_console: bool = True
    structured_logging: bool = False
    log_rotation: bool = True

    @field_validator('level')
    @classmethod
    def level_must_be_known(cls, v):
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f'Unknown log level: {v}')
        return level


class RetentionSettings(BaseModel):
    """Backup retention limits; ``None`` disables a limit."""
    max_backups: Optional[int] = None
    max_age_days: Optional[int] = 30


class OrchestratorConfig(BaseModel):
    """Complete orchestrator configuration."""
    base_path: str = "."
    temp_path: Optional[str] = None
    entity_types: List[str] = Field(default_factory=lambda: list(DEFAULT_ENTITY_TYPES))

    # Incremental engine
    default_sync_interval: timedelta = timedelta(hours=1)
    sync_retry_delay: float = 60.0
    max_sync_cycle_retries: Optional[int] = None
    heartbeat_interval: float = 60.0

    # Monitoring
    stall_threshold_minutes: float = 10.0
    health_check_interval: float = 30.0

    # Scheduler
    scheduler_tick_interval: float = 60.0

    # Recovery
    network_retry_delay: float = 5.0
    resource_retry_delay: float = 10.0

    retention: RetentionSettings = Field(default_factory=RetentionSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = ConfigDict(
        ser_json_timedelta='iso8601'
    )

    @field_validator('entity_types')
    @classmethod
    def entity_types_must_not_be_empty(cls, v):
        if not v:
            raise ValueError('At least one entity type must be configured')
        return v

    @field_validator(
        'sync_retry_delay',
        'heartbeat_interval',
        'stall_threshold_minutes',
        'health_check_interval',
        'scheduler_tick_interval',
        'network_retry_delay',
        'resource_retry_delay',
    )
    @classmethod
    def must_not_be_negative(cls, v):
        if v < 0:
            raise ValueError('Intervals and delays must not be negative')
        return v

    @field_validator('max_sync_cycle_retries')
    @classmethod
    def retries_must_be_positive(cls, v):
        if v is not None and v < 1:
            raise ValueError('max_sync_cycle_retries must be at least 1')
        return v

    @property
    def root(self) -> Path:
        return Path(self.base_path)

    @classmethod
    def from_file(cls, file_path: Union[str, Path]) -> "OrchestratorConfig":
        """Load configuration from a YAML or JSON file."""
        from migration_orchestrator.utils.helpers import load_config_file

        try:
            data = load_config_file(file_path)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot load configuration from {file_path}: {e}") from e
        return cls(**(data or {}))
