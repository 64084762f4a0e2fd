"""Utility helpers and logging setup."""

from migration_orchestrator.utils.helpers import (
    format_duration,
    generate_id,
    load_config_file,
    utc_now,
)
from migration_orchestrator.utils.logging import JobLogger, get_logger, setup_logging

__all__ = [
    "JobLogger",
    "format_duration",
    "generate_id",
    "get_logger",
    "load_config_file",
    "setup_logging",
    "utc_now",
]
