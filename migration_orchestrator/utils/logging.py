"""
Logging setup for the Migration Orchestrator.

This module configures the ``migration_orchestrator`` logger hierarchy
with a Rich console handler or structured JSON output, optional rotating
file output, and provides per-job loggers that write each job's progress
log file.
"""

import json
import logging
import logging.handlers
import sys
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler


ROOT_LOGGER_NAME = "migration_orchestrator"


class LogLevel(str, Enum):
    """Log levels for structured logging."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class LogEntry:
    """Structured log entry kept by managers for later inspection."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    level: LogLevel = LogLevel.INFO
    message: str = ""
    component: Optional[str] = None
    migration_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert log entry to dictionary."""
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        data['level'] = self.level.value
        return data
    
    def to_json(self) -> str:
        """Convert log entry to JSON string."""
        return json.dumps(self.to_dict(), default=str)


_RESERVED_RECORD_KEYS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'getMessage',
    'exc_info', 'exc_text', 'stack_info', 'taskName', 'message',
}


class StructuredFormatter(logging.Formatter):
    """Formatter for structured JSON logging."""
    
    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        entry = LogEntry(
            timestamp=datetime.fromtimestamp(record.created, UTC),
            level=LogLevel(record.levelname) if record.levelname in LogLevel.__members__ else LogLevel.INFO,
            message=record.getMessage(),
            component=record.name,
            metadata={
                'module': record.module,
                'function': record.funcName,
                'line': record.lineno,
            }
        )
        
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                entry.metadata[key] = value
        
        if record.exc_info:
            entry.metadata['exception'] = self.formatException(record.exc_info)
        
        return entry.to_json()


def _plain_formatter() -> logging.Formatter:
    return logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    rich_console: bool = True,
    structured_logging: bool = False,
    log_rotation: bool = True,
    max_log_size: int = 50 * 1024 * 1024,  # 50MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Set up logging for the Migration Orchestrator.
    
    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        rich_console: Whether to use the Rich console handler
        structured_logging: Whether to emit structured JSON
        log_rotation: Whether to rotate the log file
        max_log_size: Maximum log file size before rotation
        backup_count: Number of rotated log files to keep
    
    Returns:
        The configured package logger
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper()))
    
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    
    if rich_console and not structured_logging:
        console_handler = RichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=True,
            rich_tracebacks=True
        )
    else:
        console_handler = logging.StreamHandler(sys.stdout)
        if structured_logging:
            console_handler.setFormatter(StructuredFormatter())
        else:
            console_handler.setFormatter(_plain_formatter())
    
    logger.addHandler(console_handler)
    
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        
        if log_rotation:
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_log_size,
                backupCount=backup_count
            )
        else:
            file_handler = logging.FileHandler(log_file)
        
        if structured_logging:
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(_plain_formatter())
        
        logger.addHandler(file_handler)
    
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a specific component."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


class _JobFilter(logging.Filter):
    """Passes only records tagged with one job's ``migration_id``."""
    
    def __init__(self, migration_id: str):
        super().__init__()
        self.migration_id = migration_id
    
    def filter(self, record: logging.LogRecord) -> bool:
        return getattr(record, "migration_id", None) == self.migration_id


class JobLogger:
    """
    Writes one job's progress log file.
    
    All jobs share the ``migration_orchestrator.jobs`` logger. Each instance
    adds a file handler filtered to its own ``migration_id`` and removes it
    on ``close``. Lines do not propagate to the console handlers.
    """
    
    def __init__(self, migration_id: str, log_file: str, structured: bool = False):
        self.migration_id = migration_id
        self.log_file = log_file
        self.logger = get_logger("jobs")
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False
        
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        
        self._handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding='utf-8'
        )
        if structured:
            self._handler.setFormatter(StructuredFormatter())
        else:
            self._handler.setFormatter(logging.Formatter(
                fmt="[%(asctime)s] %(levelname)s %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S"
            ))
        self._handler.addFilter(_JobFilter(migration_id))
        self.logger.addHandler(self._handler)
        self._closed = False
        self._lock = threading.Lock()
    
    def info(self, message: str, **kwargs):
        self.logger.info(message, extra={"migration_id": self.migration_id, **kwargs})
    
    def warning(self, message: str, **kwargs):
        self.logger.warning(message, extra={"migration_id": self.migration_id, **kwargs})
    
    def error(self, message: str, **kwargs):
        self.logger.error(message, extra={"migration_id": self.migration_id, **kwargs})
    
    def step_update(self, step: str, status: str, details: Optional[str] = None):
        message = f"{step}: {status}"
        if details:
            message += f" - {details}"
        self.info(message, step=step, step_status=status)
    
    def close(self):
        """Detach and close the file handler."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.logger.removeHandler(self._handler)
        self._handler.close()