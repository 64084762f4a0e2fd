"""
Helper utilities for the Migration Orchestrator.

This module contains small functions shared across the engines: id
generation, timestamps, duration formatting, atomic JSON writes and
configuration file loading.
"""

import json
import os
import tempfile
import uuid
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, Union

import yaml


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def generate_id() -> str:
    """Generate a unique job, schedule or delta id."""
    return str(uuid.uuid4())


def short_suffix() -> str:
    """Short random suffix that keeps same-second ids apart."""
    return uuid.uuid4().hex[:8]


def compact_timestamp(moment: datetime) -> str:
    """``yyyyMMddHHmmss`` form used in backup ids."""
    return moment.strftime("%Y%m%d%H%M%S")


def file_timestamp(moment: datetime) -> str:
    """``yyyyMMdd_HHmmss`` form used in log, report and snapshot file names."""
    return moment.strftime("%Y%m%d_%H%M%S")


def format_duration(seconds: float) -> str:
    """Format duration in seconds to human-readable string."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = seconds / 60
        return f"{minutes:.1f}m"
    else:
        hours = seconds / 3600
        return f"{hours:.1f}h"


def safe_filename(filename: str) -> str:
    """Convert a string to a safe filename."""
    unsafe_chars = '<>:"/\\|?*'
    for char in unsafe_chars:
        filename = filename.replace(char, '_')
    
    filename = filename.strip(' .')
    
    if len(filename) > 255:
        filename = filename[:255]
    
    return filename


def write_json_atomic(file_path: Union[str, Path], data: Any) -> None:
    """
    Write ``data`` as indented JSON, replacing the target in one step.
    
    The content goes to a temp file in the same directory first so a crash
    never leaves a half-written document behind.
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    
    fd, tmp_path = tempfile.mkstemp(dir=file_path.parent, prefix=f".{file_path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp_path, file_path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def read_json(file_path: Union[str, Path]) -> Any:
    with open(file_path, 'r', encoding='utf-8') as f:
        return json.load(f)


def load_config_file(file_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.
    
    Args:
        file_path: Path to configuration file
    
    Returns:
        Configuration dictionary
    
    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the format is unsupported or the content cannot be parsed
    """
    file_path = Path(file_path)
    
    if not file_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {file_path}")
    
    with open(file_path, 'r', encoding='utf-8') as f:
        if file_path.suffix.lower() in ['.yaml', '.yml']:
            try:
                return yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {file_path}: {e}") from e
        elif file_path.suffix.lower() == '.json':
            return json.load(f)
        else:
            raise ValueError(f"Unsupported configuration file format: {file_path.suffix}")
