"""
Pytest configuration and fixtures for the Migration Orchestrator tests.

Provides temporary state directories, in-memory platform clients with
sample entities and ready-wired engines configured for fast runs.
"""

import tempfile
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, Dict, List

import pytest

from migration_orchestrator.backup.manager import BackupManager
from migration_orchestrator.backup.rollback import RollbackManager
from migration_orchestrator.backup.storage import BackupStorage
from migration_orchestrator.backup.strategies import default_strategies
from migration_orchestrator.clients.base import SourceChangeDetector
from migration_orchestrator.clients.memory import InMemoryEntityClient
from migration_orchestrator.models.jobs import BatchConfiguration, BatchItem
from migration_orchestrator.monitoring.progress_monitor import ProgressMonitor
from migration_orchestrator.persistence.job_store import JobStore
from migration_orchestrator.persistence.state_store import StateStore

ENTITY_TYPES = ["Queue", "Skill"]

T0 = datetime(2024, 1, 1, tzinfo=UTC)


def sample_entities() -> Dict[str, List[Dict[str, Any]]]:
    """Five source entities, all created after ``T0``."""
    return {
        "Queue": [
            {"id": "q1", "name": "Support", "created_at": (T0 + timedelta(hours=1)).isoformat()},
            {"id": "q2", "name": "Sales", "created_at": (T0 + timedelta(hours=2)).isoformat()},
            {"id": "q3", "name": "Billing", "created_at": (T0 + timedelta(hours=3)).isoformat()},
        ],
        "Skill": [
            {"id": "s1", "name": "English", "created_at": (T0 + timedelta(hours=4)).isoformat()},
            {"id": "s2", "name": "Spanish", "created_at": (T0 + timedelta(hours=5)).isoformat()},
        ],
    }


def make_items(count: int, item_type: str = "Queue") -> List[BatchItem]:
    return [
        BatchItem(item_id=f"item-{i}", item_type=item_type, data={"id": f"item-{i}", "name": f"Item {i}"})
        for i in range(count)
    ]


def fast_configuration(**kwargs) -> BatchConfiguration:
    return BatchConfiguration(processing_delay_ms=0, **kwargs)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def state_store(temp_dir):
    return StateStore(temp_dir / "state")


@pytest.fixture
def job_store():
    return JobStore()


@pytest.fixture
def monitor(state_store):
    monitor = ProgressMonitor(state_store.logs_path)
    yield monitor
    for job_logger in list(monitor._job_loggers.values()):
        job_logger.close()


@pytest.fixture
def source_client():
    return InMemoryEntityClient("source", sample_entities())


@pytest.fixture
def destination_client():
    return InMemoryEntityClient("destination")


@pytest.fixture
def change_detector(source_client):
    return SourceChangeDetector(source_client, ENTITY_TYPES)


@pytest.fixture
def backup_storage(temp_dir):
    return BackupStorage(temp_dir / "backups", temp_dir / "tmp")


@pytest.fixture
def backup_manager(backup_storage, source_client, destination_client, state_store):
    return BackupManager(
        backup_storage,
        strategies=default_strategies(source_client, destination_client, ENTITY_TYPES, state_store),
    )


@pytest.fixture
def rollback_manager(source_client, destination_client, state_store):
    return RollbackManager(
        source_client,
        destination_client,
        ENTITY_TYPES,
        state_store.snapshots_path,
        network_retry_delay=0,
        resource_retry_delay=0,
    )
