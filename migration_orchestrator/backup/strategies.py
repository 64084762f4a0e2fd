"""
Snapshot strategies for the parts of a backup.

Each strategy captures one subsystem into its own folder of the staging
directory and knows how to re-apply that folder on restore: platform
configuration of the source and destination clients, the persisted job
document, and the job's log and report files.
"""

import json
import logging
import shutil
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from migration_orchestrator.clients.base import EntityClient, entity_changed_since
from migration_orchestrator.core.exceptions import BackupError, ClientError, ErrorKind
from migration_orchestrator.persistence.state_store import StateStore
from migration_orchestrator.utils.helpers import read_json, utc_now, write_json_atomic

logger = logging.getLogger(__name__)


class SnapshotStrategy(ABC):
    """Abstract base class for backup snapshot strategies."""

    #: Folder inside the staging directory owned by this strategy
    folder: str = ""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def capture(
        self,
        target_dir: Path,
        migration_id: str,
        since: Optional[datetime] = None
    ) -> List[str]:
        """
        Write this subsystem's snapshot into ``target_dir``.

        Args:
            target_dir: Folder to write into (created by the caller)
            migration_id: Job being backed up
            since: For incremental backups, only capture changes after this time

        Returns:
            Names of the captured items
        """
        pass

    @abstractmethod
    async def restore(self, source_dir: Path, migration_id: str) -> List[str]:
        """Re-apply a snapshot previously written by ``capture``; returns restored item names."""
        pass


class EntityConfigStrategy(SnapshotStrategy):
    """Captures the configuration entities held by one platform client."""

    def __init__(self, client: EntityClient, entity_types: List[str], folder: str, file_name: str):
        self.client = client
        self.entity_types = list(entity_types)
        self.folder = folder
        self.file_name = file_name

    @property
    def name(self) -> str:
        return f"{self.folder}_config"

    async def capture(self, target_dir: Path, migration_id: str, since: Optional[datetime] = None) -> List[str]:
        entities: Dict[str, List[Dict[str, Any]]] = {}
        captured = []
        for entity_type in self.entity_types:
            records = await self.client.list_entities(entity_type)
            if since is not None:
                records = [r for r in records if entity_changed_since(r, since)]
            entities[entity_type] = records
            captured.extend(f"{entity_type}:{r.get('id')}" for r in records)

        write_json_atomic(target_dir / self.file_name, {
            "system": self.client.name,
            "migration_id": migration_id,
            "captured_at": utc_now().isoformat(),
            "since": since.isoformat() if since else None,
            "entities": entities,
        })
        return captured

    async def restore(self, source_dir: Path, migration_id: str) -> List[str]:
        snapshot_file = source_dir / self.file_name
        if not snapshot_file.exists():
            return []

        snapshot = read_json(snapshot_file)
        restored = []
        for entity_type, records in snapshot.get("entities", {}).items():
            for record in records:
                entity_id = str(record["id"])
                try:
                    await self.client.update_entity(entity_type, entity_id, record)
                except ClientError as e:
                    if e.kind != ErrorKind.NOT_FOUND:
                        raise
                    await self.client.create_entity(entity_type, record)
                restored.append(f"{self.client.name}:{entity_type}:{entity_id}")
        return restored


class MigrationDataStrategy(SnapshotStrategy):
    """Captures the persisted batch or incremental job document."""

    folder = "migration-data"
    file_name = "migration_data.json"

    def __init__(self, state_store: StateStore):
        self.state_store = state_store

    @property
    def name(self) -> str:
        return "migration_data"

    async def capture(self, target_dir: Path, migration_id: str, since: Optional[datetime] = None) -> List[str]:
        payload = await self.state_store.load_job_document(migration_id)
        if payload is None:
            logger.info(f"No persisted job state for {migration_id}; migration data snapshot is empty")
            payload = {"kind": None, "document": None}
        write_json_atomic(target_dir / self.file_name, payload)
        return [f"{payload['kind']}:{migration_id}"] if payload["kind"] else []

    async def restore(self, source_dir: Path, migration_id: str) -> List[str]:
        data_file = source_dir / self.file_name
        if not data_file.exists():
            return []
        payload = read_json(data_file)
        if not payload.get("kind"):
            return []
        path = await self.state_store.restore_job_document(migration_id, payload)
        return [str(path.name)]


class LogsStrategy(SnapshotStrategy):
    """Copies the job's progress logs and reports."""

    folder = "logs"

    def __init__(self, logs_path: Path):
        self.logs_path = Path(logs_path)

    @property
    def name(self) -> str:
        return "logs"

    def _job_files(self, migration_id: str) -> List[Path]:
        patterns = (f"migration_{migration_id}_*.log", f"report_{migration_id}_*.json")
        files: List[Path] = []
        for pattern in patterns:
            files.extend(sorted(self.logs_path.glob(pattern)))
        return files

    async def capture(self, target_dir: Path, migration_id: str, since: Optional[datetime] = None) -> List[str]:
        target_dir.mkdir(parents=True, exist_ok=True)
        captured = []
        for path in self._job_files(migration_id):
            if since is not None and datetime.fromtimestamp(path.stat().st_mtime, since.tzinfo) <= since:
                continue
            shutil.copy2(path, target_dir / path.name)
            captured.append(path.name)
        return captured

    async def restore(self, source_dir: Path, migration_id: str) -> List[str]:
        if not source_dir.exists():
            return []
        self.logs_path.mkdir(parents=True, exist_ok=True)
        restored = []
        for path in sorted(source_dir.iterdir()):
            if path.is_file():
                shutil.copy2(path, self.logs_path / path.name)
                restored.append(path.name)
        return restored


def load_metadata_file(stage_dir: Path, metadata_file: str) -> Dict[str, Any]:
    path = stage_dir / metadata_file
    if not path.exists():
        raise BackupError(f"Backup metadata {metadata_file} is missing")
    try:
        return read_json(path)
    except (OSError, json.JSONDecodeError) as e:
        raise BackupError(f"Backup metadata is unreadable: {str(e)}") from e


def default_strategies(
    source_client: EntityClient,
    destination_client: EntityClient,
    entity_types: List[str],
    state_store: StateStore
) -> List[SnapshotStrategy]:
    """Strategies for the standard backup layout: both platforms, job data and logs."""
    return [
        EntityConfigStrategy(source_client, entity_types, "source", "source_config.json"),
        EntityConfigStrategy(destination_client, entity_types, "destination", "destination_config.json"),
        MigrationDataStrategy(state_store),
        LogsStrategy(state_store.logs_path),
    ]
