"""
JSON persistence for job, schedule and backup state.

Each concern owns one directory under the base path and each record is
one JSON document, written atomically so that the last persisted state
always parses.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError as PydanticValidationError

from migration_orchestrator.core.exceptions import PersistenceError
from migration_orchestrator.models.jobs import BatchJob, IncrementalJob, MigrationSchedule
from migration_orchestrator.utils.helpers import read_json, safe_filename, write_json_atomic

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class StateStore:
    """
    Directory-per-concern JSON store.

    Layout under ``base_path``::

        batch-migrations/batch_{id}.json
        incremental-migrations/incremental_{id}.json
        incremental-migrations/schedule_{id}.json
        migration-backups/{backup_id}.zip, {backup_id}.info.json
        migration-logs/migration_{id}_{ts}.log, report_{id}_{ts}.json
        rollback-snapshots/snapshot_{id}_{ts}.json
    """

    BATCH_DIR = "batch-migrations"
    INCREMENTAL_DIR = "incremental-migrations"
    BACKUP_DIR = "migration-backups"
    LOG_DIR = "migration-logs"
    SNAPSHOT_DIR = "rollback-snapshots"

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path)
        for directory in (
            self.batch_path,
            self.incremental_path,
            self.backups_path,
            self.logs_path,
            self.snapshots_path,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    @property
    def batch_path(self) -> Path:
        return self.base_path / self.BATCH_DIR

    @property
    def incremental_path(self) -> Path:
        return self.base_path / self.INCREMENTAL_DIR

    @property
    def backups_path(self) -> Path:
        return self.base_path / self.BACKUP_DIR

    @property
    def logs_path(self) -> Path:
        return self.base_path / self.LOG_DIR

    @property
    def snapshots_path(self) -> Path:
        return self.base_path / self.SNAPSHOT_DIR

    def batch_file(self, batch_id: str) -> Path:
        return self.batch_path / f"batch_{safe_filename(batch_id)}.json"

    def incremental_file(self, migration_id: str) -> Path:
        return self.incremental_path / f"incremental_{safe_filename(migration_id)}.json"

    def schedule_file(self, schedule_id: str) -> Path:
        return self.incremental_path / f"schedule_{safe_filename(schedule_id)}.json"

    # Generic read/write

    def _save(self, path: Path, model: BaseModel) -> None:
        try:
            write_json_atomic(path, model.model_dump(mode="json"))
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write {path}: {e}", details={"path": str(path)}) from e

    def _load(self, path: Path, model_cls: Type[ModelT]) -> Optional[ModelT]:
        if not path.exists():
            return None
        try:
            return model_cls.model_validate(read_json(path))
        except (OSError, ValueError, PydanticValidationError) as e:
            logger.error(f"Unreadable state file {path}: {e}")
            return None

    def _list(self, directory: Path, pattern: str, model_cls: Type[ModelT]) -> List[ModelT]:
        records = []
        for path in sorted(directory.glob(pattern)):
            record = self._load(path, model_cls)
            if record is not None:
                records.append(record)
        return records

    # Batch jobs

    async def save_batch_job(self, job: BatchJob) -> None:
        self._save(self.batch_file(job.batch_id), job)

    async def load_batch_job(self, batch_id: str) -> Optional[BatchJob]:
        return self._load(self.batch_file(batch_id), BatchJob)

    async def list_batch_jobs(self) -> List[BatchJob]:
        return self._list(self.batch_path, "batch_*.json", BatchJob)

    # Incremental jobs

    async def save_incremental_job(self, job: IncrementalJob) -> None:
        self._save(self.incremental_file(job.migration_id), job)

    async def load_incremental_job(self, migration_id: str) -> Optional[IncrementalJob]:
        return self._load(self.incremental_file(migration_id), IncrementalJob)

    async def list_incremental_jobs(self) -> List[IncrementalJob]:
        return self._list(self.incremental_path, "incremental_*.json", IncrementalJob)

    # Schedules

    async def save_schedule(self, schedule: MigrationSchedule) -> None:
        self._save(self.schedule_file(schedule.schedule_id), schedule)

    async def load_schedule(self, schedule_id: str) -> Optional[MigrationSchedule]:
        return self._load(self.schedule_file(schedule_id), MigrationSchedule)

    async def list_schedules(self) -> List[MigrationSchedule]:
        return self._list(self.incremental_path, "schedule_*.json", MigrationSchedule)

    # Raw job documents, used by backups

    async def load_job_document(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Return the persisted batch or incremental document for ``job_id``."""
        for kind, path in (("batch", self.batch_file(job_id)), ("incremental", self.incremental_file(job_id))):
            if path.exists():
                try:
                    return {"kind": kind, "document": read_json(path)}
                except (OSError, ValueError) as e:
                    raise PersistenceError(f"Failed to read {path}: {e}") from e
        return None

    async def restore_job_document(self, job_id: str, payload: Dict[str, Any]) -> Path:
        """Write back a document previously returned by ``load_job_document``."""
        kind = payload.get("kind")
        document = payload.get("document")
        if kind == "batch":
            path = self.batch_file(job_id)
            model = BatchJob.model_validate(document)
        elif kind == "incremental":
            path = self.incremental_file(job_id)
            model = IncrementalJob.model_validate(document)
        else:
            raise PersistenceError(f"Unknown job document kind: {kind}")
        self._save(path, model)
        return path
