"""
Rollback and recovery manager for automatic rollback procedures.

This module captures pre-migration snapshots of both systems and restores
them when a migration fails: entities the migration created on the
destination are removed and source entities are put back to their
snapshot values. Classified failures are dispatched to the matching
recovery action.
"""

import asyncio
import logging
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

from migration_orchestrator.clients.base import EntityClient
from migration_orchestrator.core.error_handler import ErrorHandler, FailureType
from migration_orchestrator.core.exceptions import ClientError, ErrorKind, RollbackError
from migration_orchestrator.models.backup import (
    MigrationSnapshot,
    RollbackResult,
    SnapshotInfo,
    SystemState,
)
from migration_orchestrator.utils.helpers import file_timestamp, read_json, utc_now, write_json_atomic
from migration_orchestrator.utils.logging import LogEntry, LogLevel

logger = logging.getLogger(__name__)


def _matches(current: Optional[Dict], record: Dict) -> bool:
    """True when ``current`` holds every field of the snapshot ``record`` unchanged."""
    return current is not None and all(current.get(k) == v for k, v in record.items())


class RollbackStatus(str, Enum):
    """Rollback operation status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class RollbackManager:
    """Main rollback manager for automatic rollback procedures."""

    def __init__(
        self,
        source_client: EntityClient,
        destination_client: EntityClient,
        entity_types: List[str],
        snapshots_path: Union[str, Path],
        error_handler: Optional[ErrorHandler] = None,
        network_retry_delay: float = 5.0,
        resource_retry_delay: float = 10.0
    ):
        self.source_client = source_client
        self.destination_client = destination_client
        self.entity_types = list(entity_types)
        self.snapshots_path = Path(snapshots_path)
        self.snapshots_path.mkdir(parents=True, exist_ok=True)
        self.error_handler = error_handler or ErrorHandler()
        self.network_retry_delay = network_retry_delay
        self.resource_retry_delay = resource_retry_delay

        self._snapshots: Dict[str, MigrationSnapshot] = {}
        self._statuses: Dict[str, RollbackStatus] = {}
        self._rollback_logs: List[LogEntry] = []

    def _log(self, level: LogLevel, message: str, migration_id: Optional[str] = None, **kwargs):
        """Add a log entry."""
        self._rollback_logs.append(LogEntry(
            level=level,
            message=message,
            component="RollbackManager",
            migration_id=migration_id,
            metadata=kwargs
        ))
        logger.log(getattr(logging, level.value), message)

    def get_logs(self, limit: Optional[int] = None) -> List[LogEntry]:
        return self._rollback_logs[-limit:] if limit else list(self._rollback_logs)

    def get_rollback_status(self, migration_id: str) -> Optional[RollbackStatus]:
        return self._statuses.get(migration_id)

    # Snapshots

    async def _capture_state(self, client: EntityClient) -> SystemState:
        entities = {}
        for entity_type in self.entity_types:
            entities[entity_type] = await client.list_entities(entity_type)
        return SystemState(system=client.name, entities=entities, timestamp=utc_now())

    async def create_snapshot(self, migration_id: str) -> RollbackResult:
        """Capture both systems and save ``snapshot_{id}_{ts}.json``."""
        try:
            now = utc_now()
            snapshot_path = self.snapshots_path / f"snapshot_{migration_id}_{file_timestamp(now)}.json"
            snapshot = MigrationSnapshot(
                migration_id=migration_id,
                timestamp=now,
                snapshot_path=str(snapshot_path),
                source_state=await self._capture_state(self.source_client),
                destination_state=await self._capture_state(self.destination_client),
            )
            write_json_atomic(snapshot_path, snapshot.model_dump(mode="json"))
            self._snapshots[migration_id] = snapshot

            self._log(
                LogLevel.INFO,
                f"Snapshot created for migration {migration_id}",
                migration_id,
                source_entities=snapshot.source_state.entity_count,
                destination_entities=snapshot.destination_state.entity_count
            )
            return RollbackResult(
                success=True,
                message="Snapshot created",
                snapshot_path=str(snapshot_path),
            )

        except Exception as e:
            self._log(LogLevel.ERROR, f"Snapshot creation failed: {str(e)}", migration_id)
            return RollbackResult(success=False, message="Failed to create snapshot", error=str(e))

    def _load_snapshot(self, migration_id: str) -> Optional[MigrationSnapshot]:
        snapshot = self._snapshots.get(migration_id)
        if snapshot is not None:
            return snapshot

        for path in sorted(self.snapshots_path.glob(f"snapshot_{migration_id}_*.json"), reverse=True):
            try:
                snapshot = MigrationSnapshot.model_validate(read_json(path))
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable snapshot {path}: {e}")
                continue
            self._snapshots[migration_id] = snapshot
            return snapshot
        return None

    def get_available_snapshots(self) -> List[SnapshotInfo]:
        """List snapshot files, newest first."""
        snapshots = []
        for path in self.snapshots_path.glob("snapshot_*.json"):
            try:
                snapshot = MigrationSnapshot.model_validate(read_json(path))
                info = SnapshotInfo(
                    migration_id=snapshot.migration_id,
                    timestamp=snapshot.timestamp,
                    file_path=str(path),
                    size=path.stat().st_size,
                    is_valid=True,
                )
            except (OSError, ValueError):
                stat = path.stat()
                info = SnapshotInfo(
                    migration_id="",
                    timestamp=datetime.fromtimestamp(stat.st_mtime, UTC),
                    file_path=str(path),
                    size=stat.st_size,
                    is_valid=False,
                )
            snapshots.append(info)
        return sorted(snapshots, key=lambda s: s.timestamp, reverse=True)

    # Rollback

    async def rollback_migration(self, migration_id: str, reason: str = "") -> RollbackResult:
        """
        Return both systems to the migration's snapshot.

        Destination entities absent from the snapshot are deleted and
        source entities that drifted are written back. The result carries
        the outcome of ``validate_rollback``.
        """
        snapshot = self._load_snapshot(migration_id)
        if snapshot is None:
            message = f"No snapshot available for migration {migration_id}"
            self._log(LogLevel.ERROR, message, migration_id)
            return RollbackResult(success=False, message=message, error=message)

        self._statuses[migration_id] = RollbackStatus.IN_PROGRESS
        self._log(LogLevel.INFO, f"Starting rollback of migration {migration_id}: {reason}", migration_id)

        details: List[str] = []
        try:
            details.extend(await self._remove_new_destination_entities(snapshot))
            details.extend(await self._restore_source_entities(snapshot))
        except Exception as e:
            self._statuses[migration_id] = RollbackStatus.PARTIAL if details else RollbackStatus.FAILED
            self._log(LogLevel.ERROR, f"Rollback failed: {str(e)}", migration_id)
            return RollbackResult(
                success=False,
                message=f"Rollback of migration {migration_id} failed",
                error=str(e),
                snapshot_path=snapshot.snapshot_path,
                details=details,
            )

        validation = await self.validate_rollback(migration_id)
        self._statuses[migration_id] = RollbackStatus.COMPLETED if validation.success else RollbackStatus.PARTIAL
        self._log(
            LogLevel.INFO if validation.success else LogLevel.WARNING,
            f"Rollback of migration {migration_id} finished ({len(details)} change(s))",
            migration_id
        )
        return RollbackResult(
            success=validation.success,
            message=f"Rollback completed: {reason}" if validation.success else "Rollback validation failed",
            error=validation.error,
            snapshot_path=snapshot.snapshot_path,
            details=details,
            validation_result=validation,
        )

    async def _remove_new_destination_entities(self, snapshot: MigrationSnapshot) -> List[str]:
        removed = []
        for entity_type in self.entity_types:
            known_ids = set(snapshot.destination_state.entity_ids(entity_type))
            for entity in await self.destination_client.list_entities(entity_type):
                entity_id = str(entity.get("id"))
                if entity_id in known_ids:
                    continue
                try:
                    await self.destination_client.delete_entity(entity_type, entity_id)
                except ClientError as e:
                    if e.kind != ErrorKind.NOT_FOUND:
                        raise
                removed.append(f"deleted {self.destination_client.name}:{entity_type}:{entity_id}")
        return removed

    async def _restore_source_entities(self, snapshot: MigrationSnapshot) -> List[str]:
        restored = []
        for entity_type in self.entity_types:
            current = {
                str(e.get("id")): e for e in await self.source_client.list_entities(entity_type)
            }
            for record in snapshot.source_state.entities.get(entity_type, []):
                entity_id = str(record["id"])
                existing = current.get(entity_id)
                if _matches(existing, record):
                    continue
                if existing is None:
                    await self.source_client.create_entity(entity_type, record)
                else:
                    await self.source_client.update_entity(entity_type, entity_id, record)
                restored.append(f"restored {self.source_client.name}:{entity_type}:{entity_id}")
        return restored

    async def validate_rollback(self, migration_id: str) -> RollbackResult:
        """Check that both systems match the migration's snapshot again."""
        snapshot = self._load_snapshot(migration_id)
        if snapshot is None:
            message = f"No snapshot available for migration {migration_id}"
            return RollbackResult(success=False, message=message, error=message)

        problems = []
        try:
            for entity_type in self.entity_types:
                known_ids = set(snapshot.destination_state.entity_ids(entity_type))
                for entity in await self.destination_client.list_entities(entity_type):
                    if str(entity.get("id")) not in known_ids:
                        problems.append(f"{entity_type} {entity.get('id')} still exists on destination")

                current = {
                    str(e.get("id")): e for e in await self.source_client.list_entities(entity_type)
                }
                for record in snapshot.source_state.entities.get(entity_type, []):
                    if not _matches(current.get(str(record["id"])), record):
                        problems.append(f"{entity_type} {record['id']} differs from snapshot on source")
        except ClientError as e:
            return RollbackResult(success=False, message="Rollback validation could not run", error=str(e))

        if problems:
            return RollbackResult(
                success=False,
                message=f"Rollback validation found {len(problems)} problem(s)",
                error=problems[0],
                snapshot_path=snapshot.snapshot_path,
                details=problems,
            )
        return RollbackResult(
            success=True,
            message="Rollback validated",
            snapshot_path=snapshot.snapshot_path,
        )

    # Recovery

    async def recover_from_failure(self, migration_id: str, error: Exception) -> RollbackResult:
        """
        Run the recovery action for a classified failure.

        Network and resource failures wait before the caller retries,
        authentication failures refresh both clients, and validation or
        unknown failures roll the migration back.
        """
        failure = self.error_handler.handle_error(error, migration_id)
        failure_type = failure.failure_type
        self._log(
            LogLevel.WARNING,
            f"Recovering migration {migration_id} from {failure_type.value}",
            migration_id,
            error=str(error)
        )

        try:
            if failure_type == FailureType.NETWORK_TIMEOUT:
                await asyncio.sleep(self.network_retry_delay)
                result = RollbackResult(
                    success=True,
                    message=f"Waited {self.network_retry_delay}s after network failure; retry the operation",
                )
            elif failure_type == FailureType.RESOURCE_EXHAUSTION:
                await asyncio.sleep(self.resource_retry_delay)
                result = RollbackResult(
                    success=True,
                    message=f"Waited {self.resource_retry_delay}s after resource exhaustion; retry the operation",
                )
            elif failure_type == FailureType.AUTHENTICATION_ERROR:
                await self.source_client.refresh_authentication()
                await self.destination_client.refresh_authentication()
                result = RollbackResult(success=True, message="Authentication refreshed")
            else:
                result = await self.rollback_migration(migration_id, f"Recovery from {failure_type.value}")
        except Exception as e:
            self._log(LogLevel.ERROR, f"Recovery failed: {str(e)}", migration_id)
            result = RollbackResult(success=False, message="Recovery failed", error=str(e))

        result.failure_type = failure_type.value
        return result

    async def rollback_or_raise(self, migration_id: str, reason: str = "") -> RollbackResult:
        """Like ``rollback_migration`` but raises ``RollbackError`` on failure."""
        result = await self.rollback_migration(migration_id, reason)
        if not result.success:
            raise RollbackError(result.error or result.message, details={"details": result.details})
        return result
