"""
Backup manager for creating, validating and restoring backups.

This module provides the BackupManager class that stages snapshots from
every configured strategy, compresses them into one archive per backup
and restores archives along their full/incremental chain.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from migration_orchestrator.backup.storage import METADATA_FILE, BackupStorage, RetentionPolicy
from migration_orchestrator.backup.strategies import SnapshotStrategy, load_metadata_file
from migration_orchestrator.core.exceptions import BackupError
from migration_orchestrator.models.backup import (
    BackupInfo,
    BackupResult,
    BackupSchedule,
    BackupStatus,
    BackupType,
    RestoreResult,
)
from migration_orchestrator.utils.helpers import compact_timestamp, short_suffix, utc_now, write_json_atomic
from migration_orchestrator.utils.logging import LogEntry, LogLevel

logger = logging.getLogger(__name__)


class BackupManager:
    """Main backup manager class for creating and managing backups."""

    def __init__(
        self,
        storage: BackupStorage,
        strategies: Optional[List[SnapshotStrategy]] = None,
        retention_policy: Optional[RetentionPolicy] = None
    ):
        self.storage = storage
        self.strategies = list(strategies or [])
        self.retention_policy = retention_policy or RetentionPolicy()
        self._backup_logs: List[LogEntry] = []

    def _log(self, level: LogLevel, message: str, backup_id: Optional[str] = None, **kwargs):
        """Add a log entry and forward it to the module logger."""
        self._backup_logs.append(LogEntry(
            level=level,
            message=message,
            component="BackupManager",
            migration_id=kwargs.pop("migration_id", None),
            metadata={"backup_id": backup_id, **kwargs}
        ))
        logger.log(getattr(logging, level.value), message)

    def get_logs(self, limit: Optional[int] = None) -> List[LogEntry]:
        return self._backup_logs[-limit:] if limit else list(self._backup_logs)

    # Creation

    async def create_full_backup(self, migration_id: str) -> BackupResult:
        """Back up every subsystem of ``migration_id``."""
        now = utc_now()
        backup_id = f"backup_{migration_id}_{compact_timestamp(now)}_{short_suffix()}"
        return await self._create_backup(migration_id, backup_id, BackupType.FULL, now)

    async def create_incremental_backup(
        self,
        migration_id: str,
        parent_backup_id: Optional[str] = None
    ) -> BackupResult:
        """
        Back up only what changed since a parent backup.

        Without an explicit parent the newest completed backup of the job is
        used; when the job has none, a full backup is created instead.
        """
        if parent_backup_id:
            try:
                parent = self.storage.load_info(parent_backup_id)
            except BackupError as e:
                return BackupResult(success=False, message=str(e), error=str(e))
            if parent is None or parent.status != BackupStatus.COMPLETED:
                message = f"Parent backup {parent_backup_id} is not a completed backup"
                self._log(LogLevel.ERROR, message, parent_backup_id, migration_id=migration_id)
                return BackupResult(success=False, message=message, error=message)
        else:
            parent = self._latest_completed(migration_id)
            if parent is None:
                self._log(
                    LogLevel.INFO,
                    f"No completed backup for {migration_id}; creating a full backup instead",
                    migration_id=migration_id
                )
                return await self.create_full_backup(migration_id)

        now = utc_now()
        backup_id = f"incremental_{migration_id}_{compact_timestamp(now)}_{short_suffix()}"
        return await self._create_backup(migration_id, backup_id, BackupType.INCREMENTAL, now, parent)

    async def _create_backup(
        self,
        migration_id: str,
        backup_id: str,
        backup_type: BackupType,
        now: datetime,
        parent: Optional[BackupInfo] = None
    ) -> BackupResult:
        since = parent.created_at if parent else None
        backup_info = BackupInfo(
            backup_id=backup_id,
            migration_id=migration_id,
            backup_type=backup_type,
            status=BackupStatus.IN_PROGRESS,
            created_at=now,
            parent_backup_id=parent.backup_id if parent else None,
            description=f"{backup_type.value.capitalize()} backup of migration {migration_id}",
        )
        archive_path = self.storage.archive_path(backup_id)
        stage_dir = self.storage.create_stage_dir(backup_id)

        self._log(LogLevel.INFO, f"Starting {backup_type.value} backup", backup_id, migration_id=migration_id)

        try:
            captured: Dict[str, int] = {}
            for strategy in self.strategies:
                target_dir = stage_dir / strategy.folder
                target_dir.mkdir(parents=True, exist_ok=True)
                items = await strategy.capture(target_dir, migration_id, since)
                captured[strategy.name] = len(items)

            backup_info.metadata = {
                "captured": captured,
                "since": since.isoformat() if since else None,
            }
            write_json_atomic(stage_dir / METADATA_FILE, {
                "backup": backup_info.model_dump(mode="json"),
                "strategies": [s.name for s in self.strategies],
            })

            self.storage.compress(stage_dir, archive_path)
            if not self.storage.is_valid_archive(archive_path):
                raise BackupError(f"Archive {archive_path.name} failed validation after compression")

            backup_info.status = BackupStatus.COMPLETED
            backup_info.completed_at = utc_now()
            backup_info.backup_file_path = str(archive_path)
            backup_info.backup_size = archive_path.stat().st_size
            self.storage.save_info(backup_info)

            self._log(
                LogLevel.INFO,
                f"Backup {backup_id} created",
                backup_id,
                migration_id=migration_id,
                size=backup_info.backup_size
            )
            return BackupResult(
                success=True,
                backup_id=backup_id,
                backup_info=backup_info,
                message=f"{backup_type.value.capitalize()} backup created",
            )

        except Exception as e:
            self._log(LogLevel.ERROR, f"Backup creation failed: {str(e)}", backup_id, migration_id=migration_id)
            backup_info.status = BackupStatus.FAILED
            backup_info.metadata["error"] = str(e)
            archive_path.unlink(missing_ok=True)
            try:
                self.storage.save_info(backup_info)
            except BackupError as save_error:
                logger.error(f"Could not record failed backup {backup_id}: {save_error}")
            return BackupResult(
                success=False,
                backup_id=backup_id,
                backup_info=backup_info,
                message=f"Failed to create {backup_type.value} backup: {str(e)}",
                error=str(e),
            )
        finally:
            self.storage.cleanup_stage(stage_dir)

    async def create_scheduled_backup(self, migration_id: str, schedule: BackupSchedule) -> BackupResult:
        """Create the backup type a schedule asks for and apply its retention."""
        if not schedule.is_active:
            message = f"Backup schedule {schedule.schedule_id} is inactive"
            return BackupResult(success=False, message=message, error=message)

        if schedule.backup_type == BackupType.FULL:
            result = await self.create_full_backup(migration_id)
        else:
            result = await self.create_incremental_backup(migration_id)

        schedule.next_run = utc_now() + schedule.interval
        if result.success:
            await self.cleanup_expired_backups(
                migration_id,
                RetentionPolicy(max_age_days=schedule.max_retention_days)
            )
        return result

    # Restore

    def resolve_backup_chain(self, backup_id: str) -> List[BackupInfo]:
        """
        Walk parent links from ``backup_id`` to the nearest full backup.

        Returns:
            The chain ordered oldest (full) first

        Raises:
            BackupError: If a link is missing, not completed, or the chain loops
        """
        chain: List[BackupInfo] = []
        seen = set()
        current_id: Optional[str] = backup_id

        while current_id:
            if current_id in seen:
                raise BackupError(f"Backup chain of {backup_id} loops at {current_id}")
            seen.add(current_id)

            info = self.storage.load_info(current_id)
            if info is None:
                raise BackupError(f"Backup {current_id} in the chain of {backup_id} not found")
            if info.status != BackupStatus.COMPLETED:
                raise BackupError(f"Backup {current_id} in the chain of {backup_id} is {info.status.value}")
            chain.append(info)

            if info.backup_type == BackupType.FULL:
                break
            if not info.parent_backup_id:
                raise BackupError(f"Incremental backup {current_id} has no parent")
            current_id = info.parent_backup_id

        chain.reverse()
        return chain

    async def restore_from_backup(self, backup_id: str) -> RestoreResult:
        """
        Restore a backup, replaying its ancestors first for incremental backups.

        Never raises; failures are reported on the result.
        """
        try:
            info = self.storage.load_info(backup_id)
        except BackupError as e:
            return RestoreResult(success=False, backup_id=backup_id, message=str(e), error=str(e))

        if info is None:
            message = f"Backup {backup_id} not found"
            self._log(LogLevel.WARNING, message, backup_id)
            return RestoreResult(success=False, backup_id=backup_id, message=message, error=message)

        self._log(LogLevel.INFO, f"Starting restore of backup {backup_id}", backup_id, migration_id=info.migration_id)

        try:
            chain = self.resolve_backup_chain(backup_id)
            for link in chain:
                if not await self.validate_backup(link.backup_id):
                    raise BackupError(f"Backup {link.backup_id} failed validation")

            restored_items: List[str] = []
            for link in chain:
                restored_items.extend(await self._restore_archive(link))

            self._log(
                LogLevel.INFO,
                f"Backup {backup_id} restored ({len(chain)} archive(s), {len(restored_items)} item(s))",
                backup_id,
                migration_id=info.migration_id
            )
            return RestoreResult(
                success=True,
                backup_id=backup_id,
                restored_at=utc_now(),
                message=f"Backup restored from {len(chain)} archive(s)",
                restored_items=restored_items,
            )

        except Exception as e:
            self._log(LogLevel.ERROR, f"Restore failed: {str(e)}", backup_id, migration_id=info.migration_id)
            return RestoreResult(
                success=False,
                backup_id=backup_id,
                message=f"Failed to restore backup {backup_id}: {str(e)}",
                error=str(e),
            )

    async def _restore_archive(self, backup_info: BackupInfo) -> List[str]:
        restore_dir = self.storage.create_stage_dir(f"restore_{backup_info.backup_id}")
        try:
            self.storage.extract(self.storage.archive_path(backup_info.backup_id), restore_dir)
            metadata = load_metadata_file(restore_dir, METADATA_FILE)
            if metadata.get("backup", {}).get("backup_id") != backup_info.backup_id:
                raise BackupError(f"Archive metadata does not belong to backup {backup_info.backup_id}")

            restored = []
            for strategy in self.strategies:
                items = await strategy.restore(restore_dir / strategy.folder, backup_info.migration_id)
                restored.extend(f"{backup_info.backup_id}/{strategy.name}/{item}" for item in items)
            return restored
        finally:
            self.storage.cleanup_stage(restore_dir)

    # Queries and maintenance

    async def validate_backup(self, backup_id: str) -> bool:
        """Structural check of a backup archive; marks a broken completed backup corrupted."""
        try:
            info = self.storage.load_info(backup_id)
        except BackupError:
            return False
        if info is None:
            return False

        valid = self.storage.is_valid_archive(self.storage.archive_path(backup_id))
        if not valid and info.status == BackupStatus.COMPLETED:
            self._log(LogLevel.WARNING, f"Backup {backup_id} is corrupted", backup_id)
            self.storage.mark_status(info, BackupStatus.CORRUPTED)
        return valid

    async def delete_backup(self, backup_id: str) -> bool:
        """Delete a backup's archive and info file."""
        removed = self.storage.delete(backup_id)
        if removed:
            self._log(LogLevel.INFO, f"Backup {backup_id} deleted", backup_id)
        return removed

    async def list_backups(self, migration_id: Optional[str] = None) -> List[BackupInfo]:
        """List backups, newest first."""
        infos = self.storage.list_infos()
        if migration_id is not None:
            infos = [i for i in infos if i.migration_id == migration_id]
        return sorted(infos, key=lambda i: i.created_at, reverse=True)

    async def get_backup_info(self, backup_id: str) -> Optional[BackupInfo]:
        try:
            return self.storage.load_info(backup_id)
        except BackupError:
            return None

    async def get_backup_size(self, backup_id: str) -> int:
        return self.storage.archive_size(backup_id)

    async def cleanup_expired_backups(
        self,
        migration_id: Optional[str] = None,
        policy: Optional[RetentionPolicy] = None
    ) -> List[str]:
        """Delete backups the retention policy no longer keeps; returns their ids."""
        policy = policy or self.retention_policy
        backups = await self.list_backups(migration_id)
        removed = []
        for info in policy.select_expired(backups):
            if await self.delete_backup(info.backup_id):
                removed.append(info.backup_id)
        if removed:
            self._log(LogLevel.INFO, f"Removed {len(removed)} expired backup(s)", migration_id=migration_id)
        return removed

    def _latest_completed(self, migration_id: str) -> Optional[BackupInfo]:
        completed = [
            i for i in self.storage.list_infos()
            if i.migration_id == migration_id and i.status == BackupStatus.COMPLETED
        ]
        return max(completed, key=lambda i: i.created_at, default=None)
