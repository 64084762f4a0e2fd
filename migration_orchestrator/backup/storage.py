"""
Backup storage management with retention policies.

This module owns the on-disk layout of backups (zip archive plus info
sidecar per backup), staging directories, archive compression and
structural validation, and the retention policy applied on cleanup.
"""

import json
import os
import shutil
import tempfile
import zipfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Union

from migration_orchestrator.core.exceptions import BackupError
from migration_orchestrator.models.backup import BackupInfo, BackupStatus
from migration_orchestrator.utils.helpers import read_json, safe_filename, utc_now, write_json_atomic

METADATA_FILE = "backup_metadata.json"


class RetentionPolicy:
    """Defines backup retention policies."""

    def __init__(
        self,
        max_backups: Optional[int] = None,
        max_age_days: Optional[int] = None
    ):
        self.max_backups = max_backups
        self.max_age_days = max_age_days

    def should_retain(
        self,
        backup_info: BackupInfo,
        all_backups: List[BackupInfo],
        now: Optional[datetime] = None
    ) -> bool:
        """Determine if a backup should be retained based on policy."""
        now = now or utc_now()

        if self.max_age_days is not None:
            if now - backup_info.created_at > timedelta(days=self.max_age_days):
                return False

        if self.max_backups is not None:
            sorted_backups = sorted(all_backups, key=lambda b: b.created_at, reverse=True)
            keep_ids = {b.backup_id for b in sorted_backups[:self.max_backups]}
            if backup_info.backup_id not in keep_ids:
                return False

        return True

    def select_expired(
        self,
        backups: List[BackupInfo],
        now: Optional[datetime] = None
    ) -> List[BackupInfo]:
        """
        Backups the policy would remove.

        Ancestors of a retained incremental backup are always kept so that
        every retained backup can still be restored.
        """
        retained = {b.backup_id for b in backups if self.should_retain(b, backups, now)}
        by_id: Dict[str, BackupInfo] = {b.backup_id: b for b in backups}

        for backup_id in list(retained):
            parent_id = by_id[backup_id].parent_backup_id
            seen = set()
            while parent_id and parent_id in by_id and parent_id not in seen:
                seen.add(parent_id)
                retained.add(parent_id)
                parent_id = by_id[parent_id].parent_backup_id

        return [b for b in backups if b.backup_id not in retained]


class BackupStorage:
    """Manages backup archives, info sidecars and staging directories."""

    def __init__(
        self,
        base_path: Union[str, Path],
        temp_path: Optional[Union[str, Path]] = None
    ):
        self.base_path = Path(base_path)
        self.temp_path = Path(temp_path) if temp_path else Path(tempfile.gettempdir()) / "migration-temp"
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.temp_path.mkdir(parents=True, exist_ok=True)

    def archive_path(self, backup_id: str) -> Path:
        return self.base_path / f"{safe_filename(backup_id)}.zip"

    def info_path(self, backup_id: str) -> Path:
        return self.base_path / f"{safe_filename(backup_id)}.info.json"

    # Info sidecars

    def save_info(self, backup_info: BackupInfo) -> None:
        try:
            write_json_atomic(self.info_path(backup_info.backup_id), backup_info.model_dump(mode="json"))
        except OSError as e:
            raise BackupError(f"Failed to save backup info for {backup_info.backup_id}: {str(e)}") from e

    def load_info(self, backup_id: str) -> Optional[BackupInfo]:
        path = self.info_path(backup_id)
        if not path.exists():
            return None
        try:
            return BackupInfo.model_validate(read_json(path))
        except (OSError, ValueError) as e:
            raise BackupError(f"Unreadable backup info {path}: {str(e)}") from e

    def list_infos(self) -> List[BackupInfo]:
        infos = []
        for path in self.base_path.glob("*.info.json"):
            try:
                infos.append(BackupInfo.model_validate(read_json(path)))
            except (OSError, ValueError):
                continue
        return infos

    def delete(self, backup_id: str) -> bool:
        """Remove the archive and its info sidecar. Returns True if anything was removed."""
        removed = False
        for path in (self.archive_path(backup_id), self.info_path(backup_id)):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                continue
            except OSError as e:
                raise BackupError(f"Failed to delete {path}: {str(e)}") from e
        return removed

    def archive_size(self, backup_id: str) -> int:
        path = self.archive_path(backup_id)
        return path.stat().st_size if path.exists() else 0

    # Staging

    def create_stage_dir(self, name: str) -> Path:
        """Create an empty working directory under the temp path."""
        return Path(tempfile.mkdtemp(prefix=f"{safe_filename(name)}_", dir=self.temp_path))

    def cleanup_stage(self, stage_dir: Path) -> None:
        if stage_dir.exists():
            shutil.rmtree(stage_dir, ignore_errors=True)

    # Archives

    def compress(self, source_dir: Path, archive_path: Path) -> None:
        """Zip every file under ``source_dir`` with paths relative to it."""
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_archive = archive_path.with_suffix(".zip.partial")
        with zipfile.ZipFile(tmp_archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for root, _, files in os.walk(source_dir):
                for file_name in sorted(files):
                    file_path = Path(root) / file_name
                    zf.write(file_path, file_path.relative_to(source_dir).as_posix())
        os.replace(tmp_archive, archive_path)

    def extract(self, archive_path: Path, target_dir: Path) -> None:
        try:
            with zipfile.ZipFile(archive_path, "r") as zf:
                target = target_dir.resolve()
                for member in zf.namelist():
                    if not (target_dir / member).resolve().is_relative_to(target):
                        raise BackupError(f"Archive entry escapes restore directory: {member}")
                zf.extractall(target_dir)
        except zipfile.BadZipFile as e:
            raise BackupError(f"Corrupt backup archive {archive_path}: {str(e)}") from e

    def read_metadata(self, archive_path: Path) -> Dict:
        """Read the metadata entry of an archive; raises on a missing or broken archive."""
        with zipfile.ZipFile(archive_path, "r") as zf:
            with zf.open(METADATA_FILE) as f:
                return json.load(f)

    def is_valid_archive(self, archive_path: Path) -> bool:
        """Structural check: the archive opens and holds a readable metadata entry."""
        if not archive_path.exists():
            return False
        try:
            metadata = self.read_metadata(archive_path)
        except (zipfile.BadZipFile, KeyError, OSError, ValueError, EOFError):
            return False
        return isinstance(metadata, dict) and "backup" in metadata

    def mark_status(self, backup_info: BackupInfo, status: BackupStatus) -> None:
        backup_info.status = status
        self.save_info(backup_info)
