"""
Incremental migration engine.

This module provides the IncrementalMigrationEngine class that repeatedly
detects changes on the source since a watermark, applies them to the
destination in priority order and sleeps until the next cycle. Waits are
interruptible so that pause, stop and complete take effect immediately.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from migration_orchestrator.backup.manager import BackupManager
from migration_orchestrator.clients.base import ChangeDetector, EntityClient
from migration_orchestrator.core.error_handler import ErrorHandler
from migration_orchestrator.core.exceptions import (
    ClientError,
    ConfigurationError,
    InvalidStateTransitionError,
    JobNotFoundError,
)
from migration_orchestrator.models.jobs import (
    EPOCH,
    ChangeType,
    DataDelta,
    IncrementalJob,
    IncrementalMigrationRequest,
    IncrementalMigrationResult,
    IncrementalProgress,
    IncrementalStatus,
    SyncError,
    SyncResult,
)
from migration_orchestrator.models.progress import MigrationStep, MonitoringStatus, ProgressStatus
from migration_orchestrator.monitoring.progress_monitor import ProgressMonitor
from migration_orchestrator.persistence.job_store import JobStore
from migration_orchestrator.persistence.state_store import StateStore
from migration_orchestrator.utils.helpers import generate_id, utc_now

logger = logging.getLogger(__name__)

_MONITORING_STATUS = {
    IncrementalStatus.COMPLETED: MonitoringStatus.COMPLETED,
    IncrementalStatus.FAILED: MonitoringStatus.FAILED,
    IncrementalStatus.STOPPED: MonitoringStatus.CANCELLED,
}

# Cycle retries for single-cycle jobs when no explicit cap is configured
SINGLE_CYCLE_RETRY_LIMIT = 3


class IncrementalMigrationEngine:
    """
    Runs incremental migrations.

    A cycle syncs at most ``max_changes_per_sync`` pending deltas, advances
    the watermark, waits ``sync_interval`` and detects new deltas. A failed
    cycle is retried after ``sync_retry_delay`` seconds; when
    ``max_sync_cycle_retries`` is set, exceeding it fails the job.
    Single-cycle jobs without a cap give up after
    ``SINGLE_CYCLE_RETRY_LIMIT`` retries so that they always finish.
    """

    def __init__(
        self,
        state_store: StateStore,
        job_store: JobStore,
        monitor: ProgressMonitor,
        change_detector: ChangeDetector,
        destination_client: EntityClient,
        backup_manager: Optional[BackupManager] = None,
        error_handler: Optional[ErrorHandler] = None,
        default_sync_interval: timedelta = timedelta(hours=1),
        sync_retry_delay: float = 60.0,
        max_sync_cycle_retries: Optional[int] = None,
        heartbeat_interval: float = 60.0
    ):
        if heartbeat_interval <= 0:
            raise ConfigurationError("heartbeat_interval must be positive")
        self.state_store = state_store
        self.job_store = job_store
        self.monitor = monitor
        self.change_detector = change_detector
        self.destination_client = destination_client
        self.backup_manager = backup_manager
        self.error_handler = error_handler or ErrorHandler()
        self.default_sync_interval = default_sync_interval
        self.sync_retry_delay = sync_retry_delay
        self.max_sync_cycle_retries = max_sync_cycle_retries
        self.heartbeat_interval = heartbeat_interval

    # Start

    async def start_incremental(self, request: IncrementalMigrationRequest) -> IncrementalMigrationResult:
        """
        Detect the initial deltas and launch the sync worker.

        ``total_changes`` already holds the initial delta count when this
        returns.
        """
        migration_id = generate_id()
        sync_interval = request.sync_interval
        if "sync_interval" not in request.model_fields_set:
            sync_interval = self.default_sync_interval

        job = IncrementalJob(
            migration_id=migration_id,
            migration_name=request.migration_name,
            status=IncrementalStatus.RUNNING,
            started_at=utc_now(),
            last_sync_at=request.last_sync_timestamp or EPOCH,
            sync_interval=sync_interval,
            configuration=request.configuration.model_copy(deep=True),
            change_detection_rules=[r.model_copy() for r in request.change_detection_rules],
        )
        self.job_store.register(migration_id, job)
        logger.info(f"Starting incremental migration {request.migration_name} ({migration_id})")

        try:
            detected_at = utc_now()
            changes = await self.detect_changes(migration_id, job.last_sync_at)
            job.detected_through = detected_at
            job.pending_changes = changes
            job.total_changes = len(changes)
            await self.state_store.save_incremental_job(job)

            await self.monitor.start_monitoring(migration_id)
            await self.monitor.update_progress(migration_id, MigrationStep.INITIALIZATION, ProgressStatus.COMPLETED)
            await self.monitor.update_progress(
                migration_id,
                MigrationStep.SOURCE_EXTRACTION,
                ProgressStatus.COMPLETED,
                f"{len(changes)} change(s) detected since {job.last_sync_at.isoformat()}"
            )
            self.job_store.launch(migration_id, self._run_incremental(migration_id), name=f"incremental-{migration_id}")

        except Exception as e:
            logger.error(f"Failed to start incremental migration {migration_id}: {str(e)}")
            job.status = IncrementalStatus.FAILED
            job.last_error = str(e)
            job.completed_at = utc_now()
            await self._persist(job)
            await self.monitor.stop_monitoring(migration_id, MonitoringStatus.FAILED)
            return IncrementalMigrationResult(
                success=False,
                migration_id=migration_id,
                message=f"Failed to start incremental migration: {str(e)}",
                started_at=job.started_at,
                error=str(e),
            )

        logger.info(f"Incremental migration {migration_id} started with {job.total_changes} change(s)")
        return IncrementalMigrationResult(
            success=True,
            migration_id=migration_id,
            message=f"Incremental migration started. {job.total_changes} change(s) detected.",
            changes_detected=job.total_changes,
            started_at=job.started_at,
            next_sync_at=utc_now() + job.sync_interval,
        )

    # Detection and sync

    async def detect_changes(self, migration_id: str, since: datetime) -> List[DataDelta]:
        """Deltas since ``since`` for the job's rules, without excluded entity types."""
        job: Optional[IncrementalJob] = self.job_store.get(migration_id)
        rules = job.change_detection_rules if job else []
        excluded = set(job.configuration.excluded_entity_types) if job else set()

        changes = await self.change_detector.detect_changes(since, rules)
        changes = [c for c in changes if c.entity_type not in excluded]
        logger.debug(f"Detected {len(changes)} change(s) for {migration_id} since {since.isoformat()}")
        return changes

    async def synchronize_changes(self, migration_id: str, changes: List[DataDelta]) -> SyncResult:
        """
        Apply deltas to the destination in ``(priority, changed_at)`` order.

        Failures are recorded per delta and never abort the remaining deltas.
        """
        result = SyncResult(migration_id=migration_id, total_changes=len(changes), started_at=utc_now())

        for delta in sorted(changes, key=DataDelta.sort_key):
            try:
                await self._apply_delta(delta)
                result.successful_changes.append(delta.delta_id)
            except Exception as e:
                if isinstance(e, ClientError):
                    error_code = e.kind.value
                else:
                    error_code = self.error_handler.classify_failure(e).value
                logger.warning(
                    f"Failed to apply {delta.change_type.value} {delta.entity_type} {delta.entity_id}: {e}"
                )
                result.failed_changes.append(SyncError(
                    delta_id=delta.delta_id,
                    entity_type=delta.entity_type,
                    entity_id=delta.entity_id,
                    error_message=str(e),
                    error_code=error_code,
                ))

        result.success = not result.failed_changes
        result.success_rate = (
            len(result.successful_changes) / result.total_changes * 100 if result.total_changes else 100.0
        )
        result.completed_at = utc_now()
        if result.failed_changes:
            result.error_message = f"{len(result.failed_changes)} of {result.total_changes} change(s) failed"
        return result

    async def _apply_delta(self, delta: DataDelta):
        if delta.change_type == ChangeType.CREATE:
            await self.destination_client.create_entity(
                delta.entity_type, {**delta.new_values, "id": delta.entity_id}
            )
        elif delta.change_type == ChangeType.UPDATE:
            await self.destination_client.update_entity(delta.entity_type, delta.entity_id, delta.new_values)
        else:
            await self.destination_client.delete_entity(delta.entity_type, delta.entity_id)

    # Worker

    async def _run_incremental(self, migration_id: str):
        job: IncrementalJob = self.job_store.get(migration_id)
        await self.monitor.update_progress(
            migration_id, MigrationStep.TARGET_CREATION, ProgressStatus.IN_PROGRESS, "Synchronizing changes"
        )

        try:
            while job.status in (IncrementalStatus.RUNNING, IncrementalStatus.PAUSED):
                if job.status == IncrementalStatus.PAUSED:
                    await self._idle(job, None)
                    continue

                try:
                    await self._run_cycle(job)
                    if job.configuration.single_cycle:
                        job.status = IncrementalStatus.COMPLETED
                        break

                    await self._idle(job, job.sync_interval.total_seconds())
                    if job.status != IncrementalStatus.RUNNING:
                        continue

                    detected_at = utc_now()
                    new_changes = await self.detect_changes(migration_id, job.last_sync_at)
                    job.detected_through = detected_at
                    job.pending_changes.extend(new_changes)
                    job.total_changes += len(new_changes)
                    job.consecutive_failures = 0
                    job.last_error = None
                    await self.state_store.save_incremental_job(job)

                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    job.consecutive_failures += 1
                    job.last_error = str(e)
                    self.error_handler.handle_error(e, migration_id)
                    retry_limit = self._retry_limit(job)
                    if retry_limit is not None and job.consecutive_failures > retry_limit:
                        logger.error(
                            f"Incremental migration {migration_id} failed after "
                            f"{job.consecutive_failures} consecutive failed cycles"
                        )
                        job.status = IncrementalStatus.FAILED
                        break
                    await self._persist(job)
                    await self._idle(job, self.sync_retry_delay)

            await self._finish(job)

        except asyncio.CancelledError:
            logger.info(f"Worker for incremental migration {migration_id} interrupted")
            await self._persist(job)
            raise

    def _retry_limit(self, job: IncrementalJob) -> Optional[int]:
        if self.max_sync_cycle_retries is None and job.configuration.single_cycle:
            return SINGLE_CYCLE_RETRY_LIMIT
        return self.max_sync_cycle_retries

    async def _run_cycle(self, job: IncrementalJob):
        if job.configuration.create_backup_before_sync and self.backup_manager is not None:
            backup = await self.backup_manager.create_incremental_backup(job.migration_id)
            if backup.success:
                job.backup_id = backup.backup_id
            else:
                logger.warning(f"Backup before sync of {job.migration_id} failed: {backup.error}")

        job.pending_changes.sort(key=DataDelta.sort_key)
        chunk = job.pending_changes[:job.configuration.max_changes_per_sync]
        if chunk:
            result = await self.synchronize_changes(job.migration_id, chunk)
            job.processed_changes += len(result.successful_changes)
            job.failed_changes += len(result.failed_changes)
            del job.pending_changes[:len(chunk)]

        # Changes stamped after detection began are picked up next cycle
        if job.detected_through is not None:
            job.last_sync_at = job.detected_through
        job.cycle_count += 1
        await self.state_store.save_incremental_job(job)

        await self.monitor.update_progress(
            job.migration_id,
            MigrationStep.TARGET_CREATION,
            ProgressStatus.IN_PROGRESS,
            f"Cycle {job.cycle_count}: {job.processed_changes} applied, "
            f"{job.failed_changes} failed, {len(job.pending_changes)} pending",
            entities_migrated=job.processed_changes,
            errors=job.failed_changes
        )
        logger.info(
            f"Incremental {job.migration_id} cycle {job.cycle_count} synced {len(chunk)} change(s)"
        )

    async def _idle(self, job: IncrementalJob, seconds: Optional[float]):
        """
        Wait ``seconds``, or until woken when None, heartbeating the monitor.

        Returns early when a control call wakes the job.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + seconds if seconds is not None else None
        while True:
            step = self.heartbeat_interval
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return
                step = min(step, remaining)
            interrupted = await self.job_store.sleep(job.migration_id, step)
            self.monitor.heartbeat(job.migration_id)
            if interrupted:
                return

    async def _finish(self, job: IncrementalJob):
        job.completed_at = utc_now()
        await self._persist(job)

        if job.status == IncrementalStatus.COMPLETED:
            await self.monitor.update_progress(
                job.migration_id, MigrationStep.TARGET_CREATION, ProgressStatus.COMPLETED,
                f"{job.processed_changes} applied, {job.failed_changes} failed",
                entities_migrated=job.processed_changes,
                errors=job.failed_changes
            )
            await self.monitor.update_progress(job.migration_id, MigrationStep.COMPLETION, ProgressStatus.COMPLETED)
        elif job.status == IncrementalStatus.FAILED:
            await self.monitor.update_progress(
                job.migration_id, MigrationStep.TARGET_CREATION, ProgressStatus.FAILED, job.last_error
            )
        await self.monitor.stop_monitoring(job.migration_id, _MONITORING_STATUS.get(job.status))
        logger.info(f"Incremental migration {job.migration_id} finished with status {job.status.value}")

    async def _persist(self, job: IncrementalJob):
        try:
            await self.state_store.save_incremental_job(job)
        except Exception as e:
            logger.error(f"Failed to persist incremental migration {job.migration_id}: {str(e)}")

    # Queries

    async def _find_job(self, migration_id: str) -> IncrementalJob:
        job = self.job_store.get(migration_id)
        if job is None:
            job = await self.state_store.load_incremental_job(migration_id)
            if job is None:
                raise JobNotFoundError(f"Incremental migration {migration_id} not found")
            self.job_store.register(migration_id, job)
        return job

    async def get_incremental_progress(self, migration_id: str) -> IncrementalProgress:
        """Progress of an incremental job; ``found`` is False for unknown ids."""
        try:
            job = await self._find_job(migration_id)
        except JobNotFoundError as e:
            return IncrementalProgress(migration_id=migration_id, message=str(e))
        except Exception as e:
            logger.error(f"Failed to read progress of incremental migration {migration_id}: {str(e)}")
            return IncrementalProgress(migration_id=migration_id, message=str(e))

        return IncrementalProgress(
            migration_id=migration_id,
            found=True,
            migration_name=job.migration_name,
            status=job.status,
            total_changes=job.total_changes,
            processed_changes=job.processed_changes,
            failed_changes=job.failed_changes,
            pending_changes=len(job.pending_changes),
            progress_percentage=job.progress_percentage,
            started_at=job.started_at,
            last_sync_at=job.last_sync_at,
            next_sync_at=job.next_sync_at if not job.status.is_terminal else None,
            sync_interval=job.sync_interval,
            cycle_count=job.cycle_count,
            last_error=job.last_error,
        )

    async def get_active_incrementals(self) -> List[IncrementalJob]:
        return [
            job for job in self.job_store.jobs(IncrementalJob)
            if job.status in (IncrementalStatus.RUNNING, IncrementalStatus.PAUSED)
        ]

    async def is_in_flight(self, migration_id: str) -> bool:
        """True while the job is running or paused."""
        try:
            job = await self._find_job(migration_id)
        except JobNotFoundError:
            return False
        return job.status in (IncrementalStatus.RUNNING, IncrementalStatus.PAUSED)

    async def wait_for_incremental(self, migration_id: str, timeout: Optional[float] = None) -> bool:
        return await self.job_store.wait(migration_id, timeout)

    # Control

    async def _transition(
        self,
        migration_id: str,
        target: IncrementalStatus,
        *allowed: IncrementalStatus
    ) -> Optional[IncrementalJob]:
        try:
            job = await self._find_job(migration_id)
            if job.status not in allowed:
                raise InvalidStateTransitionError(migration_id, job.status.value, target.value)
        except (JobNotFoundError, InvalidStateTransitionError) as e:
            logger.warning(f"Cannot move incremental migration {migration_id} to {target.value}: {e}")
            return None
        job.status = target
        return job

    async def pause_incremental(self, migration_id: str) -> bool:
        job = await self._transition(migration_id, IncrementalStatus.PAUSED, IncrementalStatus.RUNNING)
        if job is None:
            return False
        await self._persist(job)
        self.monitor.pause_monitoring(migration_id)
        self.job_store.wake(migration_id)
        logger.info(f"Incremental migration {migration_id} paused")
        return True

    async def resume_incremental(self, migration_id: str) -> bool:
        """Resume a paused job; a ``running`` job left without a worker is relaunched."""
        worker_alive = self.job_store.is_active(migration_id)
        allowed = (IncrementalStatus.PAUSED,) if worker_alive else (IncrementalStatus.PAUSED, IncrementalStatus.RUNNING)
        job = await self._transition(migration_id, IncrementalStatus.RUNNING, *allowed)
        if job is None:
            return False
        await self._persist(job)

        if worker_alive:
            self.monitor.resume_monitoring(migration_id)
            self.job_store.wake(migration_id)
        else:
            if not self.monitor.is_monitored(migration_id):
                await self.monitor.start_monitoring(migration_id)
            self.monitor.resume_monitoring(migration_id)
            self.job_store.launch(migration_id, self._run_incremental(migration_id), name=f"incremental-{migration_id}")
        logger.info(f"Incremental migration {migration_id} resumed")
        return True

    async def stop_incremental(self, migration_id: str) -> bool:
        job = await self._transition(
            migration_id, IncrementalStatus.STOPPED, IncrementalStatus.RUNNING, IncrementalStatus.PAUSED
        )
        if job is None:
            return False
        await self._end(job)
        logger.info(f"Incremental migration {migration_id} stopped")
        return True

    async def complete_incremental(self, migration_id: str) -> bool:
        job = await self._transition(migration_id, IncrementalStatus.COMPLETED, IncrementalStatus.RUNNING)
        if job is None:
            return False
        await self._end(job)
        logger.info(f"Incremental migration {migration_id} completed")
        return True

    async def _end(self, job: IncrementalJob):
        if self.job_store.is_active(job.migration_id):
            self.job_store.wake(job.migration_id)
        else:
            await self._finish(job)
