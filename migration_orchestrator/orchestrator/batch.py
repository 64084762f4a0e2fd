"""
Batch migration engine.

This module provides the BatchMigrationEngine class that splits a known
list of items into fixed-size batches, processes them in a background
worker and persists the job after every batch so that a paused or
interrupted job can be resumed from the batch it stopped at.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, List, Optional

from migration_orchestrator.backup.manager import BackupManager
from migration_orchestrator.backup.rollback import RollbackManager
from migration_orchestrator.clients.base import EntityClient
from migration_orchestrator.core.error_handler import ErrorHandler, RetryConfig, RetryHandler
from migration_orchestrator.core.exceptions import InvalidStateTransitionError, JobNotFoundError
from migration_orchestrator.models.jobs import (
    BatchItem,
    BatchJob,
    BatchJobStatus,
    BatchMigrationRequest,
    BatchMigrationResult,
    BatchStatus,
)
from migration_orchestrator.models.progress import MigrationStep, MonitoringStatus, ProgressStatus
from migration_orchestrator.monitoring.progress_monitor import ProgressMonitor
from migration_orchestrator.persistence.job_store import JobStore
from migration_orchestrator.persistence.state_store import StateStore
from migration_orchestrator.utils.helpers import generate_id, utc_now

logger = logging.getLogger(__name__)

ItemProcessor = Callable[[BatchItem], Awaitable[Any]]

ESTIMATED_MINUTES_PER_BATCH = 2

_MONITORING_STATUS = {
    BatchStatus.COMPLETED: MonitoringStatus.COMPLETED,
    BatchStatus.COMPLETED_WITH_ERRORS: MonitoringStatus.COMPLETED,
    BatchStatus.FAILED: MonitoringStatus.FAILED,
    BatchStatus.CANCELLED: MonitoringStatus.CANCELLED,
}


class BatchMigrationEngine:
    """
    Runs batch migrations.

    Each job gets one worker task launched through the shared ``JobStore``.
    Pause and cancel are cooperative: the worker checks the job status
    before every batch, and cancellation additionally between items.
    """

    def __init__(
        self,
        state_store: StateStore,
        job_store: JobStore,
        monitor: ProgressMonitor,
        destination_client: Optional[EntityClient] = None,
        backup_manager: Optional[BackupManager] = None,
        rollback_manager: Optional[RollbackManager] = None,
        item_processor: Optional[ItemProcessor] = None,
        error_handler: Optional[ErrorHandler] = None,
        retry_base_delay: float = 1.0
    ):
        self.state_store = state_store
        self.job_store = job_store
        self.monitor = monitor
        self.destination_client = destination_client
        self.backup_manager = backup_manager
        self.rollback_manager = rollback_manager
        self.error_handler = error_handler or ErrorHandler()
        self.retry_handler = RetryHandler(self.error_handler)
        self.retry_base_delay = retry_base_delay
        self._item_processor = item_processor

    async def _default_processor(self, item: BatchItem) -> Any:
        return await self.destination_client.create_entity(item.item_type, item.data)

    @property
    def item_processor(self) -> Optional[ItemProcessor]:
        if self._item_processor is not None:
            return self._item_processor
        if self.destination_client is not None:
            return self._default_processor
        return None

    # Start

    async def start_batch(self, request: BatchMigrationRequest) -> BatchMigrationResult:
        """
        Validate the request, prepare backup and snapshot, and launch the worker.

        Returns:
            BatchMigrationResult; ``success`` is False when the request is
            rejected, in which case no job is created
        """
        problem = self._validate_request(request)
        if problem:
            logger.warning(f"Batch request rejected: {problem}")
            return BatchMigrationResult(success=False, message=problem, error=problem)

        batch_id = generate_id()
        job = BatchJob(
            batch_id=batch_id,
            batch_name=request.batch_name,
            status=BatchStatus.RUNNING,
            total_items=len(request.items),
            batch_size=request.batch_size,
            started_at=utc_now(),
            items=[item.model_copy(deep=True) for item in request.items],
            configuration=request.configuration.model_copy(deep=True),
        )
        self.job_store.register(batch_id, job)
        logger.info(f"Starting batch migration {request.batch_name} ({batch_id})")

        try:
            await self.monitor.start_monitoring(batch_id)
            await self.monitor.update_progress(batch_id, MigrationStep.INITIALIZATION, ProgressStatus.COMPLETED)
            await self.monitor.update_progress(
                batch_id,
                MigrationStep.PREREQUISITE_VALIDATION,
                ProgressStatus.COMPLETED,
                f"{job.total_items} items in {job.total_batches} batch(es)"
            )
            await self.state_store.save_batch_job(job)

            await self._create_backup(job, request.create_backup)
            if request.create_snapshot and self.rollback_manager is not None:
                snapshot = await self.rollback_manager.create_snapshot(batch_id)
                if snapshot.success:
                    job.snapshot_path = snapshot.snapshot_path
                else:
                    logger.warning(f"Snapshot for batch {batch_id} failed: {snapshot.error}")

            await self.state_store.save_batch_job(job)
            self.job_store.launch(batch_id, self._run_batch(batch_id), name=f"batch-{batch_id}")

        except Exception as e:
            logger.error(f"Failed to start batch {batch_id}: {str(e)}")
            job.status = BatchStatus.FAILED
            job.error_message = str(e)
            job.completed_at = utc_now()
            await self._persist(job)
            await self.monitor.stop_monitoring(batch_id, MonitoringStatus.FAILED)
            return BatchMigrationResult(
                success=False,
                batch_id=batch_id,
                message=f"Failed to start batch migration: {str(e)}",
                started_at=job.started_at,
                error=str(e),
            )

        estimated = timedelta(minutes=job.total_batches * ESTIMATED_MINUTES_PER_BATCH)
        logger.info(f"Batch {batch_id} started; estimated duration {estimated}")
        return BatchMigrationResult(
            success=True,
            batch_id=batch_id,
            message=f"{job.total_items} items will be processed in batches of {job.batch_size}",
            estimated_duration=estimated,
            started_at=job.started_at,
        )

    def _validate_request(self, request: BatchMigrationRequest) -> Optional[str]:
        if request.batch_size < 1:
            return "batch_size must be at least 1"
        if not request.items:
            return "Batch request contains no items"
        if self.item_processor is None:
            return "No item processor or destination client configured"
        return None

    async def _create_backup(self, job: BatchJob, requested: bool):
        if not requested or self.backup_manager is None:
            await self.monitor.update_progress(
                job.batch_id, MigrationStep.BACKUP_CREATION, ProgressStatus.SKIPPED, "Backup not requested"
            )
            return

        await self.monitor.update_progress(job.batch_id, MigrationStep.BACKUP_CREATION, ProgressStatus.IN_PROGRESS)
        result = await self.backup_manager.create_incremental_backup(job.batch_id)
        if result.success:
            job.backup_id = result.backup_id
            await self.monitor.update_progress(
                job.batch_id, MigrationStep.BACKUP_CREATION, ProgressStatus.COMPLETED, result.backup_id
            )
        else:
            # The job proceeds without a backup
            logger.error(f"Backup before batch {job.batch_id} failed: {result.error}")
            await self.monitor.update_progress(
                job.batch_id, MigrationStep.BACKUP_CREATION, ProgressStatus.SKIPPED, f"Backup failed: {result.error}"
            )

    # Worker

    async def _run_batch(self, batch_id: str):
        job: BatchJob = self.job_store.get(batch_id)
        try:
            await self.monitor.update_progress(
                batch_id, MigrationStep.TARGET_CREATION, ProgressStatus.IN_PROGRESS,
                f"Resuming at batch {job.current_batch_number + 1}/{job.total_batches}"
            )

            abort_error: Optional[str] = None
            while job.items and abort_error is None:
                if job.status == BatchStatus.PAUSED:
                    logger.info(f"Batch {batch_id} paused before batch {job.current_batch_number + 1}")
                    await self._persist(job)
                    self.monitor.pause_monitoring(batch_id)
                    return
                if job.status == BatchStatus.CANCELLED:
                    break

                job.current_batch_number += 1
                chunk = list(job.items[:job.batch_size])
                logger.info(
                    f"Processing batch {job.current_batch_number}/{job.total_batches} "
                    f"of {batch_id} ({len(chunk)} items)"
                )

                for item in chunk:
                    if job.status == BatchStatus.CANCELLED:
                        break
                    ok = await self._process_item(job, item)
                    job.items.pop(0)
                    if not ok and not job.configuration.continue_on_error:
                        abort_error = f"Item {item.item_id} failed: {item.error_message}"
                        break
                    if job.configuration.processing_delay_ms:
                        await self.job_store.sleep(batch_id, job.configuration.processing_delay_ms / 1000)

                await self._persist(job)
                await self.monitor.update_progress(
                    batch_id,
                    MigrationStep.TARGET_CREATION,
                    ProgressStatus.IN_PROGRESS,
                    f"Batch {job.current_batch_number}/{job.total_batches} done: "
                    f"{len(job.processed_items)} processed, {len(job.failed_items)} failed",
                    entities_migrated=len(job.processed_items),
                    errors=len(job.failed_items)
                )

            if job.status == BatchStatus.CANCELLED:
                await self._finalize(job, BatchStatus.CANCELLED, "Batch cancelled")
            elif abort_error is not None:
                job.error_message = abort_error
                await self._finalize(job, BatchStatus.FAILED, "Batch aborted after item failure")
            else:
                await self._finalize(job)

        except asyncio.CancelledError:
            logger.info(f"Worker for batch {batch_id} interrupted")
            await self._persist(job)
            raise
        except Exception as e:
            await self._fail(job, e)

    async def _process_item(self, job: BatchJob, item: BatchItem) -> bool:
        item.start()
        attempts = 0

        async def attempt():
            nonlocal attempts
            if attempts:
                item.retry_count += 1
            attempts += 1
            return await self.item_processor(item)

        retry_config = RetryConfig(
            max_attempts=job.configuration.max_retries + 1,
            base_delay=self.retry_base_delay,
        )
        try:
            await self.retry_handler.retry_with_backoff(attempt, retry_config=retry_config)
        except Exception as e:
            self.error_handler.handle_error(e, job.batch_id)
            item.fail(str(e))
            job.failed_items.append(item)
            return False

        item.complete()
        job.processed_items.append(item)
        return True

    async def _finalize(self, job: BatchJob, status: Optional[BatchStatus] = None, skip_reason: str = ""):
        """Move leftover items to ``failed_items`` as skipped and record the terminal status."""
        for item in job.items:
            item.skip(skip_reason or "Not processed")
            job.failed_items.append(item)
        job.items = []

        if status is None:
            status = BatchStatus.COMPLETED if not job.failed_items else BatchStatus.COMPLETED_WITH_ERRORS
        job.status = status
        job.completed_at = utc_now()
        await self._persist(job)

        if status in (BatchStatus.COMPLETED, BatchStatus.COMPLETED_WITH_ERRORS):
            await self.monitor.update_progress(
                job.batch_id, MigrationStep.TARGET_CREATION, ProgressStatus.COMPLETED,
                f"{len(job.processed_items)} processed, {len(job.failed_items)} failed",
                entities_migrated=len(job.processed_items),
                errors=len(job.failed_items)
            )
            await self.monitor.update_progress(job.batch_id, MigrationStep.COMPLETION, ProgressStatus.COMPLETED)
        elif status == BatchStatus.FAILED:
            await self.monitor.update_progress(
                job.batch_id, MigrationStep.TARGET_CREATION, ProgressStatus.FAILED, job.error_message
            )
        await self.monitor.stop_monitoring(job.batch_id, _MONITORING_STATUS[status])

        logger.info(
            f"Batch {job.batch_id} finished with status {status.value}: "
            f"{len(job.processed_items)} processed, {len(job.failed_items)} failed"
        )

    async def _fail(self, job: BatchJob, error: Exception):
        logger.error(f"Batch {job.batch_id} failed: {str(error)}")
        job.error_message = str(error)
        await self._finalize(job, BatchStatus.FAILED, "Batch failed")

        if job.configuration.auto_recover and self.rollback_manager is not None:
            recovery = await self.rollback_manager.recover_from_failure(job.batch_id, error)
            logger.info(f"Recovery for batch {job.batch_id} ({recovery.failure_type}): {recovery.message}")

    async def _persist(self, job: BatchJob):
        try:
            await self.state_store.save_batch_job(job)
        except Exception as e:
            logger.error(f"Failed to persist batch {job.batch_id}: {str(e)}")

    # Queries

    async def _find_job(self, batch_id: str) -> BatchJob:
        job = self.job_store.get(batch_id)
        if job is None:
            job = await self.state_store.load_batch_job(batch_id)
            if job is None:
                raise JobNotFoundError(f"Batch {batch_id} not found")
            self.job_store.register(batch_id, job)
        return job

    async def get_batch_status(self, batch_id: str) -> BatchJobStatus:
        """Status of a batch job; ``found`` is False for unknown ids."""
        try:
            job = await self._find_job(batch_id)
        except JobNotFoundError as e:
            return BatchJobStatus(batch_id=batch_id, message=str(e))
        except Exception as e:
            logger.error(f"Failed to read status of batch {batch_id}: {str(e)}")
            return BatchJobStatus(batch_id=batch_id, message=str(e))

        return BatchJobStatus(
            batch_id=batch_id,
            found=True,
            batch_name=job.batch_name,
            status=job.status,
            total_items=job.total_items,
            processed_items=len(job.processed_items),
            failed_items=len(job.failed_items),
            progress_percentage=job.progress_percentage,
            started_at=job.started_at,
            completed_at=job.completed_at,
            estimated_time_remaining=job.estimated_time_remaining(),
            current_batch_number=job.current_batch_number,
            total_batches=job.total_batches,
            error_messages=[f"{i.item_id}: {i.error_message}" for i in job.failed_items if i.error_message],
            message=job.error_message or "",
        )

    async def get_active_batches(self) -> List[BatchJob]:
        return [
            job for job in self.job_store.jobs(BatchJob)
            if job.status in (BatchStatus.PENDING, BatchStatus.RUNNING, BatchStatus.PAUSED)
        ]

    async def wait_for_batch(self, batch_id: str, timeout: Optional[float] = None) -> bool:
        """Wait for the batch's worker to return. False on timeout."""
        return await self.job_store.wait(batch_id, timeout)

    # Control

    @staticmethod
    def _require_status(job: BatchJob, requested: BatchStatus, *allowed: BatchStatus):
        if job.status not in allowed:
            raise InvalidStateTransitionError(job.batch_id, job.status.value, requested.value)

    async def pause_batch(self, batch_id: str) -> bool:
        try:
            job = await self._find_job(batch_id)
            self._require_status(job, BatchStatus.PAUSED, BatchStatus.RUNNING)
        except (JobNotFoundError, InvalidStateTransitionError) as e:
            logger.warning(f"Cannot pause batch {batch_id}: {e}")
            return False

        job.status = BatchStatus.PAUSED
        job.paused_at = utc_now()
        await self._persist(job)
        logger.info(f"Batch {batch_id} paused")
        return True

    async def resume_batch(self, batch_id: str) -> bool:
        """
        Resume a paused batch, reloading it from disk if needed.

        A ``running`` job without a live worker, as left behind by a
        process restart, is resumed as well.
        """
        try:
            job = await self._find_job(batch_id)
            worker_alive = self.job_store.is_active(batch_id)
            if job.status == BatchStatus.RUNNING and worker_alive:
                raise InvalidStateTransitionError(batch_id, job.status.value, BatchStatus.RUNNING.value)
            self._require_status(job, BatchStatus.RUNNING, BatchStatus.PAUSED, BatchStatus.RUNNING)
        except (JobNotFoundError, InvalidStateTransitionError) as e:
            logger.warning(f"Cannot resume batch {batch_id}: {e}")
            return False

        job.status = BatchStatus.RUNNING
        job.resumed_at = utc_now()
        await self._persist(job)

        if not worker_alive:
            # Worker already returned, or the job was loaded from disk
            if not self.monitor.is_monitored(batch_id):
                await self.monitor.start_monitoring(batch_id)
            self.monitor.resume_monitoring(batch_id)
            self.job_store.launch(batch_id, self._run_batch(batch_id), name=f"batch-{batch_id}")

        logger.info(f"Batch {batch_id} resumed at batch {job.current_batch_number + 1}/{job.total_batches}")
        return True

    async def cancel_batch(self, batch_id: str) -> bool:
        try:
            job = await self._find_job(batch_id)
            self._require_status(
                job, BatchStatus.CANCELLED, BatchStatus.PENDING, BatchStatus.RUNNING, BatchStatus.PAUSED
            )
        except (JobNotFoundError, InvalidStateTransitionError) as e:
            logger.warning(f"Cannot cancel batch {batch_id}: {e}")
            return False

        job.status = BatchStatus.CANCELLED
        if self.job_store.is_active(batch_id):
            self.job_store.wake(batch_id)
        else:
            await self._finalize(job, BatchStatus.CANCELLED, "Batch cancelled")
        logger.info(f"Batch {batch_id} cancelled")
        return True
