"""
Progress monitoring for migration jobs.

This module tracks each job through the fixed migration step sequence,
writes a per-job progress log, flags stalled jobs from a periodic health
check and produces monitoring reports.
"""

import asyncio
import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from migration_orchestrator.models.progress import (
    MigrationProgress,
    MigrationStep,
    MonitoringReport,
    MonitoringStatus,
    ProgressEvent,
    ProgressEventType,
    ProgressStatus,
    StepDetail,
)
from migration_orchestrator.utils.helpers import file_timestamp, format_duration, utc_now, write_json_atomic
from migration_orchestrator.utils.logging import JobLogger

logger = logging.getLogger(__name__)

BOTTLENECK_THRESHOLD = timedelta(minutes=5)

_FINISHED_STEP_STATUSES = (ProgressStatus.COMPLETED, ProgressStatus.FAILED, ProgressStatus.SKIPPED)


class ProgressMonitor:
    """
    Per-job step tracker with stall detection.

    Jobs are registered with ``start_monitoring`` and updated with
    ``update_progress``. A background loop started by ``start`` runs
    ``perform_health_check`` every ``health_check_interval`` seconds and
    marks in-progress jobs without updates for longer than
    ``stall_threshold`` as stalled. Paused jobs are skipped. Stall flags
    are advisory; workers are never interrupted.
    """

    def __init__(
        self,
        logs_path: Union[str, Path],
        stall_threshold: timedelta = timedelta(minutes=10),
        health_check_interval: float = 30.0,
        structured_logs: bool = False
    ):
        self.logs_path = Path(logs_path)
        self.logs_path.mkdir(parents=True, exist_ok=True)
        self.stall_threshold = stall_threshold
        self.health_check_interval = health_check_interval
        self.structured_logs = structured_logs

        self._active: Dict[str, MigrationProgress] = {}
        self._finished: Dict[str, MigrationProgress] = {}
        self._job_loggers: Dict[str, JobLogger] = {}
        self._callbacks: List[Callable[[ProgressEvent], None]] = []
        self._lock = threading.RLock()

        self._health_task: Optional[asyncio.Task] = None
        self._running = False

    def add_callback(self, callback: Callable[[ProgressEvent], None]):
        """Add a progress callback function."""
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[ProgressEvent], None]):
        """Remove a progress callback function."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _emit_event(
        self,
        progress: MigrationProgress,
        event_type: ProgressEventType,
        step: Optional[MigrationStep] = None,
        step_status: Optional[ProgressStatus] = None,
        message: Optional[str] = None
    ):
        event = ProgressEvent(
            migration_id=progress.migration_id,
            event_type=event_type,
            timestamp=utc_now(),
            overall_progress=progress.overall_progress,
            status=progress.status,
            step=step,
            step_status=step_status,
            message=message,
        )
        for callback in self._callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    # Lifecycle

    async def start_monitoring(self, migration_id: str) -> str:
        """
        Start monitoring a job.

        Returns:
            Path of the job's progress log file
        """
        now = utc_now()
        log_file = self.logs_path / f"migration_{migration_id}_{file_timestamp(now)}.log"
        progress = MigrationProgress(
            migration_id=migration_id,
            start_time=now,
            last_update_time=now,
            log_file_path=str(log_file),
        )

        with self._lock:
            previous_logger = self._job_loggers.pop(migration_id, None)
            self._finished.pop(migration_id, None)
            self._active[migration_id] = progress
            job_logger = JobLogger(migration_id, str(log_file), structured=self.structured_logs)
            self._job_loggers[migration_id] = job_logger

        if previous_logger is not None:
            previous_logger.close()

        job_logger.info(f"Monitoring started for migration {migration_id}")
        logger.info(f"Monitoring started for migration {migration_id}")
        self._emit_event(progress, ProgressEventType.STARTED)
        return str(log_file)

    async def update_progress(
        self,
        migration_id: str,
        step: MigrationStep,
        status: ProgressStatus,
        details: Optional[str] = None,
        entities_migrated: Optional[int] = None,
        errors: Optional[int] = None
    ) -> Optional[MigrationProgress]:
        """
        Update one step of a monitored job.

        Unknown jobs are ignored with a warning. A failed step marks the
        whole job failed; once every step is completed the job is completed.
        """
        with self._lock:
            progress = self._active.get(migration_id)
            if progress is None:
                logger.warning(f"Progress update for unmonitored migration {migration_id} ignored")
                return None

            now = utc_now()
            progress.current_step = step
            progress.last_update_time = now

            step_progress = progress.steps[step]
            if status == ProgressStatus.IN_PROGRESS and step_progress.status != ProgressStatus.IN_PROGRESS:
                step_progress.start_time = now
            step_progress.status = status
            step_progress.end_time = now if status in _FINISHED_STEP_STATUSES else None
            if details is not None:
                step_progress.details = details

            if status == ProgressStatus.FAILED:
                step_progress.error_message = details
                progress.status = MonitoringStatus.FAILED
            elif progress.status == MonitoringStatus.STALLED:
                progress.status = MonitoringStatus.IN_PROGRESS

            progress.recalculate_progress()
            self._update_metrics(progress, now, entities_migrated, errors)

            if progress.overall_progress >= 100 and progress.status != MonitoringStatus.FAILED:
                progress.status = MonitoringStatus.COMPLETED
                progress.end_time = now
                progress.duration = now - progress.start_time

            job_logger = self._job_loggers.get(migration_id)

        if job_logger is not None:
            job_logger.step_update(step.value, status.value, details)

        if progress.status == MonitoringStatus.COMPLETED:
            event_type = ProgressEventType.COMPLETED
        elif status == ProgressStatus.FAILED:
            event_type = ProgressEventType.FAILED
        else:
            event_type = ProgressEventType.PROGRESS
        self._emit_event(progress, event_type, step, status, details)

        logger.debug(
            f"Progress {migration_id}: {step.value} = {status.value} ({progress.overall_progress:.1f}%)"
        )
        return progress

    def _update_metrics(
        self,
        progress: MigrationProgress,
        now: datetime,
        entities_migrated: Optional[int],
        errors: Optional[int]
    ):
        metrics = progress.metrics
        statuses = [s.status for s in progress.steps.values()]
        metrics.completed_steps = statuses.count(ProgressStatus.COMPLETED)
        metrics.failed_steps = statuses.count(ProgressStatus.FAILED)
        metrics.active_steps = statuses.count(ProgressStatus.IN_PROGRESS)

        elapsed_minutes = (now - progress.start_time).total_seconds() / 60
        if elapsed_minutes > 0:
            metrics.average_step_duration = elapsed_minutes / max(metrics.completed_steps, 1)

        if entities_migrated is not None:
            metrics.total_entities_migrated = entities_migrated
        if errors is not None:
            metrics.total_errors = errors

    def heartbeat(self, migration_id: str) -> bool:
        """Refresh ``last_update_time`` for a job that is alive but idle."""
        with self._lock:
            progress = self._active.get(migration_id)
            if progress is None:
                return False
            progress.last_update_time = utc_now()
            if progress.status == MonitoringStatus.STALLED:
                progress.status = MonitoringStatus.IN_PROGRESS
            return True

    def pause_monitoring(self, migration_id: str) -> bool:
        """Mark an in-progress job paused; paused jobs are never flagged as stalled."""
        with self._lock:
            progress = self._active.get(migration_id)
            if progress is None or progress.status not in (MonitoringStatus.IN_PROGRESS, MonitoringStatus.STALLED):
                return False
            progress.status = MonitoringStatus.PAUSED
            progress.last_update_time = utc_now()
            job_logger = self._job_loggers.get(migration_id)

        if job_logger is not None:
            job_logger.info("Migration paused")
        return True

    def resume_monitoring(self, migration_id: str) -> bool:
        """Return a paused job to in-progress with a fresh ``last_update_time``."""
        with self._lock:
            progress = self._active.get(migration_id)
            if progress is None or progress.status != MonitoringStatus.PAUSED:
                return False
            progress.status = MonitoringStatus.IN_PROGRESS
            progress.last_update_time = utc_now()
            job_logger = self._job_loggers.get(migration_id)

        if job_logger is not None:
            job_logger.info("Migration resumed")
        return True

    async def stop_monitoring(
        self,
        migration_id: str,
        status: Optional[MonitoringStatus] = None
    ) -> Optional[MigrationProgress]:
        """Stop monitoring a job, optionally recording its final status."""
        with self._lock:
            progress = self._active.pop(migration_id, None)
            if progress is None:
                return None
            now = utc_now()
            if status is not None:
                progress.status = status
            progress.end_time = progress.end_time or now
            progress.duration = progress.end_time - progress.start_time
            self._finished[migration_id] = progress
            job_logger = self._job_loggers.pop(migration_id, None)

        if job_logger is not None:
            job_logger.info(
                f"Monitoring stopped with status {progress.status.value}. "
                f"Duration: {format_duration(progress.duration.total_seconds())}"
            )
            job_logger.close()

        logger.info(f"Monitoring stopped for migration {migration_id} ({progress.status.value})")
        self._emit_event(progress, ProgressEventType.STOPPED)
        return progress

    # Queries

    def get_progress(self, migration_id: str) -> Optional[MigrationProgress]:
        """Return the job's progress, or None if it was never monitored."""
        with self._lock:
            return self._active.get(migration_id) or self._finished.get(migration_id)

    def get_all_active_monitoring(self) -> List[MigrationProgress]:
        with self._lock:
            return [p for p in self._active.values() if p.status == MonitoringStatus.IN_PROGRESS]

    def is_monitored(self, migration_id: str) -> bool:
        with self._lock:
            return migration_id in self._active

    # Health check

    def perform_health_check(self, now: Optional[datetime] = None) -> List[str]:
        """
        Flag in-progress jobs whose last update is older than the stall threshold.

        Returns:
            Ids of the jobs flagged in this pass
        """
        now = now or utc_now()
        stalled = []
        with self._lock:
            for progress in self._active.values():
                if progress.status != MonitoringStatus.IN_PROGRESS:
                    continue
                idle = now - progress.last_update_time
                if idle > self.stall_threshold:
                    progress.status = MonitoringStatus.STALLED
                    stalled.append(progress)

        for progress in stalled:
            idle_minutes = (now - progress.last_update_time).total_seconds() / 60
            message = f"Migration {progress.migration_id} may be stalled; last update {idle_minutes:.1f} minutes ago"
            logger.warning(message)
            job_logger = self._job_loggers.get(progress.migration_id)
            if job_logger is not None:
                job_logger.warning(message)
            self._emit_event(progress, ProgressEventType.STALLED, message=message)

        return [p.migration_id for p in stalled]

    async def start(self):
        """Start the periodic health check."""
        if self._running:
            return
        self._running = True
        self._health_task = asyncio.create_task(self._health_check_loop(), name="progress-health-check")
        logger.info("Progress monitor health check started")

    async def stop(self):
        """Stop the periodic health check and close open job logs."""
        if self._running:
            self._running = False
            if self._health_task:
                self._health_task.cancel()
                try:
                    await self._health_task
                except asyncio.CancelledError:
                    pass
                self._health_task = None
            logger.info("Progress monitor health check stopped")

        with self._lock:
            loggers = list(self._job_loggers.values())
            self._job_loggers.clear()
        for job_logger in loggers:
            job_logger.close()

    async def _health_check_loop(self):
        while self._running:
            try:
                await asyncio.sleep(self.health_check_interval)
                self.perform_health_check()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Health check failed: {e}")

    # Reports

    async def generate_report(self, migration_id: str) -> Optional[MonitoringReport]:
        """
        Build a monitoring report and save it as ``report_{id}_{ts}.json``.

        Returns None if the job was never monitored.
        """
        progress = self.get_progress(migration_id)
        if progress is None:
            logger.warning(f"No monitoring data for migration {migration_id}")
            return None

        now = utc_now()
        with self._lock:
            step_details = [
                StepDetail(
                    step=step,
                    status=sp.status,
                    start_time=sp.start_time,
                    end_time=sp.end_time,
                    duration=sp.duration,
                    details=sp.details,
                    error_message=sp.error_message,
                )
                for step, sp in progress.steps.items()
            ]
            report = MonitoringReport(
                migration_id=migration_id,
                generated_at=now,
                status=progress.status,
                duration=progress.duration or (now - progress.start_time),
                overall_progress=progress.overall_progress,
                steps_completed=progress.completed_step_count,
                total_steps=len(progress.steps),
                metrics=progress.metrics.model_copy(),
                step_details=step_details,
                log_file_path=progress.log_file_path,
            )

        report.bottlenecks = self._identify_bottlenecks(step_details)
        report.statistics = self._calculate_statistics(step_details)

        report_path = self.logs_path / f"report_{migration_id}_{file_timestamp(now)}.json"
        report.report_file_path = str(report_path)
        write_json_atomic(report_path, report.model_dump(mode="json"))

        logger.info(f"Report generated for migration {migration_id}: {report_path}")
        return report

    @staticmethod
    def _identify_bottlenecks(step_details: List[StepDetail]) -> List[str]:
        bottlenecks = []
        for detail in step_details:
            if detail.status != ProgressStatus.COMPLETED or detail.duration is None:
                continue
            if detail.duration > BOTTLENECK_THRESHOLD:
                minutes = detail.duration.total_seconds() / 60
                bottlenecks.append(f"{detail.step.value}: {minutes:.1f} minutes")
        return bottlenecks

    @staticmethod
    def _calculate_statistics(step_details: List[StepDetail]) -> Dict[str, float]:
        stats: Dict[str, float] = {}
        durations = [
            d.duration.total_seconds() / 60
            for d in step_details
            if d.status == ProgressStatus.COMPLETED and d.duration is not None
        ]
        if durations:
            stats["average_duration"] = sum(durations) / len(durations)
            stats["min_duration"] = min(durations)
            stats["max_duration"] = max(durations)
            stats["total_duration"] = sum(durations)

        completed = sum(1 for d in step_details if d.status == ProgressStatus.COMPLETED)
        stats["success_rate"] = completed / len(step_details) * 100 if step_details else 0.0
        return stats
