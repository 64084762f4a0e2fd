"""
Migration scheduler for recurring incremental migrations.

This module provides the MigrationScheduler class that persists schedules,
checks them on a periodic tick and starts an incremental migration for
every schedule that is due, unless the schedule's previous run is still
in flight.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

import croniter
from dateutil.relativedelta import relativedelta

from migration_orchestrator.core.exceptions import SchedulingError
from migration_orchestrator.models.jobs import (
    IncrementalMigrationRequest,
    MigrationSchedule,
    RecurrencePattern,
    ScheduleMigrationRequest,
)
from migration_orchestrator.orchestrator.incremental import IncrementalMigrationEngine
from migration_orchestrator.persistence.state_store import StateStore
from migration_orchestrator.utils.helpers import generate_id, utc_now
from migration_orchestrator.utils.logging import LogEntry, LogLevel

logger = logging.getLogger(__name__)

_FIXED_STEPS = {
    RecurrencePattern.HOURLY.value: relativedelta(hours=1),
    RecurrencePattern.DAILY.value: relativedelta(days=1),
    RecurrencePattern.WEEKLY.value: relativedelta(days=7),
    RecurrencePattern.MONTHLY.value: relativedelta(months=1),
}


def is_cron_expression(pattern: str) -> bool:
    """Patterns with more than one field are treated as cron expressions."""
    return len(pattern.split()) > 1


def validate_recurrence_pattern(pattern: str) -> None:
    """
    Raises:
        ValueError: If ``pattern`` looks like a cron expression but is invalid
    """
    if is_cron_expression(pattern) and not croniter.croniter.is_valid(pattern):
        raise ValueError(f"Invalid cron expression: {pattern}")


def calculate_next_execution(base: datetime, pattern: str) -> datetime:
    """
    Next execution after ``base``.

    Named patterns step by a fixed amount (monthly by calendar month),
    cron expressions use croniter and unknown names fall back to hourly.
    """
    step = _FIXED_STEPS.get(pattern.strip().lower())
    if step is not None:
        return base + step

    if is_cron_expression(pattern):
        try:
            return croniter.croniter(pattern, base).get_next(datetime)
        except (ValueError, KeyError) as e:
            logger.warning(f"Invalid cron expression {pattern!r}, falling back to hourly: {e}")
    else:
        logger.warning(f"Unknown recurrence pattern {pattern!r}, falling back to hourly")
    return base + timedelta(hours=1)


class MigrationScheduler:
    """
    Triggers incremental migrations from persisted schedules.

    Schedules live in the state store, so they survive restarts. Each
    triggered run is remembered as the schedule's ``active_migration_id``
    and the schedule is skipped while that run is still running or paused.
    """

    def __init__(
        self,
        state_store: StateStore,
        incremental_engine: IncrementalMigrationEngine,
        tick_interval: float = 60.0
    ):
        self.state_store = state_store
        self.incremental_engine = incremental_engine
        self.tick_interval = tick_interval

        self._scheduler_task: Optional[asyncio.Task] = None
        self._running = False
        self._scheduler_logs: List[LogEntry] = []

    def _log(self, level: LogLevel, message: str, schedule_id: Optional[str] = None, **kwargs):
        """Add a log entry."""
        self._scheduler_logs.append(LogEntry(
            level=level,
            message=message,
            component="MigrationScheduler",
            metadata={"schedule_id": schedule_id, **kwargs}
        ))
        logger.log(getattr(logging, level.value), message)

    def get_logs(self, limit: Optional[int] = None) -> List[LogEntry]:
        return self._scheduler_logs[-limit:] if limit else list(self._scheduler_logs)

    @property
    def is_running(self) -> bool:
        return self._running

    # Schedules

    async def schedule_incremental_migration(self, request: ScheduleMigrationRequest) -> MigrationSchedule:
        """
        Persist a new schedule.

        The first execution is the first recurrence after ``scheduled_at``,
        not ``scheduled_at`` itself.

        Raises:
            ValueError: If the recurrence pattern is an invalid cron expression
        """
        pattern = request.recurrence_pattern.strip()
        validate_recurrence_pattern(pattern)

        sync_interval = request.sync_interval
        if "sync_interval" not in request.model_fields_set:
            sync_interval = self.incremental_engine.default_sync_interval

        schedule = MigrationSchedule(
            schedule_id=generate_id(),
            migration_name=request.migration_name,
            scheduled_at=request.scheduled_at,
            next_execution_at=calculate_next_execution(request.scheduled_at, pattern),
            recurrence_pattern=pattern,
            sync_interval=sync_interval,
            configuration=request.configuration.model_copy(deep=True),
            change_detection_rules=[r.model_copy() for r in request.change_detection_rules],
        )
        await self.state_store.save_schedule(schedule)

        self._log(
            LogLevel.INFO,
            f"Scheduled incremental migration {schedule.migration_name}",
            schedule.schedule_id,
            pattern=pattern,
            first_run=schedule.next_execution_at.isoformat()
        )
        return schedule

    async def get_scheduled_migrations(self) -> List[MigrationSchedule]:
        """Active schedules, soonest first."""
        schedules = [s for s in await self.state_store.list_schedules() if s.is_active]
        return sorted(schedules, key=lambda s: s.next_execution_at)

    async def get_schedule(self, schedule_id: str) -> Optional[MigrationSchedule]:
        return await self.state_store.load_schedule(schedule_id)

    async def cancel_schedule(self, schedule_id: str) -> bool:
        schedule = await self.state_store.load_schedule(schedule_id)
        if schedule is None or not schedule.is_active:
            return False
        schedule.is_active = False
        await self.state_store.save_schedule(schedule)
        self._log(LogLevel.INFO, f"Schedule {schedule_id} cancelled", schedule_id)
        return True

    # Triggering

    async def check_scheduled_migrations(self, now: Optional[datetime] = None) -> List[str]:
        """
        Start an incremental migration for every due schedule.

        Returns:
            Ids of the migrations started in this pass
        """
        now = now or utc_now()
        started = []
        for schedule in await self.get_scheduled_migrations():
            if schedule.next_execution_at > now:
                continue
            try:
                migration_id = await self._execute_schedule(schedule, now)
            except Exception as e:
                self._log(
                    LogLevel.ERROR,
                    f"Scheduled migration {schedule.schedule_id} failed to run: {str(e)}",
                    schedule.schedule_id
                )
                continue
            if migration_id:
                started.append(migration_id)
        return started

    async def _execute_schedule(self, schedule: MigrationSchedule, now: datetime) -> Optional[str]:
        schedule.next_execution_at = calculate_next_execution(now, schedule.recurrence_pattern)

        if schedule.active_migration_id and await self.incremental_engine.is_in_flight(schedule.active_migration_id):
            schedule.skipped_executions += 1
            self._log(
                LogLevel.WARNING,
                f"Skipping {schedule.migration_name}: run {schedule.active_migration_id} is still in flight",
                schedule.schedule_id
            )
            await self.state_store.save_schedule(schedule)
            return None

        watermark = await self._watermark(schedule)
        self._log(LogLevel.INFO, f"Running scheduled migration {schedule.migration_name}", schedule.schedule_id)
        result = await self.incremental_engine.start_incremental(IncrementalMigrationRequest(
            migration_name=schedule.migration_name,
            sync_interval=schedule.sync_interval,
            last_sync_timestamp=watermark,
            configuration=schedule.configuration,
            change_detection_rules=schedule.change_detection_rules,
        ))
        if not result.success:
            # Watermark stays put so the next run picks up the same changes
            await self.state_store.save_schedule(schedule)
            raise SchedulingError(
                f"Incremental migration for schedule {schedule.schedule_id} did not start: {result.error}"
            )

        schedule.active_migration_id = result.migration_id
        schedule.last_executed_at = now
        schedule.execution_count += 1
        await self.state_store.save_schedule(schedule)
        return result.migration_id

    async def _watermark(self, schedule: MigrationSchedule) -> Optional[datetime]:
        """
        Watermark for the next run of ``schedule``.

        The previous run's own watermark only advances past changes it
        actually synced, so a failed run leaves its changes for the next one.
        """
        if schedule.active_migration_id:
            previous = await self.incremental_engine.get_incremental_progress(schedule.active_migration_id)
            if previous.found and previous.last_sync_at is not None:
                return previous.last_sync_at
        return schedule.last_executed_at

    # Loop

    async def start(self):
        """Start the scheduler tick loop."""
        if self._running:
            self._log(LogLevel.WARNING, "Scheduler is already running")
            return
        self._running = True
        self._scheduler_task = asyncio.create_task(self._scheduler_loop(), name="migration-scheduler")
        self._log(LogLevel.INFO, "Migration scheduler started")

    async def stop(self):
        """Stop the scheduler tick loop."""
        if not self._running:
            return
        self._running = False
        if self._scheduler_task:
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass
            self._scheduler_task = None
        self._log(LogLevel.INFO, "Migration scheduler stopped")

    async def _scheduler_loop(self):
        """Main scheduler loop."""
        while self._running:
            try:
                await self.check_scheduled_migrations()
                await asyncio.sleep(self.tick_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._log(LogLevel.ERROR, f"Scheduler loop error: {str(e)}")
                await asyncio.sleep(self.tick_interval)
