"""
Tests for the progress monitor.

Covers the step state machine, stall detection, callbacks and reports.
"""

import json
from datetime import timedelta
from pathlib import Path

import pytest

from migration_orchestrator.models.progress import (
    MigrationStep,
    MonitoringStatus,
    ProgressEventType,
    ProgressStatus,
)
from migration_orchestrator.monitoring.progress_monitor import ProgressMonitor
from migration_orchestrator.utils.helpers import utc_now


class TestProgressMonitor:
    """Test cases for ProgressMonitor."""

    @pytest.mark.asyncio
    async def test_start_monitoring_creates_log(self, monitor):
        log_path = await monitor.start_monitoring("m1")

        progress = monitor.get_progress("m1")
        assert Path(log_path).name.startswith("migration_m1_")
        assert Path(log_path).exists()
        assert len(progress.steps) == 11
        assert all(s.status == ProgressStatus.PENDING for s in progress.steps.values())
        assert progress.last_update_time == progress.start_time
        assert progress.status == MonitoringStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_progress_is_monotonic_under_completions(self, monitor):
        await monitor.start_monitoring("m1")
        seen = []

        for step in MigrationStep:
            await monitor.update_progress("m1", step, ProgressStatus.IN_PROGRESS)
            progress = await monitor.update_progress("m1", step, ProgressStatus.COMPLETED)
            seen.append(progress.overall_progress)

        assert seen == sorted(seen)
        assert seen[-1] == pytest.approx(100.0)
        progress = monitor.get_progress("m1")
        assert progress.status == MonitoringStatus.COMPLETED
        assert progress.end_time is not None
        assert progress.duration is not None
        assert progress.metrics.completed_steps == 11

    @pytest.mark.asyncio
    async def test_failed_step_fails_job(self, monitor):
        await monitor.start_monitoring("m1")

        progress = await monitor.update_progress(
            "m1", MigrationStep.SOURCE_EXTRACTION, ProgressStatus.FAILED, "API unavailable"
        )

        assert progress.status == MonitoringStatus.FAILED
        assert progress.steps[MigrationStep.SOURCE_EXTRACTION].error_message == "API unavailable"
        assert progress.metrics.failed_steps == 1

    @pytest.mark.asyncio
    async def test_update_for_unknown_job_is_ignored(self, monitor):
        assert await monitor.update_progress(
            "nope", MigrationStep.INITIALIZATION, ProgressStatus.COMPLETED
        ) is None
        assert monitor.get_progress("nope") is None

    @pytest.mark.asyncio
    async def test_metrics_counts(self, monitor):
        await monitor.start_monitoring("m1")
        progress = await monitor.update_progress(
            "m1", MigrationStep.TARGET_CREATION, ProgressStatus.IN_PROGRESS,
            entities_migrated=7, errors=2
        )

        assert progress.metrics.active_steps == 1
        assert progress.metrics.total_entities_migrated == 7
        assert progress.metrics.total_errors == 2

    @pytest.mark.asyncio
    async def test_stop_monitoring_records_status(self, monitor):
        await monitor.start_monitoring("m1")

        stopped = await monitor.stop_monitoring("m1", MonitoringStatus.CANCELLED)

        assert stopped.status == MonitoringStatus.CANCELLED
        assert not monitor.is_monitored("m1")
        assert monitor.get_progress("m1").status == MonitoringStatus.CANCELLED
        assert monitor.get_all_active_monitoring() == []
        assert "Monitoring stopped" in Path(stopped.log_file_path).read_text()

    @pytest.mark.asyncio
    async def test_callbacks_receive_events(self, monitor):
        events = []
        monitor.add_callback(events.append)
        monitor.add_callback(lambda event: 1 / 0)

        await monitor.start_monitoring("m1")
        await monitor.update_progress("m1", MigrationStep.INITIALIZATION, ProgressStatus.COMPLETED)

        assert [e.event_type for e in events] == [ProgressEventType.STARTED, ProgressEventType.PROGRESS]
        assert events[1].step == MigrationStep.INITIALIZATION

        monitor.remove_callback(events.append)
        await monitor.update_progress("m1", MigrationStep.PREREQUISITE_VALIDATION, ProgressStatus.IN_PROGRESS)
        assert len(events) == 2


class TestStallDetection:

    @pytest.mark.asyncio
    async def test_flags_only_in_progress_jobs_past_threshold(self, state_store):
        monitor = ProgressMonitor(state_store.logs_path, stall_threshold=timedelta(minutes=10))
        for job_id in ("idle", "busy", "failed"):
            await monitor.start_monitoring(job_id)
        await monitor.update_progress("failed", MigrationStep.INITIALIZATION, ProgressStatus.FAILED)

        later = utc_now() + timedelta(minutes=11)
        monitor.get_progress("busy").last_update_time = later - timedelta(minutes=1)

        stalled = monitor.perform_health_check(now=later)

        assert stalled == ["idle"]
        assert monitor.get_progress("idle").status == MonitoringStatus.STALLED
        assert monitor.get_progress("busy").status == MonitoringStatus.IN_PROGRESS
        assert monitor.get_progress("failed").status == MonitoringStatus.FAILED
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_paused_job_is_not_flagged(self, monitor):
        await monitor.start_monitoring("m1")

        assert monitor.pause_monitoring("m1")
        assert not monitor.pause_monitoring("m1")
        later = utc_now() + timedelta(hours=1)
        assert monitor.perform_health_check(now=later) == []
        assert monitor.get_progress("m1").status == MonitoringStatus.PAUSED
        assert monitor.get_all_active_monitoring() == []

        assert monitor.resume_monitoring("m1")
        assert not monitor.resume_monitoring("m1")
        assert monitor.get_progress("m1").status == MonitoringStatus.IN_PROGRESS
        assert monitor.perform_health_check(now=utc_now() + timedelta(minutes=5)) == []
        assert not monitor.pause_monitoring("unknown")

    @pytest.mark.asyncio
    async def test_update_revives_stalled_job(self, monitor):
        await monitor.start_monitoring("m1")
        monitor.perform_health_check(now=utc_now() + timedelta(hours=1))
        assert monitor.get_progress("m1").status == MonitoringStatus.STALLED

        await monitor.update_progress("m1", MigrationStep.INITIALIZATION, ProgressStatus.IN_PROGRESS)

        assert monitor.get_progress("m1").status == MonitoringStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_heartbeat_refreshes_update_time(self, monitor):
        await monitor.start_monitoring("m1")
        before = monitor.get_progress("m1").last_update_time

        assert monitor.heartbeat("m1")
        assert monitor.get_progress("m1").last_update_time >= before
        assert not monitor.heartbeat("unknown")

    @pytest.mark.asyncio
    async def test_start_and_stop_loop(self, state_store):
        monitor = ProgressMonitor(state_store.logs_path, health_check_interval=0.01)
        await monitor.start()
        await monitor.start()
        await monitor.stop()
        assert monitor._health_task is None


class TestReports:

    @pytest.mark.asyncio
    async def test_report_for_unknown_job(self, monitor):
        assert await monitor.generate_report("nope") is None

    @pytest.mark.asyncio
    async def test_report_contents(self, monitor):
        await monitor.start_monitoring("m1")
        await monitor.update_progress("m1", MigrationStep.INITIALIZATION, ProgressStatus.IN_PROGRESS)
        await monitor.update_progress("m1", MigrationStep.INITIALIZATION, ProgressStatus.COMPLETED)
        await monitor.update_progress("m1", MigrationStep.PREREQUISITE_VALIDATION, ProgressStatus.IN_PROGRESS)
        await monitor.update_progress("m1", MigrationStep.PREREQUISITE_VALIDATION, ProgressStatus.COMPLETED)

        # Make one step look slow
        slow = monitor.get_progress("m1").steps[MigrationStep.PREREQUISITE_VALIDATION]
        slow.start_time = slow.end_time - timedelta(minutes=6)

        report = await monitor.generate_report("m1")

        assert report.steps_completed == 2
        assert report.total_steps == 11
        assert report.bottlenecks == ["prerequisite_validation: 6.0 minutes"]
        assert report.statistics["max_duration"] == pytest.approx(6.0, abs=0.01)
        assert report.statistics["success_rate"] == pytest.approx(2 / 11 * 100)
        saved = json.loads(Path(report.report_file_path).read_text())
        assert Path(report.report_file_path).name.startswith("report_m1_")
        assert saved["migration_id"] == "m1"

    @pytest.mark.asyncio
    async def test_only_completed_steps_are_bottlenecks(self, monitor):
        await monitor.start_monitoring("m1")
        await monitor.update_progress("m1", MigrationStep.INITIALIZATION, ProgressStatus.IN_PROGRESS)
        await monitor.update_progress("m1", MigrationStep.INITIALIZATION, ProgressStatus.SKIPPED)
        await monitor.update_progress("m1", MigrationStep.PREREQUISITE_VALIDATION, ProgressStatus.IN_PROGRESS)
        await monitor.update_progress("m1", MigrationStep.PREREQUISITE_VALIDATION, ProgressStatus.FAILED, "boom")

        for step in (MigrationStep.INITIALIZATION, MigrationStep.PREREQUISITE_VALIDATION):
            slow = monitor.get_progress("m1").steps[step]
            slow.start_time = slow.end_time - timedelta(minutes=30)

        report = await monitor.generate_report("m1")

        assert report.bottlenecks == []
