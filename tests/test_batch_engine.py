"""
Tests for the batch migration engine: batching, pause/resume, cancel,
failure handling and resuming from persisted state.
"""

from datetime import timedelta
from typing import List

import pytest

from migration_orchestrator.core.exceptions import ClientError, ErrorKind, NetworkError
from migration_orchestrator.models.jobs import (
    BatchItem,
    BatchItemStatus,
    BatchMigrationRequest,
    BatchStatus,
)
from migration_orchestrator.models.progress import MigrationStep, MonitoringStatus, ProgressStatus
from migration_orchestrator.orchestrator.batch import BatchMigrationEngine
from migration_orchestrator.persistence.job_store import JobStore
from migration_orchestrator.utils.helpers import utc_now

from conftest import fast_configuration, make_items


@pytest.fixture
def engine(state_store, job_store, monitor, destination_client, backup_manager, rollback_manager):
    return BatchMigrationEngine(
        state_store,
        job_store,
        monitor,
        destination_client=destination_client,
        backup_manager=backup_manager,
        rollback_manager=rollback_manager,
        retry_base_delay=0,
    )


def make_request(count: int, batch_size: int = 10, **config) -> BatchMigrationRequest:
    return BatchMigrationRequest(
        batch_name="queues",
        items=make_items(count),
        batch_size=batch_size,
        configuration=fast_configuration(**config),
    )


class TestBatchExecution:

    @pytest.mark.asyncio
    async def test_processes_all_items_in_batches(self, engine, destination_client, monitor):
        result = await engine.start_batch(make_request(25))

        assert result.success
        assert result.estimated_duration.total_seconds() == 3 * 2 * 60
        assert await engine.wait_for_batch(result.batch_id, timeout=5)

        status = await engine.get_batch_status(result.batch_id)
        assert status.found
        assert status.status == BatchStatus.COMPLETED
        assert status.processed_items == 25
        assert status.failed_items == 0
        assert status.total_batches == 3
        assert status.current_batch_number == 3
        assert status.progress_percentage == pytest.approx(100.0)
        assert destination_client.count("Queue") == 25

        progress = monitor.get_progress(result.batch_id)
        assert progress.status == MonitoringStatus.COMPLETED
        assert progress.steps[MigrationStep.COMPLETION].status == ProgressStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_backup_and_snapshot_are_recorded(self, engine, state_store):
        result = await engine.start_batch(make_request(3))
        await engine.wait_for_batch(result.batch_id, timeout=5)

        job = await state_store.load_batch_job(result.batch_id)
        assert job.backup_id is not None
        assert job.snapshot_path is not None

    @pytest.mark.asyncio
    async def test_skipped_backup_is_reported(self, engine, monitor):
        request = make_request(3)
        request.create_backup = False

        result = await engine.start_batch(request)
        await engine.wait_for_batch(result.batch_id, timeout=5)

        step = monitor.get_progress(result.batch_id).steps[MigrationStep.BACKUP_CREATION]
        assert step.status == ProgressStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_item_failures_complete_with_errors(self, state_store, job_store, monitor):
        async def processor(item: BatchItem):
            if item.item_id in ("item-3", "item-7"):
                raise ClientError("rejected", kind=ErrorKind.VALIDATION)

        engine = BatchMigrationEngine(state_store, job_store, monitor, item_processor=processor)
        result = await engine.start_batch(make_request(10, batch_size=4))
        await engine.wait_for_batch(result.batch_id, timeout=5)

        status = await engine.get_batch_status(result.batch_id)
        assert status.status == BatchStatus.COMPLETED_WITH_ERRORS
        assert status.processed_items == 8
        assert status.failed_items == 2
        assert status.error_messages == ["item-3: rejected", "item-7: rejected"]

    @pytest.mark.asyncio
    async def test_abort_on_error(self, state_store, job_store, monitor):
        async def processor(item: BatchItem):
            if item.item_id == "item-2":
                raise ClientError("rejected", kind=ErrorKind.VALIDATION)

        engine = BatchMigrationEngine(state_store, job_store, monitor, item_processor=processor)
        result = await engine.start_batch(make_request(10, batch_size=4, continue_on_error=False))
        await engine.wait_for_batch(result.batch_id, timeout=5)

        job = await state_store.load_batch_job(result.batch_id)
        assert job.status == BatchStatus.FAILED
        assert "item-2" in job.error_message
        assert len(job.processed_items) == 2
        assert len(job.failed_items) == 8
        assert {i.status for i in job.failed_items[1:]} == {BatchItemStatus.SKIPPED}
        assert monitor.get_progress(result.batch_id).status == MonitoringStatus.FAILED

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, state_store, job_store, monitor):
        calls: List[str] = []

        async def processor(item: BatchItem):
            calls.append(item.item_id)
            if calls.count(item.item_id) == 1 and item.item_id == "item-0":
                raise NetworkError("timed out")

        engine = BatchMigrationEngine(state_store, job_store, monitor, item_processor=processor,
                                      retry_base_delay=0)
        result = await engine.start_batch(make_request(2, max_retries=2))
        await engine.wait_for_batch(result.batch_id, timeout=5)

        job = await state_store.load_batch_job(result.batch_id)
        assert job.status == BatchStatus.COMPLETED
        assert calls == ["item-0", "item-0", "item-1"]
        assert job.processed_items[0].retry_count == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, state_store, job_store, monitor):
        calls: List[str] = []

        async def processor(item: BatchItem):
            calls.append(item.item_id)
            raise NetworkError("down")

        engine = BatchMigrationEngine(state_store, job_store, monitor, item_processor=processor,
                                      retry_base_delay=0)
        result = await engine.start_batch(make_request(1, max_retries=2))
        await engine.wait_for_batch(result.batch_id, timeout=5)

        status = await engine.get_batch_status(result.batch_id)
        assert len(calls) == 3
        assert status.status == BatchStatus.COMPLETED_WITH_ERRORS


class TestBatchValidation:

    @pytest.mark.asyncio
    async def test_rejects_invalid_requests(self, engine, job_store):
        assert not (await engine.start_batch(make_request(0))).success
        assert not (await engine.start_batch(make_request(5, batch_size=0))).success
        assert len(job_store) == 0

    @pytest.mark.asyncio
    async def test_rejects_without_processor(self, state_store, job_store, monitor):
        engine = BatchMigrationEngine(state_store, job_store, monitor)
        result = await engine.start_batch(make_request(5))
        assert not result.success
        assert result.batch_id == ""

    @pytest.mark.asyncio
    async def test_unknown_batch(self, engine):
        status = await engine.get_batch_status("missing")

        assert not status.found
        assert "not found" in status.message
        assert not await engine.pause_batch("missing")
        assert not await engine.resume_batch("missing")
        assert not await engine.cancel_batch("missing")


class TestBatchControl:

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, state_store, job_store, monitor):
        engine = None

        async def processor(item: BatchItem):
            if item.item_id == "item-9":
                assert await engine.pause_batch(batch_id)

        engine = BatchMigrationEngine(state_store, job_store, monitor, item_processor=processor)
        result = await engine.start_batch(make_request(25))
        batch_id = result.batch_id
        await engine.wait_for_batch(batch_id, timeout=5)

        paused = await engine.get_batch_status(batch_id)
        assert paused.status == BatchStatus.PAUSED
        assert paused.processed_items == 10
        assert paused.current_batch_number == 1
        assert [b.batch_id for b in await engine.get_active_batches()] == [batch_id]
        assert not await engine.pause_batch(batch_id)

        assert await engine.resume_batch(batch_id)
        await engine.wait_for_batch(batch_id, timeout=5)

        done = await engine.get_batch_status(batch_id)
        assert done.status == BatchStatus.COMPLETED
        assert done.processed_items == 25
        assert done.current_batch_number == 3
        assert await engine.get_active_batches() == []

    @pytest.mark.asyncio
    async def test_paused_batch_is_not_flagged_as_stalled(self, state_store, job_store, monitor):
        engine = None

        async def processor(item: BatchItem):
            if item.item_id == "item-1":
                assert await engine.pause_batch(batch_id)

        engine = BatchMigrationEngine(state_store, job_store, monitor, item_processor=processor)
        result = await engine.start_batch(make_request(4, batch_size=2))
        batch_id = result.batch_id
        await engine.wait_for_batch(batch_id, timeout=5)

        assert (await engine.get_batch_status(batch_id)).status == BatchStatus.PAUSED
        assert monitor.perform_health_check(now=utc_now() + timedelta(minutes=11)) == []
        assert monitor.get_progress(batch_id).status == MonitoringStatus.PAUSED

        assert await engine.resume_batch(batch_id)
        assert monitor.get_progress(batch_id).status == MonitoringStatus.IN_PROGRESS
        await engine.wait_for_batch(batch_id, timeout=5)
        assert monitor.get_progress(batch_id).status == MonitoringStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_skips_remaining_items(self, state_store, job_store, monitor):
        engine = None

        async def processor(item: BatchItem):
            if item.item_id == "item-12":
                assert await engine.cancel_batch(batch_id)

        engine = BatchMigrationEngine(state_store, job_store, monitor, item_processor=processor)
        result = await engine.start_batch(make_request(25))
        batch_id = result.batch_id
        await engine.wait_for_batch(batch_id, timeout=5)

        job = await state_store.load_batch_job(batch_id)
        assert job.status == BatchStatus.CANCELLED
        assert len(job.processed_items) == 13
        assert len(job.processed_items) + len(job.failed_items) == job.total_items
        assert job.items == []
        assert monitor.get_progress(batch_id).status == MonitoringStatus.CANCELLED
        assert not await engine.resume_batch(batch_id)

    @pytest.mark.asyncio
    async def test_cancel_paused_batch(self, state_store, job_store, monitor):
        engine = None

        async def processor(item: BatchItem):
            if item.item_id == "item-1":
                await engine.pause_batch(batch_id)

        engine = BatchMigrationEngine(state_store, job_store, monitor, item_processor=processor)
        result = await engine.start_batch(make_request(6, batch_size=2))
        batch_id = result.batch_id
        await engine.wait_for_batch(batch_id, timeout=5)

        assert await engine.cancel_batch(batch_id)

        job = await state_store.load_batch_job(batch_id)
        assert job.status == BatchStatus.CANCELLED
        assert len(job.processed_items) == 2
        assert len(job.failed_items) == 4

    @pytest.mark.asyncio
    async def test_resume_after_restart(self, state_store, monitor, destination_client):
        engine = None

        async def pausing_processor(item: BatchItem):
            await destination_client.create_entity(item.item_type, item.data)
            if item.item_id == "item-4":
                await engine.pause_batch(batch_id)

        engine = BatchMigrationEngine(state_store, JobStore(), monitor, item_processor=pausing_processor)
        result = await engine.start_batch(make_request(10, batch_size=5))
        batch_id = result.batch_id
        await engine.wait_for_batch(batch_id, timeout=5)

        # A new process sees only the persisted job
        restarted = BatchMigrationEngine(state_store, JobStore(), monitor, destination_client=destination_client)
        assert await restarted.resume_batch(batch_id)
        await restarted.wait_for_batch(batch_id, timeout=5)

        job = await state_store.load_batch_job(batch_id)
        assert job.status == BatchStatus.COMPLETED
        assert len(job.processed_items) == 10
        assert job.current_batch_number == 2
        assert destination_client.count("Queue") == 10
