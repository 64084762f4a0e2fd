"""
Unit tests for the state store and the job registry.
"""

import asyncio

import pytest

from migration_orchestrator.core.exceptions import PersistenceError
from migration_orchestrator.models.jobs import (
    BatchJob,
    BatchStatus,
    IncrementalJob,
    MigrationSchedule,
)
from migration_orchestrator.persistence.job_store import JobStore

from conftest import T0, make_items


class TestStateStore:
    """Test cases for StateStore."""

    def test_creates_directory_layout(self, state_store):
        for name in ("batch-migrations", "incremental-migrations", "migration-backups",
                     "migration-logs", "rollback-snapshots"):
            assert (state_store.base_path / name).is_dir()

    @pytest.mark.asyncio
    async def test_batch_job_round_trip(self, state_store):
        job = BatchJob(batch_id="b1", batch_name="queues", total_items=3, items=make_items(3))

        await state_store.save_batch_job(job)
        loaded = await state_store.load_batch_job("b1")

        assert state_store.batch_file("b1").name == "batch_b1.json"
        assert loaded == job

    @pytest.mark.asyncio
    async def test_incremental_and_schedule_share_directory(self, state_store):
        await state_store.save_incremental_job(IncrementalJob(migration_id="m1"))
        await state_store.save_schedule(
            MigrationSchedule(schedule_id="s1", scheduled_at=T0, next_execution_at=T0)
        )

        assert [j.migration_id for j in await state_store.list_incremental_jobs()] == ["m1"]
        assert [s.schedule_id for s in await state_store.list_schedules()] == ["s1"]

    @pytest.mark.asyncio
    async def test_unknown_ids_load_as_none(self, state_store):
        assert await state_store.load_batch_job("missing") is None
        assert await state_store.load_incremental_job("missing") is None
        assert await state_store.load_schedule("missing") is None
        assert await state_store.load_job_document("missing") is None

    @pytest.mark.asyncio
    async def test_corrupt_file_is_skipped(self, state_store):
        await state_store.save_batch_job(BatchJob(batch_id="good"))
        state_store.batch_file("bad").write_text("{not json")

        assert await state_store.load_batch_job("bad") is None
        assert [j.batch_id for j in await state_store.list_batch_jobs()] == ["good"]

    @pytest.mark.asyncio
    async def test_writes_leave_no_temp_files(self, state_store):
        for i in range(3):
            await state_store.save_batch_job(BatchJob(batch_id="b1", current_batch_number=i))

        assert [p.name for p in state_store.batch_path.iterdir()] == ["batch_b1.json"]

    @pytest.mark.asyncio
    async def test_job_document_round_trip(self, state_store):
        await state_store.save_batch_job(BatchJob(batch_id="b1", status=BatchStatus.RUNNING))
        payload = await state_store.load_job_document("b1")
        assert payload["kind"] == "batch"

        state_store.batch_file("b1").unlink()
        path = await state_store.restore_job_document("b1", payload)

        assert path == state_store.batch_file("b1")
        assert (await state_store.load_batch_job("b1")).status == BatchStatus.RUNNING

    @pytest.mark.asyncio
    async def test_restore_unknown_document_kind(self, state_store):
        with pytest.raises(PersistenceError):
            await state_store.restore_job_document("x", {"kind": "other", "document": {}})


class TestJobStore:
    """Test cases for JobStore."""

    def test_register_get_remove(self):
        store = JobStore()
        store.register("a", BatchJob(batch_id="a"))
        store.register("b", IncrementalJob(migration_id="b"))

        assert "a" in store
        assert len(store) == 2
        assert [j.batch_id for j in store.jobs(BatchJob)] == ["a"]
        assert store.remove("a").batch_id == "a"
        assert store.get("a") is None

    @pytest.mark.asyncio
    async def test_launch_refuses_second_worker(self):
        store = JobStore()
        store.register("a", object())
        gate = asyncio.Event()

        async def worker():
            await gate.wait()

        first = store.launch("a", worker())
        second = store.launch("a", worker())

        assert first is second
        assert store.is_active("a")
        gate.set()
        assert await store.wait("a", timeout=1)
        assert not store.is_active("a")

    @pytest.mark.asyncio
    async def test_launch_unregistered_job(self):
        store = JobStore()

        async def worker():
            pass

        with pytest.raises(KeyError):
            store.launch("missing", worker())

    @pytest.mark.asyncio
    async def test_wake_interrupts_sleep(self):
        store = JobStore()
        store.register("a", object())

        sleeper = asyncio.create_task(store.sleep("a", 10))
        await asyncio.sleep(0)
        store.wake("a")

        assert await asyncio.wait_for(sleeper, timeout=1) is True
        assert await store.sleep("a", 0.01) is False

    @pytest.mark.asyncio
    async def test_cancel_and_shutdown(self):
        store = JobStore()
        for job_id in ("a", "b"):
            store.register(job_id, object())
            store.launch(job_id, asyncio.sleep(10))

        await store.cancel("a")
        assert not store.is_active("a")
        assert store.is_active("b")

        await store.shutdown(timeout=1)
        assert not store.is_active("b")
