"""
In-memory registry of active jobs and their worker tasks.

The engines share one ``JobStore`` instead of module-level maps. Every
worker is launched through the store so that shutdown and cancellation
can join or abort it deterministically.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Coroutine, Dict, List, Optional, Type

logger = logging.getLogger(__name__)


@dataclass
class JobHandle:
    """A registered job with its worker task and wake-up signal."""
    job_id: str
    job: Any
    task: Optional[asyncio.Task] = None
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_active(self) -> bool:
        return self.task is not None and not self.task.done()


class JobStore:
    """Lock-guarded map of job id to job record and worker handle."""

    def __init__(self):
        self._handles: Dict[str, JobHandle] = {}
        self._lock = threading.RLock()

    def register(self, job_id: str, job: Any) -> None:
        """Register ``job``, replacing the record but keeping any live worker."""
        with self._lock:
            handle = self._handles.get(job_id)
            if handle is None:
                self._handles[job_id] = JobHandle(job_id=job_id, job=job)
            else:
                handle.job = job

    def get(self, job_id: str) -> Optional[Any]:
        with self._lock:
            handle = self._handles.get(job_id)
            return handle.job if handle else None

    def remove(self, job_id: str) -> Optional[Any]:
        with self._lock:
            handle = self._handles.pop(job_id, None)
        return handle.job if handle else None

    def jobs(self, job_type: Optional[Type] = None) -> List[Any]:
        with self._lock:
            records = [h.job for h in self._handles.values()]
        if job_type is not None:
            records = [r for r in records if isinstance(r, job_type)]
        return records

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def launch(self, job_id: str, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        """
        Start ``coro`` as the worker of ``job_id``.

        If the job already has a live worker the coroutine is discarded and
        the existing task is returned.
        """
        with self._lock:
            handle = self._handles.get(job_id)
            if handle is None:
                coro.close()
                raise KeyError(f"Job {job_id} is not registered")
            if handle.is_active:
                coro.close()
                logger.debug(f"Worker for job {job_id} is already running")
                return handle.task
            handle.wakeup.clear()
            handle.task = asyncio.create_task(coro, name=name or f"worker-{job_id}")
            handle.task.add_done_callback(self._on_worker_done)
            return handle.task

    @staticmethod
    def _on_worker_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Worker {task.get_name()} ended with an unhandled error: {exc}")

    def is_active(self, job_id: str) -> bool:
        with self._lock:
            handle = self._handles.get(job_id)
            return bool(handle and handle.is_active)

    def wake(self, job_id: str) -> None:
        """Interrupt the job's current wait so it re-checks its status."""
        with self._lock:
            handle = self._handles.get(job_id)
        if handle is not None:
            handle.wakeup.set()

    async def sleep(self, job_id: str, seconds: float) -> bool:
        """
        Sleep up to ``seconds`` unless woken first.

        Returns True if the sleep was interrupted by ``wake``.
        """
        with self._lock:
            handle = self._handles.get(job_id)
        if handle is None:
            await asyncio.sleep(seconds)
            return False
        try:
            await asyncio.wait_for(handle.wakeup.wait(), timeout=max(seconds, 0))
        except asyncio.TimeoutError:
            return False
        handle.wakeup.clear()
        return True

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Wait for the job's worker to finish. Returns False on timeout."""
        with self._lock:
            handle = self._handles.get(job_id)
            task = handle.task if handle else None
        if task is None:
            return True
        done, _ = await asyncio.wait({task}, timeout=timeout)
        return task in done

    async def cancel(self, job_id: str) -> None:
        """Abort the job's worker and wait for it to unwind."""
        with self._lock:
            handle = self._handles.get(job_id)
            task = handle.task if handle else None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Cancel every live worker and join them."""
        with self._lock:
            tasks = [h.task for h in self._handles.values() if h.is_active]
        if not tasks:
            return
        logger.info(f"Stopping {len(tasks)} active worker(s)")
        for task in tasks:
            task.cancel()
        await asyncio.wait(tasks, timeout=timeout)
