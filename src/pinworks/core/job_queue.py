"""In-process job queue feeding the bulk orchestrator.

Creating a job only enqueues its id; :class:`JobQueue` workers pick ids off
an ``asyncio.Queue`` and run
:meth:`BulkJobOrchestrator.process_bulk_generation`.  Several workers may
run different jobs concurrently; the orchestrator's atomic claim keeps any
one job on a single worker.

The queue lives in the FastAPI lifespan: :meth:`JobQueue.start` on
startup (which also re-enqueues jobs left PENDING by a previous process) and
:meth:`JobQueue.stop` on shutdown.
"""

from __future__ import annotations

import asyncio
import logging

from pinworks.core.job_store import JobStore
from pinworks.core.models import JobStatus
from pinworks.core.orchestrator import BulkJobOrchestrator

logger = logging.getLogger(__name__)


class JobQueue:
    """Async worker pool processing bulk jobs by id.

    Args:
        orchestrator: Runs one job to completion
        workers: Number of concurrent worker tasks
    """

    def __init__(self, orchestrator: BulkJobOrchestrator, workers: int = 1):
        self.orchestrator = orchestrator
        self.worker_count = max(1, workers)
        self._queue: asyncio.Queue[str] | None = None
        self._workers: list[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    def start(self) -> int:
        """Spawn the worker tasks; must be called from a running event loop."""
        if self._workers:
            return len(self._workers)
        self._queue = asyncio.Queue()
        for index in range(self.worker_count):
            task = asyncio.create_task(self._worker_loop(index + 1), name=f"bulk-worker-{index + 1}")
            self._workers.append(task)
        logger.info(f"Started {self.worker_count} bulk job worker(s)")
        return len(self._workers)

    async def stop(self) -> None:
        """Cancel the workers.  Jobs in flight stay PROCESSING."""
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        self._queue = None
        logger.info("Stopped bulk job workers")

    def enqueue(self, job_id: str) -> None:
        """Queue a job for processing and return immediately."""
        if self._queue is None:
            raise RuntimeError("Job queue is not running")
        self._queue.put_nowait(job_id)
        logger.info(f"Enqueued bulk job {job_id} (queue size {self._queue.qsize()})")

    def recover_pending(self, store: JobStore) -> int:
        """Re-enqueue every job still PENDING in the store.

        Rows an interrupted run left PROCESSING go back to PENDING first, so
        their jobs can be cancelled and deleted again.
        """
        store.release_interrupted_rows()
        job_ids = store.list_job_ids(JobStatus.PENDING)
        for job_id in job_ids:
            self.enqueue(job_id)
        if job_ids:
            logger.info(f"Re-enqueued {len(job_ids)} pending bulk job(s)")
        return len(job_ids)

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def _worker_loop(self, worker_index: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            job_id = await queue.get()
            try:
                status = await self.orchestrator.process_bulk_generation(job_id)
                logger.debug(f"Worker {worker_index} finished job {job_id}: {status}")
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Bulk job worker {worker_index} failed on job {job_id}")
            finally:
                queue.task_done()
