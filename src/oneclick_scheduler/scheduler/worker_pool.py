"""
Worker Pool

Fixed number of asyncio workers consuming claimed jobs from a queue.
Bounds how many provisioning calls are in flight at once.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from .models import ScheduledProvision

logger = logging.getLogger(__name__)

JobHandler = Callable[[ScheduledProvision], Awaitable[None]]


class WorkerPool:
    """
    Bounded pool of workers.

    Jobs wait in an unbounded queue; callers keep the backlog in check by
    looking at depth() before submitting more.
    """

    def __init__(self, handler: JobHandler, worker_count: int = 5):
        self._handler = handler
        self.worker_count = worker_count
        self._queue: "asyncio.Queue[ScheduledProvision]" = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._in_flight: Dict[str, ScheduledProvision] = {}

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        if self._workers:
            return
        for i in range(self.worker_count):
            worker_id = f"worker-{i + 1}"
            self._workers.append(asyncio.create_task(self._work(worker_id), name=worker_id))
        logger.info(f"Started {self.worker_count} workers")

    def submit(self, job: ScheduledProvision) -> None:
        self._queue.put_nowait(job)

    def depth(self) -> int:
        """Jobs queued but not yet picked up by a worker."""
        return self._queue.qsize()

    def in_flight(self) -> int:
        return len(self._in_flight)

    async def join(self) -> None:
        """Wait until every submitted job has been handled."""
        await self._queue.join()

    async def _work(self, worker_id: str) -> None:
        while True:
            job = await self._queue.get()
            self._in_flight[worker_id] = job
            try:
                await self._handler(job)
            except Exception as e:
                logger.error(f"{worker_id} failed handling schedule {job.id}: {e}", exc_info=True)
            finally:
                self._in_flight.pop(worker_id, None)
                self._queue.task_done()

    def drain(self) -> List[ScheduledProvision]:
        """Remove and return every job that no worker has started."""
        drained = []
        while True:
            try:
                job = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            drained.append(job)
            self._queue.task_done()
        return drained

    async def shutdown(self, grace_seconds: Optional[float] = None) -> List[ScheduledProvision]:
        """
        Stop the pool.

        Queued jobs are drained and returned so the caller can release them.
        In-flight jobs get grace_seconds to finish before the workers are
        cancelled.
        """
        drained = self.drain()

        if self._in_flight:
            logger.info(f"Waiting up to {grace_seconds}s for {len(self._in_flight)} executions")
            try:
                await asyncio.wait_for(self._queue.join(), timeout=grace_seconds)
            except asyncio.TimeoutError:
                abandoned = ", ".join(str(job.id) for job in self._in_flight.values())
                logger.warning(f"Abandoning executions still in flight: {abandoned}")

        for worker in self._workers:
            worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        return drained
