"""
Trigger

Periodic driver of the scheduler. Each tick claims due schedules and hands
them to the worker pool; each worker runs execute -> resolve -> persist for
one schedule.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .claimer import Claimer
from .clock import utc_now
from .errors import PersistenceError
from .executor_adapter import ProvisioningExecutor
from .job_store import JobStore
from .models import ScheduledProvision
from .outcomes import Outcome
from .retry_policy import RetryPolicy
from .worker_pool import WorkerPool

logger = logging.getLogger(__name__)


class Trigger:
    """
    Drives the claim/execute/resolve cycle on a fixed interval.

    The clock is injected so tests can simulate ticks without real timers.
    """

    def __init__(
        self,
        store: JobStore,
        executor: ProvisioningExecutor,
        retry_policy: RetryPolicy,
        claimer: Optional[Claimer] = None,
        clock: Callable[[], datetime] = utc_now,
        interval: float = 30.0,
        worker_count: int = 5,
        max_backlog: int = 100,
        stale_after: Optional[timedelta] = None,
    ):
        self.store = store
        self.executor = executor
        self.retry_policy = retry_policy
        self.claimer = claimer or Claimer(store)
        self.clock = clock
        self.interval = interval
        self.max_backlog = max_backlog
        self.stale_after = stale_after
        self.pool = WorkerPool(self.run_job, worker_count)

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> int:
        """
        Run one polling cycle.

        Returns:
            Number of schedules dispatched to the pool
        """
        now = self.clock()

        if self.stale_after:
            try:
                await self.store.reap_stale(now, now - self.stale_after, self.retry_policy.max_retries)
            except PersistenceError as e:
                logger.error(f"Stale sweep failed: {e}")

        backlog = self.pool.depth()
        capacity = self.max_backlog - backlog
        if capacity <= 0:
            logger.warning(f"Backlog of {backlog} schedules at ceiling {self.max_backlog}, skipping tick")
            return 0

        try:
            jobs = await self.claimer.claim_due(now, limit=capacity)
        except PersistenceError as e:
            logger.error(f"Failed to claim due schedules: {e}")
            return 0

        for job in jobs:
            self._dispatch(job)
        return len(jobs)

    async def execute_now(self, job_id: uuid.UUID) -> ScheduledProvision:
        """
        Claim and dispatch one schedule immediately.

        Raises:
            JobNotFoundError: no schedule with this id
            ConflictError: the schedule is not pending
        """
        job = await self.claimer.claim_one(job_id, self.clock())
        self._dispatch(job)
        return job

    def _dispatch(self, job: ScheduledProvision) -> None:
        self.pool.start()
        self.pool.submit(job)

    async def run_job(self, job: ScheduledProvision) -> None:
        """Execute one claimed schedule and persist its outcome."""
        started_at = self.clock()
        try:
            if not await self.store.touch(job.id, job.claim_token, started_at):
                logger.warning(f"Schedule {job.id} is no longer held by this claim, skipping")
                return
        except PersistenceError as e:
            logger.error(f"Could not start schedule {job.id}: {e}")
            return

        try:
            outcome = await self.executor.execute(job)
        except Exception as e:
            logger.error(f"Executor failed on schedule {job.id}: {e}", exc_info=True)
            outcome = Outcome.transient(f"Execution error: {e!r}")

        completed_at = self.clock()
        resolution = self.retry_policy.resolve(job, outcome, completed_at)
        try:
            if await self.store.resolve(job.id, job.claim_token, resolution, completed_at):
                await self.store.record_attempt(job.id, job.retry_count + 1, outcome, started_at, completed_at)
        except PersistenceError as e:
            logger.error(f"Failed to record outcome of schedule {job.id}: {e}")

    async def start(self) -> None:
        """Start the workers and the polling loop."""
        if self.running:
            return
        self._stop_event.clear()
        self.pool.start()
        self._task = asyncio.create_task(self._loop(), name="scheduler-trigger")
        logger.info(f"Scheduler started with interval {self.interval:g}s")

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def stop(self, grace_seconds: Optional[float] = None) -> None:
        """
        Stop ticking and shut the pool down.

        Schedules claimed but never started go back to pending; executions
        still running after grace_seconds are abandoned and stay executing
        until the stale sweep picks them up.
        """
        logger.info("Stopping scheduler...")
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

        drained = await self.pool.shutdown(grace_seconds)
        now = self.clock()
        for job in drained:
            try:
                if await self.store.release(job.id, job.claim_token, now):
                    logger.info(f"Released unstarted schedule {job.id}")
            except PersistenceError as e:
                logger.error(f"Failed to release schedule {job.id}: {e}")
        logger.info("Scheduler stopped")

    def stats(self) -> Dict[str, Any]:
        return {
            "queue_depth": self.pool.depth(),
            "in_flight": self.pool.in_flight(),
            "workers": self.pool.worker_count,
            "max_backlog": self.max_backlog,
            "running": self.running,
        }
