"""
Provision Orchestrator

Service facade used by the HTTP API: creating, listing, cancelling and
force-executing scheduled provisions, plus queue statistics.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .clock import to_naive_utc, utc_now
from .errors import JobNotFoundError, ValidationError
from .idempotency_engine import IdempotencyEngine
from .job_store import JobStore
from .models import JobStatus, ProvisionAttempt, ScheduledProvision
from .trigger import Trigger

logger = logging.getLogger(__name__)


def parse_job_id(raw: Any) -> uuid.UUID:
    """Parse a schedule id, rejecting anything that is not a UUID."""
    if isinstance(raw, uuid.UUID):
        return raw
    try:
        return uuid.UUID(str(raw))
    except (TypeError, ValueError) as e:
        raise ValidationError("Invalid ID format") from e


def parse_status(raw: Optional[str]) -> Optional[JobStatus]:
    if not raw:
        return None
    try:
        return JobStatus(raw.lower())
    except ValueError as e:
        allowed = ", ".join(status.value for status in JobStatus)
        raise ValidationError(f"Invalid status {raw!r}, expected one of: {allowed}") from e


class ProvisionOrchestrator:
    def __init__(
        self,
        store: JobStore,
        trigger: Trigger,
        idempotency_engine: Optional[IdempotencyEngine] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.trigger = trigger
        self.idempotency_engine = idempotency_engine
        self.clock = clock

    async def create_schedule(
        self,
        payload: Dict[str, Any],
        schedule_time: Optional[datetime],
        tags: Iterable[str] = (),
        idempotency_key: Optional[str] = None,
    ) -> Tuple[ScheduledProvision, bool]:
        """
        Create a new pending schedule.

        Returns:
            The schedule and whether it was newly created (False when an
            idempotency key matched an earlier request)
        """
        employee = payload.get("employee") or {}
        if not employee.get("fullName") or not employee.get("workEmail"):
            raise ValidationError("Employee full name and email are required")
        if schedule_time is None:
            raise ValidationError("Schedule time is required")

        schedule_time = to_naive_utc(schedule_time)
        now = self.clock()
        if schedule_time <= now:
            raise ValidationError("Schedule time must be in the future")

        if idempotency_key and self.idempotency_engine:
            existing_id = await self.idempotency_engine.check(idempotency_key)
            if existing_id:
                existing = await self.store.get_by_id(parse_job_id(existing_id))
                if existing is not None:
                    logger.info(f"Idempotent schedule found: {existing_id}")
                    return existing, False

        job = await self.store.insert(payload, schedule_time, tags, now=now)

        if idempotency_key and self.idempotency_engine:
            await self.idempotency_engine.store(idempotency_key, str(job.id))
        return job, True

    async def get_schedule(self, job_id: Any) -> ScheduledProvision:
        job_id = parse_job_id(job_id)
        job = await self.store.get_by_id(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_schedules(
        self,
        status: Optional[str] = None,
        tag: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ScheduledProvision]:
        if limit < 0 or offset < 0:
            raise ValidationError("limit and offset must not be negative")
        return await self.store.list_by_filter(parse_status(status), tag or None, limit, offset)

    async def cancel_schedule(self, job_id: Any) -> ScheduledProvision:
        return await self.store.cancel_if_pending(parse_job_id(job_id), self.clock())

    async def execute_now(self, job_id: Any) -> ScheduledProvision:
        job = await self.trigger.execute_now(parse_job_id(job_id))
        logger.info(f"Provision execution started for {job.id}")
        return job

    async def get_attempts(self, job_id: Any) -> List[ProvisionAttempt]:
        job = await self.get_schedule(job_id)
        return await self.store.list_attempts(job.id)

    async def get_queue_stats(self) -> Dict[str, Any]:
        by_status = await self.store.count_by_status()
        return {
            "jobs": {
                "total": sum(by_status.values()),
                "by_status": by_status,
            },
            "queue": self.trigger.stats(),
        }

    async def start(self) -> None:
        await self.trigger.start()

    async def shutdown(self, grace_seconds: Optional[float] = None) -> None:
        """Shutdown orchestrator."""
        logger.info("Shutting down orchestrator...")
        await self.trigger.stop(grace_seconds)
        await self.trigger.executor.aclose()
        logger.info("Orchestrator shutdown complete")
