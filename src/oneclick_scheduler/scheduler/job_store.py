"""
Job Store

Persistence for scheduled provisions and their attempt history.

Every status change is a single conditional UPDATE whose WHERE clause names
the legal source states from the status machine. The row count tells the
caller whether it won: two actors racing on the same job can never both
move it, whether they live in one process or several.

Each claim stamps a fresh claim_token on the row. Refreshing or resolving a
job requires that token, so a worker holding a copy from an earlier claim
(one the stale sweep has since taken back) can no longer touch the row.
"""
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from .clock import utc_now
from .errors import ConflictError, JobNotFoundError, PersistenceError
from .models import (
    JobStatus,
    ProvisionAttempt,
    ScheduledProvision,
    ScheduledProvisionTag,
)
from .outcomes import Outcome
from .retry_policy import Resolution
from .status_machine import ensure_transition, sources_for

logger = logging.getLogger(__name__)


class JobStore:
    """
    Store for ScheduledProvision records.

    The database is the single source of truth and the only point of mutual
    exclusion; nothing here holds in-process locks.
    """

    def __init__(self, db):
        """
        Initialize job store.

        Args:
            db: Database instance (not just engine)
        """
        self.db = db

    @asynccontextmanager
    async def _session(self, operation: str):
        try:
            async with self.db.session() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Store failed to {operation}: {e}")
            raise PersistenceError(f"Failed to {operation}") from e

    async def insert(
        self,
        payload: Dict[str, Any],
        schedule_time: datetime,
        tags: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> ScheduledProvision:
        """Create a new pending schedule with a server-assigned id."""
        now = now or utc_now()
        unique_tags = list(dict.fromkeys(tags or []))
        job = ScheduledProvision(
            id=uuid.uuid4(),
            payload=payload,
            schedule_time=schedule_time,
            status=JobStatus.PENDING.value,
            tags=unique_tags,
            created_at=now,
            updated_at=now,
            retry_count=0,
        )

        async with self._session("create schedule") as session:
            session.add(job)
            await session.flush()
            session.add_all(ScheduledProvisionTag(job_id=job.id, tag=tag) for tag in unique_tags)
            await session.commit()

        logger.info(f"Created schedule {job.id} for {job.employee.get('fullName')} at {schedule_time}")
        return job

    async def get_by_id(self, job_id: uuid.UUID) -> Optional[ScheduledProvision]:
        async with self._session("get schedule") as session:
            return await session.get(ScheduledProvision, job_id)

    async def list_by_filter(
        self,
        status: Optional[JobStatus] = None,
        tag: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ScheduledProvision]:
        """
        List schedules, most recently scheduled first.

        Args:
            status: Only schedules in this status
            tag: Only schedules carrying this tag
            limit: Maximum number of rows (0 for no limit)
            offset: Rows to skip

        Returns:
            Schedules ordered by schedule_time descending
        """
        statement = select(ScheduledProvision)
        if status is not None:
            statement = statement.where(ScheduledProvision.status == JobStatus(status).value)
        if tag:
            tagged = select(ScheduledProvisionTag.job_id).where(ScheduledProvisionTag.tag == tag)
            statement = statement.where(ScheduledProvision.id.in_(tagged))
        statement = statement.order_by(
            ScheduledProvision.schedule_time.desc(), ScheduledProvision.id.desc()
        )
        if limit > 0:
            statement = statement.limit(limit)
        if offset > 0:
            statement = statement.offset(offset)

        async with self._session("list schedules") as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def _transition(
        self,
        job_id: uuid.UUID,
        status: JobStatus,
        now: datetime,
        values: Optional[Dict[str, Any]] = None,
        conditions: Iterable[Any] = (),
    ) -> Optional[ScheduledProvision]:
        """
        Move one job into status if it is still in a legal source state.

        Returns the updated job, or None when the conditional write matched
        no row (unknown id, or another actor got there first).
        """
        sources = [source.value for source in sources_for(status)]
        statement = (
            update(ScheduledProvision)
            .where(
                ScheduledProvision.id == job_id,
                ScheduledProvision.status.in_(sources),
                *conditions,
            )
            .values(status=status.value, updated_at=now, **(values or {}))
            .execution_options(synchronize_session=False)
        )

        async with self._session(f"move schedule to {status.value}") as session:
            result = await session.execute(statement)
            await session.commit()
            if result.rowcount != 1:
                return None
            return await session.get(ScheduledProvision, job_id)

    async def claim_due(self, now: datetime, limit: Optional[int] = None) -> List[ScheduledProvision]:
        """
        Claim every due pending schedule, earliest schedule_time first.

        Each candidate is claimed with its own conditional write; candidates
        lost to another claimer are left out of the result. Every claimed job
        carries a fresh claim_token.
        """
        statement = (
            select(ScheduledProvision.id)
            .where(
                ScheduledProvision.status == JobStatus.PENDING.value,
                ScheduledProvision.schedule_time <= now,
            )
            .order_by(ScheduledProvision.schedule_time.asc(), ScheduledProvision.id.asc())
        )
        if limit is not None:
            statement = statement.limit(limit)

        async with self._session("find due schedules") as session:
            result = await session.execute(statement)
            candidate_ids = list(result.scalars().all())

        claimed = []
        for job_id in candidate_ids:
            job = await self._transition(
                job_id,
                JobStatus.EXECUTING,
                now,
                values={"claim_token": uuid.uuid4()},
                conditions=[ScheduledProvision.schedule_time <= now],
            )
            if job is None:
                logger.debug(f"Schedule {job_id} was claimed elsewhere")
                continue
            claimed.append(job)
        return claimed

    async def claim_one(self, job_id: uuid.UUID, now: datetime) -> Optional[ScheduledProvision]:
        """Claim a single pending schedule regardless of its schedule_time."""
        return await self._transition(
            job_id, JobStatus.EXECUTING, now, values={"claim_token": uuid.uuid4()}
        )

    async def touch(self, job_id: uuid.UUID, claim_token: uuid.UUID, now: datetime) -> bool:
        """
        Refresh updated_at of an executing job.

        Returns False if the job is no longer executing under this claim.
        """
        statement = (
            update(ScheduledProvision)
            .where(
                ScheduledProvision.id == job_id,
                ScheduledProvision.status == JobStatus.EXECUTING.value,
                ScheduledProvision.claim_token == claim_token,
            )
            .values(updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._session("refresh schedule") as session:
            result = await session.execute(statement)
            await session.commit()
            return result.rowcount == 1

    async def resolve(
        self,
        job_id: uuid.UUID,
        claim_token: uuid.UUID,
        resolution: Resolution,
        now: datetime,
    ) -> bool:
        """
        Persist the outcome of an attempt in one write.

        Returns False if the job was no longer executing under this claim.
        """
        values: Dict[str, Any] = {
            "retry_count": resolution.retry_count,
            "error_message": resolution.error_message,
            "claim_token": None,
        }
        if resolution.schedule_time is not None:
            values["schedule_time"] = resolution.schedule_time
        if resolution.executed_at is not None:
            values["executed_at"] = resolution.executed_at

        job = await self._transition(
            job_id,
            resolution.status,
            now,
            values,
            conditions=[ScheduledProvision.claim_token == claim_token],
        )
        if job is None:
            logger.warning(f"Schedule {job_id} is no longer held by this claim, {resolution.status.value} not recorded")
            return False
        logger.info(f"Updated schedule {job_id} status to {resolution.status.value}")
        return True

    async def release(self, job_id: uuid.UUID, claim_token: uuid.UUID, now: datetime) -> bool:
        """Return a claimed but never started job to pending without charging a retry."""
        job = await self._transition(
            job_id,
            JobStatus.PENDING,
            now,
            values={"claim_token": None},
            conditions=[ScheduledProvision.claim_token == claim_token],
        )
        return job is not None

    async def cancel_if_pending(self, job_id: uuid.UUID, now: Optional[datetime] = None) -> ScheduledProvision:
        """
        Cancel a pending schedule.

        Raises:
            JobNotFoundError: no schedule with this id
            ConflictError: the schedule is not pending
        """
        job = await self._transition(job_id, JobStatus.CANCELLED, now or utc_now())
        if job is not None:
            logger.info(f"Cancelled schedule {job_id}")
            return job

        existing = await self.get_by_id(job_id)
        if existing is None:
            raise JobNotFoundError(job_id)
        raise ConflictError(
            f"Schedule {job_id} is {existing.status}, only pending schedules can be cancelled"
        )

    async def reap_stale(self, now: datetime, stale_before: datetime, max_retries: int) -> int:
        """
        Treat jobs stuck in executing since before stale_before as a failed attempt.

        Jobs with retry budget left go back to pending, the rest fail.

        Returns:
            Number of jobs moved
        """
        ensure_transition(JobStatus.EXECUTING, JobStatus.PENDING)
        ensure_transition(JobStatus.EXECUTING, JobStatus.FAILED)
        detail = f"Execution abandoned: no outcome recorded since {stale_before.isoformat()}"
        stuck = (
            ScheduledProvision.status == JobStatus.EXECUTING.value,
            ScheduledProvision.updated_at < stale_before,
        )
        fail = (
            update(ScheduledProvision)
            .where(*stuck, ScheduledProvision.retry_count >= max_retries)
            .values(
                status=JobStatus.FAILED.value,
                executed_at=now,
                error_message=detail,
                claim_token=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        requeue = (
            update(ScheduledProvision)
            .where(*stuck, ScheduledProvision.retry_count < max_retries)
            .values(
                status=JobStatus.PENDING.value,
                retry_count=ScheduledProvision.retry_count + 1,
                error_message=detail,
                claim_token=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        async with self._session("reap stale schedules") as session:
            failed = (await session.execute(fail)).rowcount
            requeued = (await session.execute(requeue)).rowcount
            await session.commit()

        if failed or requeued:
            logger.warning(f"Reaped stale executions: {requeued} requeued, {failed} failed")
        return failed + requeued

    async def record_attempt(
        self,
        job_id: uuid.UUID,
        attempt: int,
        outcome: Outcome,
        started_at: datetime,
        completed_at: datetime,
    ) -> ProvisionAttempt:
        """Record one execution attempt."""
        record = ProvisionAttempt(
            id=uuid.uuid4(),
            job_id=job_id,
            attempt=attempt,
            outcome=outcome.kind.value,
            status_code=outcome.status_code,
            started_at=started_at,
            completed_at=completed_at,
            execution_time_ms=int((completed_at - started_at).total_seconds() * 1000),
            error=outcome.detail,
        )
        async with self._session("record attempt") as session:
            session.add(record)
            await session.commit()
        return record

    async def list_attempts(self, job_id: uuid.UUID) -> List[ProvisionAttempt]:
        statement = (
            select(ProvisionAttempt)
            .where(ProvisionAttempt.job_id == job_id)
            .order_by(ProvisionAttempt.attempt.asc(), ProvisionAttempt.started_at.asc())
        )
        async with self._session("list attempts") as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def count_by_status(self) -> Dict[str, int]:
        statement = select(ScheduledProvision.status, func.count()).group_by(ScheduledProvision.status)
        async with self._session("count schedules") as session:
            result = await session.execute(statement)
            return {status: count for status, count in result.all()}
