"""
Retry Policy

Turns the outcome of one execution attempt into the job's next state.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .models import JobStatus, OutcomeKind, ScheduledProvision
from .outcomes import Outcome
from .status_machine import ensure_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    """All fields written back to the store for one resolved attempt."""
    status: JobStatus
    retry_count: int
    error_message: Optional[str]
    schedule_time: Optional[datetime] = None
    executed_at: Optional[datetime] = None

    @property
    def is_retry(self) -> bool:
        return self.status == JobStatus.PENDING


class RetryPolicy:
    """
    Bounded retry for failed provisioning attempts.

    A transient failure is retried while retry_count < max_retries, each retry
    becoming eligible again retry_delay after the failure. A permanent failure
    or an exhausted budget ends in FAILED.
    """

    def __init__(
        self,
        max_retries: int = 3,
        retry_delay: timedelta = timedelta(seconds=300),
        honor_retry_delay: bool = True,
    ):
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.honor_retry_delay = honor_retry_delay

    def resolve(self, job: ScheduledProvision, outcome: Outcome, now: datetime) -> Resolution:
        if outcome.kind == OutcomeKind.SUCCESS:
            resolution = Resolution(
                status=JobStatus.COMPLETED,
                retry_count=job.retry_count,
                error_message=None,
                executed_at=now,
            )
        elif outcome.kind == OutcomeKind.TRANSIENT_FAILURE and job.retry_count < self.max_retries:
            schedule_time = now + self.retry_delay if self.honor_retry_delay else None
            resolution = Resolution(
                status=JobStatus.PENDING,
                retry_count=job.retry_count + 1,
                error_message=outcome.detail,
                schedule_time=schedule_time,
            )
            logger.info(
                f"Scheduling retry {resolution.retry_count}/{self.max_retries} for {job.id}"
                f" at {schedule_time or job.schedule_time}"
            )
        else:
            if outcome.kind == OutcomeKind.PERMANENT_FAILURE:
                logger.warning(f"Schedule {job.id} rejected permanently, not retrying")
            else:
                logger.error(f"Max retries reached for {job.id}, marking as failed")
            resolution = Resolution(
                status=JobStatus.FAILED,
                retry_count=job.retry_count,
                error_message=outcome.detail,
                executed_at=now,
            )

        ensure_transition(JobStatus.EXECUTING, resolution.status)
        return resolution
