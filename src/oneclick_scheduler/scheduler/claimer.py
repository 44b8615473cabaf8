"""
Claimer

Finds due schedules and takes exclusive ownership of them by moving them
from pending to executing in the store.
"""
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from .errors import ConflictError, JobNotFoundError
from .job_store import JobStore
from .models import ScheduledProvision

logger = logging.getLogger(__name__)


class Claimer:
    """Claims due schedules through the store's conditional writes."""

    def __init__(self, store: JobStore):
        self.store = store

    async def claim_due(self, now: datetime, limit: Optional[int] = None) -> List[ScheduledProvision]:
        """
        Claim due pending schedules, earliest first.

        Args:
            now: Current time; schedules with schedule_time <= now are due
            limit: Maximum number of schedules to claim

        Returns:
            Schedules now owned by the caller in executing status
        """
        if limit is not None and limit <= 0:
            return []

        claimed = await self.store.claim_due(now, limit)
        if claimed:
            logger.info(f"Claimed {len(claimed)} due schedules")
        else:
            logger.debug("No pending schedules to execute")
        return claimed

    async def claim_one(self, job_id: uuid.UUID, now: datetime) -> ScheduledProvision:
        """
        Claim one schedule outside the regular cadence.

        Raises:
            JobNotFoundError: no schedule with this id
            ConflictError: the schedule is not pending
        """
        job = await self.store.claim_one(job_id, now)
        if job is not None:
            logger.info(f"Claimed schedule {job_id} for immediate execution")
            return job

        existing = await self.store.get_by_id(job_id)
        if existing is None:
            raise JobNotFoundError(job_id)
        raise ConflictError(f"Schedule {job_id} is {existing.status}, not pending")
