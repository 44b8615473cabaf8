"""
Tests for the job store.

Validates:
- Inserted schedules start pending with server-assigned ids
- Claims are conditional writes with exactly one winner
- Due schedules are claimed earliest first
- Resolutions, cancellation and the stale sweep respect the status machine
- Listing order, filters and pagination
"""
import asyncio
import uuid
from datetime import timedelta

import pytest

from oneclick_scheduler.scheduler.errors import ConflictError, JobNotFoundError
from oneclick_scheduler.scheduler.job_store import JobStore
from oneclick_scheduler.scheduler.models import JobStatus
from oneclick_scheduler.scheduler.outcomes import Outcome
from oneclick_scheduler.scheduler.retry_policy import Resolution


class TestInsertAndGet:
    @pytest.mark.asyncio
    async def test_insert_creates_pending_schedule(self, store, make_job, clock):
        job = await make_job(schedule_time=clock() + timedelta(days=1), tags=["new-hire", "new-hire", "intern"])

        loaded = await store.get_by_id(job.id)
        assert isinstance(loaded.id, uuid.UUID)
        assert loaded.status == JobStatus.PENDING.value
        assert loaded.retry_count == 0
        assert loaded.tags == ["new-hire", "intern"]
        assert loaded.executed_at is None
        assert loaded.error_message is None
        assert loaded.payload["employee"]["fullName"] == "Ada Lovelace"

    @pytest.mark.asyncio
    async def test_get_unknown_returns_none(self, store):
        assert await store.get_by_id(uuid.uuid4()) is None

    @pytest.mark.asyncio
    async def test_naive_utc_timestamps_round_trip(self, store, make_job, clock):
        when = clock() + timedelta(days=1, microseconds=250)
        job = await make_job(schedule_time=when)
        claimed = await store.claim_one(job.id, clock())
        await store.resolve(
            job.id, claimed.claim_token, Resolution(JobStatus.COMPLETED, 0, None, executed_at=clock()), clock()
        )

        loaded = await store.get_by_id(job.id)
        assert loaded.schedule_time == when
        assert loaded.executed_at == clock()
        for value in (loaded.schedule_time, loaded.created_at, loaded.updated_at, loaded.executed_at):
            assert value.tzinfo is None


class TestClaim:
    """Tests for conditional claims."""

    @pytest.mark.asyncio
    async def test_claim_due_orders_by_schedule_time(self, store, make_job, clock):
        late = await make_job(schedule_time=clock() - timedelta(minutes=1), full_name="Late Hire")
        early = await make_job(schedule_time=clock() - timedelta(hours=2), full_name="Early Hire")
        middle = await make_job(schedule_time=clock() - timedelta(minutes=30), full_name="Middle Hire")

        claimed = await store.claim_due(clock())

        assert [job.id for job in claimed] == [early.id, middle.id, late.id]
        assert all(job.status == JobStatus.EXECUTING.value for job in claimed)
        assert all(job.updated_at == clock() for job in claimed)

    @pytest.mark.asyncio
    async def test_claim_due_skips_future_and_non_pending(self, store, make_job, clock):
        due = await make_job()
        await make_job(schedule_time=clock() + timedelta(seconds=1), full_name="Future Hire")
        cancelled = await make_job(full_name="Cancelled Hire")
        await store.cancel_if_pending(cancelled.id, clock())

        claimed = await store.claim_due(clock())

        assert [job.id for job in claimed] == [due.id]

    @pytest.mark.asyncio
    async def test_claim_due_respects_limit(self, store, make_job, clock):
        first = await make_job(schedule_time=clock() - timedelta(minutes=3), full_name="First Hire")
        await make_job(schedule_time=clock() - timedelta(minutes=2), full_name="Second Hire")
        await make_job(schedule_time=clock() - timedelta(minutes=1), full_name="Third Hire")

        claimed = await store.claim_due(clock(), limit=1)

        assert [job.id for job in claimed] == [first.id]
        remaining = await store.list_by_filter(status=JobStatus.PENDING)
        assert len(remaining) == 2

    @pytest.mark.asyncio
    async def test_schedule_time_boundary_is_inclusive(self, store, make_job, clock):
        job = await make_job(schedule_time=clock())
        claimed = await store.claim_due(clock())
        assert [c.id for c in claimed] == [job.id]

    @pytest.mark.asyncio
    async def test_concurrent_claim_one_has_single_winner(self, db, store, make_job, clock):
        job = await make_job()
        claimers = [JobStore(db) for _ in range(5)]

        results = await asyncio.gather(*(s.claim_one(job.id, clock()) for s in claimers))

        winners = [result for result in results if result is not None]
        assert len(winners) == 1
        assert (await store.get_by_id(job.id)).status == JobStatus.EXECUTING.value

    @pytest.mark.asyncio
    async def test_concurrent_claim_due_never_duplicates(self, db, make_job, clock):
        jobs = [await make_job(full_name=f"Hire {i}") for i in range(6)]
        claimers = [JobStore(db) for _ in range(4)]

        results = await asyncio.gather(*(s.claim_due(clock()) for s in claimers))

        claimed_ids = [job.id for result in results for job in result]
        assert len(claimed_ids) == len(set(claimed_ids))
        assert set(claimed_ids) == {job.id for job in jobs}

    @pytest.mark.asyncio
    async def test_claim_one_ignores_schedule_time(self, store, make_job, clock):
        job = await make_job(schedule_time=clock() + timedelta(days=7))
        claimed = await store.claim_one(job.id, clock())
        assert claimed.status == JobStatus.EXECUTING.value

    @pytest.mark.asyncio
    async def test_claim_one_of_executing_job_returns_none(self, store, make_job, clock):
        job = await make_job()
        await store.claim_one(job.id, clock())
        assert await store.claim_one(job.id, clock()) is None


class TestResolve:
    """Tests for persisting attempt outcomes under a claim."""

    @pytest.mark.asyncio
    async def test_claims_stamp_a_fresh_token(self, store, make_job, clock):
        job = await make_job()
        assert job.claim_token is None

        first = await store.claim_one(job.id, clock())
        await store.release(job.id, first.claim_token, clock())
        second = await store.claim_one(job.id, clock())

        assert first.claim_token is not None
        assert second.claim_token is not None
        assert first.claim_token != second.claim_token

    @pytest.mark.asyncio
    async def test_resolve_retry_writes_all_fields(self, store, make_job, clock):
        job = await make_job()
        claimed = await store.claim_one(job.id, clock())
        retry_at = clock() + timedelta(seconds=60)

        resolved = await store.resolve(
            job.id,
            claimed.claim_token,
            Resolution(JobStatus.PENDING, 1, "API returned status 500: boom", schedule_time=retry_at),
            clock(),
        )

        assert resolved is True
        loaded = await store.get_by_id(job.id)
        assert loaded.status == JobStatus.PENDING.value
        assert loaded.retry_count == 1
        assert loaded.error_message == "API returned status 500: boom"
        assert loaded.schedule_time == retry_at
        assert loaded.executed_at is None
        assert loaded.claim_token is None

    @pytest.mark.asyncio
    async def test_resolve_success_clears_error(self, store, make_job, clock):
        job = await make_job()
        claimed = await store.claim_one(job.id, clock())
        await store.resolve(
            job.id, claimed.claim_token, Resolution(JobStatus.PENDING, 1, "boom", schedule_time=clock()), clock()
        )
        claimed = await store.claim_one(job.id, clock())

        await store.resolve(
            job.id, claimed.claim_token, Resolution(JobStatus.COMPLETED, 1, None, executed_at=clock()), clock()
        )

        loaded = await store.get_by_id(job.id)
        assert loaded.status == JobStatus.COMPLETED.value
        assert loaded.error_message is None
        assert loaded.executed_at == clock()

    @pytest.mark.asyncio
    async def test_resolve_requires_executing(self, store, make_job, clock):
        job = await make_job()

        resolved = await store.resolve(
            job.id, uuid.uuid4(), Resolution(JobStatus.COMPLETED, 0, None, executed_at=clock()), clock()
        )

        assert resolved is False
        assert (await store.get_by_id(job.id)).status == JobStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_resolve_with_superseded_claim_is_rejected(self, store, make_job, clock):
        job = await make_job()
        stale = await store.claim_one(job.id, clock())
        now = clock.advance(minutes=20)
        await store.reap_stale(now, now - timedelta(minutes=15), max_retries=3)
        current = await store.claim_one(job.id, now)

        resolved = await store.resolve(
            job.id, stale.claim_token, Resolution(JobStatus.FAILED, 0, "late", executed_at=now), now
        )

        assert resolved is False
        loaded = await store.get_by_id(job.id)
        assert loaded.status == JobStatus.EXECUTING.value
        assert loaded.retry_count == 1
        assert loaded.claim_token == current.claim_token

    @pytest.mark.asyncio
    async def test_release_returns_job_to_pending_without_retry(self, store, make_job, clock):
        job = await make_job()
        claimed = await store.claim_one(job.id, clock())

        assert await store.release(job.id, claimed.claim_token, clock()) is True

        loaded = await store.get_by_id(job.id)
        assert loaded.status == JobStatus.PENDING.value
        assert loaded.retry_count == 0
        assert loaded.claim_token is None

    @pytest.mark.asyncio
    async def test_release_with_other_token_is_rejected(self, store, make_job, clock):
        job = await make_job()
        await store.claim_one(job.id, clock())

        assert await store.release(job.id, uuid.uuid4(), clock()) is False
        assert (await store.get_by_id(job.id)).status == JobStatus.EXECUTING.value

    @pytest.mark.asyncio
    async def test_touch_only_refreshes_current_claim(self, store, make_job, clock):
        job = await make_job()
        assert await store.touch(job.id, uuid.uuid4(), clock()) is False

        claimed = await store.claim_one(job.id, clock())
        later = clock.advance(seconds=5)
        assert await store.touch(job.id, uuid.uuid4(), later) is False
        assert await store.touch(job.id, claimed.claim_token, later) is True
        assert (await store.get_by_id(job.id)).updated_at == later


class TestCancel:
    """Cancel is only allowed from pending."""

    @pytest.mark.asyncio
    async def test_cancel_pending(self, store, make_job, clock):
        job = await make_job(schedule_time=clock() + timedelta(days=1))

        cancelled = await store.cancel_if_pending(job.id, clock())

        assert cancelled.status == JobStatus.CANCELLED.value
        assert (await store.get_by_id(job.id)).status == JobStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_cancel_executing_conflicts(self, store, make_job, clock):
        job = await make_job()
        await store.claim_one(job.id, clock())

        with pytest.raises(ConflictError):
            await store.cancel_if_pending(job.id, clock())
        assert (await store.get_by_id(job.id)).status == JobStatus.EXECUTING.value

    @pytest.mark.asyncio
    @pytest.mark.parametrize("terminal", [JobStatus.COMPLETED, JobStatus.FAILED])
    async def test_cancel_resolved_job_conflicts(self, store, make_job, clock, terminal):
        job = await make_job()
        claimed = await store.claim_one(job.id, clock())
        await store.resolve(job.id, claimed.claim_token, Resolution(terminal, 0, None, executed_at=clock()), clock())

        with pytest.raises(ConflictError):
            await store.cancel_if_pending(job.id, clock())
        assert (await store.get_by_id(job.id)).status == terminal.value

    @pytest.mark.asyncio
    async def test_cancel_twice_conflicts(self, store, make_job, clock):
        job = await make_job()
        await store.cancel_if_pending(job.id, clock())

        with pytest.raises(ConflictError):
            await store.cancel_if_pending(job.id, clock())
        assert (await store.get_by_id(job.id)).status == JobStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, store, clock):
        with pytest.raises(JobNotFoundError):
            await store.cancel_if_pending(uuid.uuid4(), clock())


class TestListing:
    """Tests for list_by_filter."""

    @pytest.mark.asyncio
    async def test_status_filter_with_pagination(self, store, make_job, clock):
        pending = []
        for hours in range(1, 6):
            pending.append(await make_job(schedule_time=clock() + timedelta(hours=hours), full_name=f"Hire {hours}"))
        other = await make_job(schedule_time=clock() + timedelta(hours=10), full_name="Gone Hire")
        await store.cancel_if_pending(other.id, clock())

        result = await store.list_by_filter(status=JobStatus.PENDING, limit=2, offset=1)

        by_recency = sorted(pending, key=lambda job: job.schedule_time, reverse=True)
        assert [job.id for job in result] == [by_recency[1].id, by_recency[2].id]
        assert result[0].schedule_time > result[1].schedule_time

    @pytest.mark.asyncio
    async def test_tag_filter(self, store, make_job, clock):
        intern = await make_job(full_name="Intern Hire", tags=["intern", "new-hire"])
        await make_job(full_name="Contractor Hire", tags=["contractor"])

        result = await store.list_by_filter(tag="intern")

        assert [job.id for job in result] == [intern.id]

    @pytest.mark.asyncio
    async def test_no_filter_returns_everything(self, store, make_job):
        for i in range(3):
            await make_job(full_name=f"Hire {i}")
        assert len(await store.list_by_filter(limit=0)) == 3


class TestStaleSweep:
    """Jobs stuck in executing are treated as a failed attempt."""

    @pytest.mark.asyncio
    async def test_reap_stale_requeues_with_budget(self, store, make_job, clock):
        job = await make_job()
        await store.claim_one(job.id, clock())
        now = clock.advance(minutes=20)

        moved = await store.reap_stale(now, now - timedelta(minutes=15), max_retries=3)

        assert moved == 1
        loaded = await store.get_by_id(job.id)
        assert loaded.status == JobStatus.PENDING.value
        assert loaded.retry_count == 1
        assert loaded.error_message.startswith("Execution abandoned")
        assert loaded.claim_token is None

    @pytest.mark.asyncio
    async def test_reap_stale_fails_without_budget(self, store, make_job, clock):
        job = await make_job()
        await store.claim_one(job.id, clock())
        now = clock.advance(minutes=20)

        await store.reap_stale(now, now - timedelta(minutes=15), max_retries=0)

        loaded = await store.get_by_id(job.id)
        assert loaded.status == JobStatus.FAILED.value
        assert loaded.executed_at == now

    @pytest.mark.asyncio
    async def test_reap_stale_leaves_recent_executions(self, store, make_job, clock):
        job = await make_job()
        await store.claim_one(job.id, clock())
        now = clock.advance(minutes=5)

        assert await store.reap_stale(now, now - timedelta(minutes=15), max_retries=3) == 0
        assert (await store.get_by_id(job.id)).status == JobStatus.EXECUTING.value


class TestAttempts:
    @pytest.mark.asyncio
    async def test_record_and_list_attempts(self, store, make_job, clock):
        job = await make_job()
        started = clock()
        finished = clock.advance(seconds=2)

        await store.record_attempt(job.id, 1, Outcome.transient("API returned status 500: boom", 500), started, finished)
        await store.record_attempt(job.id, 2, Outcome.success(200), finished, finished)

        attempts = await store.list_attempts(job.id)
        assert [a.attempt for a in attempts] == [1, 2]
        assert attempts[0].outcome == "transient_failure"
        assert attempts[0].status_code == 500
        assert attempts[0].execution_time_ms == 2000
        assert attempts[1].error is None

    @pytest.mark.asyncio
    async def test_count_by_status(self, store, make_job, clock):
        first = await make_job(full_name="First Hire")
        await make_job(full_name="Second Hire")
        await store.claim_one(first.id, clock())

        assert await store.count_by_status() == {"executing": 1, "pending": 1}
