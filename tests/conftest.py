"""
Test configuration and fixtures.

Provides:
- A fresh SQLite database per test (aiosqlite)
- A stub provisioning API on httpx.MockTransport
- A controllable clock
- Factories for schedules and triggers
"""
import asyncio
import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx
import pytest

from oneclick_scheduler.config import SchedulerSettings
from oneclick_scheduler.database import Database
from oneclick_scheduler.scheduler.executor_adapter import ProvisioningExecutor
from oneclick_scheduler.scheduler.job_store import JobStore
from oneclick_scheduler.scheduler.retry_policy import RetryPolicy
from oneclick_scheduler.scheduler.trigger import Trigger

API_URL = "http://provisioning.test/api/provision"
T0 = datetime(2026, 3, 2, 9, 0, 0)


class FakeClock:
    """Clock returning a fixed time until advanced."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class StubProvisioningApi:
    """
    Stand-in for the provisioning endpoint.

    Records every JSON payload it receives and answers with the configured
    status and body. Closing the gate makes calls wait until it is opened.
    """

    def __init__(self):
        self.requests: List[Dict[str, Any]] = []
        self.status_code = 200
        self.body: Any = {"status": "provisioned"}
        self.error: Optional[Exception] = None
        self.gate = asyncio.Event()
        self.gate.set()

    def respond_with(self, status_code: int, body: Any = None) -> None:
        self.status_code = status_code
        self.body = body
        self.error = None

    def fail_with(self, error: Exception) -> None:
        self.error = error

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        if isinstance(self.body, str):
            return httpx.Response(self.status_code, text=self.body)
        if self.body is None:
            return httpx.Response(self.status_code)
        return httpx.Response(self.status_code, json=self.body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def employee_payload(full_name: str = "Ada Lovelace", work_email: str = "ada@example.com") -> Dict[str, Any]:
    return {
        "employee": {
            "fullName": full_name,
            "workEmail": work_email,
            "personalEmail": "ada@personal.example",
            "department": "Engineering",
            "jobTitle": "Analyst",
            "role": "member",
        },
        "applications": {"google": True, "microsoft": False},
    }


@pytest.fixture
def settings(tmp_path) -> SchedulerSettings:
    return SchedulerSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'scheduler.db'}",
        provisioning_api_url=API_URL,
        provisioning_timeout=5,
        redis_url=None,
        scheduler_interval=3600,
        max_retries=3,
        retry_delay=60,
        worker_count=2,
        max_backlog=100,
        shutdown_grace_seconds=1,
        stale_after_seconds=0,
    )


@pytest.fixture
async def db(settings):
    database = Database(settings)
    await database.init_models()
    yield database
    await database.dispose()


@pytest.fixture
def store(db) -> JobStore:
    return JobStore(db)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provisioning_api() -> StubProvisioningApi:
    return StubProvisioningApi()


@pytest.fixture
async def http_client(provisioning_api):
    client = httpx.AsyncClient(transport=provisioning_api.transport())
    yield client
    await client.aclose()


@pytest.fixture
def executor(http_client) -> ProvisioningExecutor:
    return ProvisioningExecutor(API_URL, timeout=5, client=http_client)


@pytest.fixture
def make_job(store, clock):
    """Insert a pending schedule directly through the store."""

    async def _make_job(
        schedule_time: Optional[datetime] = None,
        full_name: str = "Ada Lovelace",
        tags=(),
    ):
        when = schedule_time if schedule_time is not None else clock() - timedelta(seconds=1)
        payload = employee_payload(full_name, f"{full_name.split()[0].lower()}@example.com")
        return await store.insert(payload, when, tags, now=clock() - timedelta(hours=1))

    return _make_job


@pytest.fixture
async def make_trigger(store, executor, clock):
    """Build triggers on the shared store and stop them after the test."""
    triggers: List[Trigger] = []

    def _make_trigger(
        max_retries: int = 3,
        retry_delay: timedelta = timedelta(seconds=60),
        honor_retry_delay: bool = True,
        worker_count: int = 2,
        max_backlog: int = 100,
        stale_after: Optional[timedelta] = None,
        executor_override=None,
    ) -> Trigger:
        trigger = Trigger(
            store=store,
            executor=executor_override or executor,
            retry_policy=RetryPolicy(max_retries, retry_delay, honor_retry_delay),
            clock=clock,
            interval=3600,
            worker_count=worker_count,
            max_backlog=max_backlog,
            stale_after=stale_after,
        )
        triggers.append(trigger)
        return trigger

    yield _make_trigger

    for trigger in triggers:
        await trigger.pool.shutdown(grace_seconds=1)
