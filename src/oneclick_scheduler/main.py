"""
Scheduler API

FastAPI application for scheduling, inspecting and cancelling deferred
user provisioning jobs.
"""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

import httpx
import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from . import __version__
from .config import SchedulerSettings
from .database import Database
from .schemas import AttemptResponse, ScheduleCreateRequest, ScheduleResponse
from .scheduler.clock import utc_now
from .scheduler.errors import SchedulerError
from .scheduler.executor_adapter import ProvisioningExecutor
from .scheduler.idempotency_engine import IdempotencyEngine
from .scheduler.job_store import JobStore
from .scheduler.provision_orchestrator import ProvisionOrchestrator
from .scheduler.retry_policy import RetryPolicy
from .scheduler.trigger import Trigger

logger = structlog.get_logger(__name__)


def setup_logging(settings: SchedulerSettings) -> None:
    """Configure structured logging."""
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )
    logging.basicConfig(level=level)


def build_orchestrator(
    settings: SchedulerSettings,
    db: Database,
    redis_client: Optional[Redis] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ProvisionOrchestrator:
    """Wire store, executor, retry policy and trigger from settings."""
    store = JobStore(db)
    executor = ProvisioningExecutor(
        api_url=settings.provisioning_api_url,
        timeout=settings.provisioning_timeout,
        permanent_status_codes=settings.permanent_failure_status_codes,
        client=http_client,
    )
    retry_policy = RetryPolicy(
        max_retries=settings.max_retries,
        retry_delay=timedelta(seconds=settings.retry_delay),
        honor_retry_delay=settings.honor_retry_delay,
    )
    stale_after = (
        timedelta(seconds=settings.stale_after_seconds) if settings.stale_after_seconds > 0 else None
    )
    trigger = Trigger(
        store=store,
        executor=executor,
        retry_policy=retry_policy,
        interval=settings.scheduler_interval,
        worker_count=settings.worker_count,
        max_backlog=settings.max_backlog,
        stale_after=stale_after,
    )
    idempotency_engine = IdempotencyEngine(redis_client) if redis_client is not None else None
    return ProvisionOrchestrator(store, trigger, idempotency_engine)


router = APIRouter()


def get_orchestrator(request: Request) -> ProvisionOrchestrator:
    """Dependency to get orchestrator instance."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Orchestrator not initialized",
        )
    return orchestrator


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": utc_now().isoformat(),
        "version": __version__,
    }


@router.post("/api/v1/schedule", status_code=status.HTTP_201_CREATED)
async def create_schedule(
    body: ScheduleCreateRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    orch: ProvisionOrchestrator = Depends(get_orchestrator),
):
    """
    Schedule a provisioning job.

    A repeated Idempotency-Key returns the schedule created by the first
    request with status 200.
    """
    job, created = await orch.create_schedule(
        payload=body.to_payload(),
        schedule_time=body.schedule_time,
        tags=body.tags,
        idempotency_key=idempotency_key,
    )
    response = ScheduleResponse.from_job(job)
    if not created:
        return JSONResponse(status_code=status.HTTP_200_OK, content=response.model_dump(mode="json"))
    return response


@router.get("/api/v1/schedule", response_model=list[ScheduleResponse])
async def list_schedules(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    tag: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    orch: ProvisionOrchestrator = Depends(get_orchestrator),
):
    """List schedules, most recently scheduled first."""
    jobs = await orch.list_schedules(status=status_filter, tag=tag, limit=limit, offset=offset)
    return [ScheduleResponse.from_job(job) for job in jobs]


@router.get("/api/v1/schedule/{job_id}", response_model=ScheduleResponse)
async def get_schedule(job_id: str, orch: ProvisionOrchestrator = Depends(get_orchestrator)):
    """Get one schedule."""
    return ScheduleResponse.from_job(await orch.get_schedule(job_id))


@router.delete("/api/v1/schedule/{job_id}")
async def cancel_schedule(job_id: str, orch: ProvisionOrchestrator = Depends(get_orchestrator)):
    """Cancel a pending schedule."""
    await orch.cancel_schedule(job_id)
    return {"message": "Schedule cancelled successfully"}


@router.post("/api/v1/schedule/{job_id}/execute", status_code=status.HTTP_202_ACCEPTED)
async def execute_schedule(job_id: str, orch: ProvisionOrchestrator = Depends(get_orchestrator)):
    """Execute a pending schedule now instead of waiting for its time."""
    job = await orch.execute_now(job_id)
    return {"message": "Provision execution started", "id": str(job.id)}


@router.get("/api/v1/schedule/{job_id}/attempts", response_model=list[AttemptResponse])
async def list_attempts(job_id: str, orch: ProvisionOrchestrator = Depends(get_orchestrator)):
    """Execution attempt history of a schedule."""
    return [AttemptResponse.from_attempt(attempt) for attempt in await orch.get_attempts(job_id)]


@router.get("/api/v1/queue/stats")
async def get_queue_stats(orch: ProvisionOrchestrator = Depends(get_orchestrator)):
    """Get job counts and worker pool statistics."""
    return await orch.get_queue_stats()


async def scheduler_error_handler(request: Request, exc: SchedulerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid request body"})


def create_app(settings: Optional[SchedulerSettings] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Settings are read from the environment at startup when not given.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        FastAPI lifespan: startup and shutdown.

        - Initialize database tables
        - Create orchestrator and start the trigger
        - Drain workers and close connections on shutdown
        """
        cfg = settings or SchedulerSettings()
        setup_logging(cfg)
        logger.info("scheduler_starting")

        db = Database(cfg)
        await db.init_models()
        redis_client = Redis.from_url(cfg.redis_url, decode_responses=True) if cfg.redis_url else None

        orchestrator = build_orchestrator(cfg, db, redis_client)
        app.state.orchestrator = orchestrator
        await orchestrator.start()
        logger.info(
            "scheduler_ready",
            interval=cfg.scheduler_interval,
            workers=cfg.worker_count,
            idempotency=redis_client is not None,
        )

        yield

        logger.info("scheduler_shutting_down")
        await orchestrator.shutdown(cfg.shutdown_grace_seconds)
        app.state.orchestrator = None
        await db.dispose()
        if redis_client is not None:
            await redis_client.aclose()
        logger.info("scheduler_stopped")

    app = FastAPI(
        title="OneClick Provisioning Scheduler API",
        description="""
    Deferred user provisioning with bounded automatic retry.

    ## Features

    * **Scheduling**: Create, list, inspect and cancel provisioning jobs
    * **Immediate execution**: Run a pending job ahead of its schedule
    * **Retry**: Failed provisioning calls are retried after a configured delay
    * **Idempotency**: Idempotency-Key prevents duplicate schedules
    """,
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Idempotency-Key"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return response

    app.add_exception_handler(SchedulerError, scheduler_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    """Run the API server and scheduler."""
    import uvicorn

    settings = SchedulerSettings()
    uvicorn.run(
        "oneclick_scheduler.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


# For running directly with python -m
if __name__ == "__main__":
    run()
