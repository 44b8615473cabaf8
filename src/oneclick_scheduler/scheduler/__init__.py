"""
Scheduler Core

Polling execution engine: models, store, claimer, executor, retry policy,
worker pool and trigger.
"""

from .models import JobStatus, OutcomeKind, ProvisionAttempt, ScheduledProvision
from .outcomes import Outcome
from .job_store import JobStore
from .claimer import Claimer
from .executor_adapter import ProvisioningExecutor
from .retry_policy import Resolution, RetryPolicy
from .worker_pool import WorkerPool
from .trigger import Trigger
from .idempotency_engine import IdempotencyEngine
from .provision_orchestrator import ProvisionOrchestrator

__all__ = [
    "JobStatus",
    "OutcomeKind",
    "ProvisionAttempt",
    "ScheduledProvision",
    "Outcome",
    "JobStore",
    "Claimer",
    "ProvisioningExecutor",
    "Resolution",
    "RetryPolicy",
    "WorkerPool",
    "Trigger",
    "IdempotencyEngine",
    "ProvisionOrchestrator",
]
