"""
Scheduler Errors

Error taxonomy shared by the store, the execution engine and the API.
Each error carries the HTTP status the API reports it with.
"""
from typing import Optional


class SchedulerError(Exception):
    """Base class for all scheduler errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SchedulerError):
    """Malformed or incomplete input, rejected before it reaches the store."""

    status_code = 400


class JobNotFoundError(SchedulerError):
    """No scheduled provision with the requested id."""

    status_code = 404

    def __init__(self, job_id):
        super().__init__(f"Schedule {job_id} not found")
        self.job_id = job_id


class ConflictError(SchedulerError):
    """Attempted transition is not allowed from the job's current status."""

    status_code = 409


class PersistenceError(SchedulerError):
    """Store unreachable or write failed; the job keeps its last committed state."""

    status_code = 503


class ExecutionError(SchedulerError):
    """Failure reported by, or while reaching, the provisioning endpoint."""

    status_code = 502

    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.response_status = status_code


class TransientExecutionError(ExecutionError):
    """Network error, timeout or rejection that may succeed on retry."""


class PermanentExecutionError(ExecutionError):
    """Explicit do-not-retry rejection from the provisioning endpoint."""
