"""
API Schemas

Request and response bodies of the schedule API.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .scheduler.models import ProvisionAttempt, ScheduledProvision


class EmployeeData(BaseModel):
    """Employee being provisioned."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    full_name: str = Field(default="", alias="fullName")
    work_email: str = Field(default="", alias="workEmail")
    personal_email: str = Field(default="", alias="personalEmail")
    department: str = ""
    job_title: str = Field(default="", alias="jobTitle")
    role: str = ""


class ScheduleCreateRequest(BaseModel):
    """Body of POST /schedule."""
    employee: EmployeeData
    applications: Dict[str, Any] = Field(default_factory=dict)
    schedule_time: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        """Payload forwarded to the provisioning API."""
        return {
            "employee": self.employee.model_dump(by_alias=True),
            "applications": self.applications,
        }


class ScheduleResponse(BaseModel):
    id: uuid.UUID
    employee_data: Dict[str, Any]
    applications: Dict[str, Any]
    schedule_time: datetime
    status: str
    tags: List[str]
    created_at: datetime
    updated_at: datetime
    executed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    retry_count: int

    @classmethod
    def from_job(cls, job: ScheduledProvision) -> "ScheduleResponse":
        return cls(
            id=job.id,
            employee_data=job.employee,
            applications=job.payload.get("applications") or {},
            schedule_time=job.schedule_time,
            status=job.status,
            tags=list(job.tags or []),
            created_at=job.created_at,
            updated_at=job.updated_at,
            executed_at=job.executed_at,
            error_message=job.error_message,
            retry_count=job.retry_count,
        )


class AttemptResponse(BaseModel):
    attempt: int
    outcome: str
    status_code: Optional[int] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    execution_time_ms: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def from_attempt(cls, attempt: ProvisionAttempt) -> "AttemptResponse":
        return cls(
            attempt=attempt.attempt,
            outcome=attempt.outcome,
            status_code=attempt.status_code,
            started_at=attempt.started_at,
            completed_at=attempt.completed_at,
            execution_time_ms=attempt.execution_time_ms,
            error=attempt.error,
        )
