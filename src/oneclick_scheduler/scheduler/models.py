"""
Scheduler Data Models

Defines the ScheduledProvision, tag index and attempt history tables.
These models are the source of truth for job state in the database.
"""
import uuid
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Dict, List, Optional

from sqlalchemy import DateTime, Text
from sqlmodel import JSON, Column, Field, SQLModel

from .clock import utc_now


class JobStatus(str, PyEnum):
    """Scheduled provision status."""
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OutcomeKind(str, PyEnum):
    """Classification of one execution attempt."""
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class ScheduledProvision(SQLModel, table=True):
    """
    A one-shot provisioning job deferred until schedule_time.

    The payload is forwarded verbatim to the provisioning API; nothing in the
    scheduler reads it beyond logging the employee identity.
    """
    __tablename__ = "scheduled_provisions"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
        description="Employee and application data sent to the provisioning API",
    )
    schedule_time: datetime = Field(
        sa_type=DateTime(), index=True, description="Naive UTC time the job becomes due"
    )
    status: str = Field(default=JobStatus.PENDING.value, index=True)
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime())
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime())
    executed_at: Optional[datetime] = Field(default=None, sa_type=DateTime())
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    retry_count: int = Field(default=0)
    claim_token: Optional[uuid.UUID] = Field(
        default=None,
        description="Set on every claim; only the holder may refresh or resolve the job",
    )

    @property
    def employee(self) -> Dict[str, Any]:
        return self.payload.get("employee") or {}


class ScheduledProvisionTag(SQLModel, table=True):
    """Tag index row used for filtering listings by tag."""
    __tablename__ = "scheduled_provision_tags"

    job_id: uuid.UUID = Field(foreign_key="scheduled_provisions.id", primary_key=True)
    tag: str = Field(primary_key=True, index=True)


class ProvisionAttempt(SQLModel, table=True):
    """
    Execution attempt history record.

    Tracks each call to the provisioning API for a job, including retries.
    """
    __tablename__ = "provision_attempts"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    job_id: uuid.UUID = Field(foreign_key="scheduled_provisions.id", index=True)
    attempt: int = Field(description="Attempt number (1, 2, 3, ...)")
    outcome: str = Field(description="success, transient_failure or permanent_failure")
    status_code: Optional[int] = Field(default=None, description="HTTP status returned by the API")
    started_at: datetime = Field(default_factory=utc_now, sa_type=DateTime())
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime())
    execution_time_ms: Optional[int] = Field(default=None)
    error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
