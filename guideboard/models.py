"""
Domain models for the guide job board.
"""

from datetime import date, datetime, time
from decimal import Decimal
from enum import StrEnum
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator


class Role(StrEnum):
    ADMIN = "admin"
    GUIDE = "guide"


class JobStatus(StrEnum):
    OPEN = "open"
    ASSIGNED = "assigned"
    COMPLETE = "complete"
    CANCELED = "canceled"


# statuses in which a job must have a claimant; all others must not
CLAIMED_STATUSES = frozenset({JobStatus.ASSIGNED, JobStatus.COMPLETE})


class Profile(BaseModel):
    id: str
    full_name: str = ""
    role: Role = Role.GUIDE
    certs: list[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime | None = None


class Job(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    title: str = Field(min_length=1)
    date: date
    call_time: time
    dock_time: time | None = None
    location: str | None = None
    boat: str | None = None
    requirements: list[str] = Field(default_factory=list)
    pay: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None
    status: JobStatus = JobStatus.OPEN
    claimed_by: str | None = None  # Profile ID of the guide holding the job
    claimed_at: datetime | None = None
    created_by: str
    created_at: datetime | None = None

    @field_validator("requirements")
    @classmethod
    def _dedupe_requirements(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for tag in (v.strip() for v in value):
            if tag and tag not in seen:
                seen.append(tag)
        return seen

    @model_validator(mode="after")
    def _claimant_matches_status(self) -> "Job":
        if self.status in CLAIMED_STATUSES and self.claimed_by is None:
            raise ValueError(f"status {self.status} requires a claimant")
        if self.status not in CLAIMED_STATUSES and self.claimed_by is not None:
            raise ValueError(f"status {self.status} must not have a claimant")
        return self

    def with_changes(self, **changes) -> "Job":
        """Return a validated copy with ``changes`` applied."""
        return Job.model_validate({**self.model_dump(), **changes})


class Contact(BaseModel):
    job_id: str
    customer_name: str
    customer_phone: str | None = None
    customer_email: str | None = None
    created_at: datetime | None = None

    @field_validator("customer_name")
    @classmethod
    def _name_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("customer_name must not be blank")
        return value


class ChangeEvent(BaseModel):
    seq: int
    table: str  # "jobs" or "job_contacts"
    op: str  # "insert", "update" or "delete"
    row_id: str
    at: datetime


def job_key(job_id: str) -> str:
    return f"job:{job_id}"


def contact_key(job_id: str) -> str:
    return f"contact:{job_id}"


def profile_key(user_id: str) -> str:
    return f"profile:{user_id}"
