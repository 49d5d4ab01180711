"""
Job API Pydantic schemas.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from api.v1.infra.jobs.models import JobRecord, JobState


class _CamelSchema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PrimeCountPayload(_CamelSchema):
    """
    Parameters for the prime counting job.

    ``limit`` is range-checked by the task itself, so a negative bound is
    accepted here and surfaces as a failed job.
    """

    limit: int | None = Field(default=None, description="Upper bound for primes")
    include_primes: bool = Field(
        default=False, description="Return the primes themselves, not just the count"
    )


class JobSubmitRequest(_CamelSchema):
    """Schema for submitting a job via API."""

    payload: PrimeCountPayload = Field(default_factory=PrimeCountPayload)


class JobSubmitResponse(_CamelSchema):
    """Schema for job submission response."""

    job_id: str
    status_location: str


class JobStatusResponse(_CamelSchema):
    """Schema for job status API responses."""

    job_id: str
    state: JobState
    result: dict[str, Any] | None = None
    error: str | None = None
    submitted_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    attempts: int = 0

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobStatusResponse":
        return cls.model_validate(record.model_dump())
