"""
Job lifecycle models shared by the submission path, the dispatcher and the
status store.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobState(str, Enum):
    """Job lifecycle states."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})

# None is the state of a job with no record (never written or expired).
# ACTIVE -> ACTIVE happens when a job is redelivered or republished.
_ALLOWED_TRANSITIONS: dict[JobState | None, frozenset[JobState]] = {
    None: frozenset({JobState.QUEUED, JobState.ACTIVE, JobState.FAILED}),
    JobState.QUEUED: frozenset({JobState.ACTIVE, JobState.FAILED}),
    JobState.ACTIVE: frozenset(
        {JobState.ACTIVE, JobState.COMPLETED, JobState.FAILED}
    ),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
}


def can_transition(current: JobState | None, target: JobState) -> bool:
    """Check whether a job may move from ``current`` to ``target``."""
    return target in _ALLOWED_TRANSITIONS[current]


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class JobRecord(_CamelModel):
    """
    Status record persisted in the status store under ``job:<jobId>``.

    ``result`` is only set for completed jobs and ``error`` only for failed
    ones. Serialized with camelCase keys and without unset fields.
    """

    job_id: str
    state: JobState
    submitted_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    attempts: int = 0

    def is_terminal(self) -> bool:
        """Check if the job reached completed or failed."""
        return self.state in TERMINAL_STATES

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class JobMessage(_CamelModel):
    """Broker wire message: ``{"jobId": ..., "payload": {...}}``."""

    job_id: str = Field(..., min_length=1)
    payload: dict[str, Any]
    task: str = "count_primes"
    attempt: int = Field(default=1, ge=1)

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode()
