from typing import Any

from redis import asyncio as redis_asyncio

from api.config.logging import get_logger
from api.config.settings import Settings
from api.v1.infra.jobs.models import JobRecord, JobState, can_transition

logger = get_logger(__name__)


class InvalidTransitionError(Exception):
    """Raised when a write would move a job backwards or out of a terminal state."""

    def __init__(self, job_id: str, current: JobState | None, target: JobState):
        self.job_id = job_id
        self.current = current
        self.target = target
        current_name = current.value if current else "missing"
        super().__init__(
            f"Job {job_id} cannot move from {current_name} to {target.value}"
        )


class StatusStore:
    """
    TTL-bound mapping from job id to status record, backed by Redis.

    Every write resets the TTL to the retention window; after expiry a job
    is indistinguishable from one that was never submitted.
    """

    def __init__(self, settings: Settings, redis: redis_asyncio.Redis | None = None):
        self.settings = settings
        self.ttl_s = settings.job_status_ttl_s
        self.key_prefix = settings.job_status_key_prefix
        self.redis = redis or redis_asyncio.from_url(
            settings.redis_url, decode_responses=True
        )

    def key(self, job_id: str) -> str:
        return f"{self.key_prefix}{job_id}"

    async def set(self, job_id: str, record: JobRecord) -> None:
        """Write a record and reset its TTL."""
        await self.redis.set(self.key(job_id), record.to_json(), ex=self.ttl_s)

    async def get(self, job_id: str) -> JobRecord | None:
        """Read a record; None when it expired or was never written."""
        raw = await self.redis.get(self.key(job_id))
        if raw is None:
            return None
        return JobRecord.model_validate_json(raw)

    async def transition(
        self, job_id: str, state: JobState, **changes: Any
    ) -> JobRecord:
        """
        Move a job to ``state``, merging ``changes`` into its current record.

        Only the dispatcher handling a delivery writes that job's record, so
        the read-then-write here does not race with another writer.
        """
        current = await self.get(job_id)
        current_state = current.state if current else None

        if not can_transition(current_state, state):
            raise InvalidTransitionError(job_id, current_state, state)

        data = current.model_dump() if current else {"job_id": job_id}
        data.update(changes)
        data["state"] = state
        record = JobRecord.model_validate(data)

        await self.set(job_id, record)

        logger.debug(
            "Job status written",
            job_id=job_id,
            previous_state=current_state.value if current_state else None,
            state=state.value,
        )
        return record

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.redis.aclose()
