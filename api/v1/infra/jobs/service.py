"""
Job service for submitting background jobs and reading their status.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

from api.config.logging import get_logger
from api.config.settings import Settings
from api.infra.broker import BrokerConnectionError, BrokerConnector, BrokerUnavailableError
from api.infra.status_store import StatusStore
from api.v1.core.exceptions import SubmissionFailedError
from api.v1.infra.jobs.models import JobMessage, JobRecord, JobState
from api.v1.infra.jobs.registry_init import DEFAULT_TASK
from api.v1.infra.jobs.schemas import JobStatusResponse, JobSubmitResponse

logger = get_logger(__name__)


class JobService:
    """Submission and status query interface for background jobs."""

    def __init__(
        self, settings: Settings, connector: BrokerConnector, status_store: StatusStore
    ):
        self.settings = settings
        self.connector = connector
        self.status_store = status_store

    @staticmethod
    def status_location(job_id: str) -> str:
        return f"/v1/jobs/{job_id}"

    async def submit_job(
        self, payload: dict[str, Any], task: str = DEFAULT_TASK
    ) -> JobSubmitResponse:
        """
        Submit a job and return without waiting for it to run.

        The queued record is written before the message is published so a
        dispatcher can never see a job that has no status yet.

        Raises:
            SubmissionFailedError: publish failed even after one reconnect.
                The queued record is left to expire.
        """
        job_id = str(uuid.uuid4())

        await self.status_store.set(
            job_id,
            JobRecord(
                job_id=job_id,
                state=JobState.QUEUED,
                submitted_at=datetime.now(UTC),
            ),
        )

        message = JobMessage(job_id=job_id, payload=payload, task=task)
        await self._publish(message)

        logger.info("Job submitted", job_id=job_id, task=task)

        return JobSubmitResponse(
            job_id=job_id, status_location=self.status_location(job_id)
        )

    async def _publish(self, message: JobMessage) -> None:
        body = message.to_bytes()
        try:
            await self.connector.publish(body, message_id=message.job_id)
            return
        except BrokerUnavailableError as e:
            logger.warning(
                "Publish failed, reconnecting once",
                job_id=message.job_id,
                error=str(e),
            )

        try:
            await self.connector.reconnect()
            await self.connector.publish(body, message_id=message.job_id)
        except (BrokerConnectionError, BrokerUnavailableError) as e:
            logger.error(
                "Job submission failed", job_id=message.job_id, error=str(e)
            )
            raise SubmissionFailedError(
                "Job submission failed: message broker unavailable",
                details={"job_id": message.job_id},
            ) from e

    async def get_job_status(self, job_id: str) -> JobStatusResponse | None:
        """Read a job's status; None when it expired or never existed."""
        record = await self.status_store.get(job_id)
        if record is None:
            return None
        return JobStatusResponse.from_record(record)
