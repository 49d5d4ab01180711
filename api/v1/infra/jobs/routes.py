"""
Job API endpoints.

Submitting returns as soon as the job is queued; clients poll the status
location until the job reaches completed or failed.
"""

from typing import Any

from fastapi import APIRouter, status

from api.config.logging import get_logger
from api.config.settings import Settings, SettingsDep
from api.infra.broker import BrokerConnector
from api.infra.dependencies import ConnectorDep, StatusStoreDep
from api.infra.status_store import StatusStore
from api.v1.core.exceptions import NotFoundError, create_success_response
from api.v1.infra.jobs.schemas import JobSubmitRequest
from api.v1.infra.jobs.service import JobService

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def submit_job(
    job_request: JobSubmitRequest,
    settings: Settings = SettingsDep,
    connector: BrokerConnector = ConnectorDep,
    status_store: StatusStore = StatusStoreDep,
) -> dict[str, Any]:
    """Submit a prime counting job for background processing."""

    payload = job_request.payload.model_dump(by_alias=True)
    if payload["limit"] is None:
        payload["limit"] = settings.job_default_limit

    job_service = JobService(settings, connector, status_store)
    result = await job_service.submit_job(payload)

    return create_success_response(
        data=result.model_dump(by_alias=True), message="Task added to queue"
    )


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: str,
    settings: Settings = SettingsDep,
    connector: BrokerConnector = ConnectorDep,
    status_store: StatusStore = StatusStoreDep,
) -> dict[str, Any]:
    """Get a job's current status."""

    job_service = JobService(settings, connector, status_store)
    job_status = await job_service.get_job_status(job_id)

    if job_status is None:
        raise NotFoundError("Job not found", details={"job_id": job_id})

    return create_success_response(
        data=job_status.model_dump(mode="json", by_alias=True, exclude_none=True)
    )
