import time
from datetime import UTC, datetime

from fastapi import APIRouter, Request
from pydantic import BaseModel

from api.config.settings import Settings, SettingsDep
from api.infra.broker import BrokerConnector
from api.infra.dependencies import ConnectorDep, StatusStoreDep
from api.infra.status_store import StatusStore
from api.v1.core.exceptions import create_success_response

router = APIRouter()


class BrokerHealth(BaseModel):
    """Broker connection status."""

    connected: bool
    queue: str


class StatusStoreHealth(BaseModel):
    """Status store health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class DispatcherHealth(BaseModel):
    """In-process dispatcher status."""

    running: bool
    active_jobs: int = 0
    prefetch: int


@router.get("/healthz", response_model=dict)
async def health_check(
    request: Request,
    settings: Settings = SettingsDep,
    connector: BrokerConnector = ConnectorDep,
    status_store: StatusStore = StatusStoreDep,
):
    """Health check endpoint with broker, status store and dispatcher status."""

    broker_health = BrokerHealth(
        connected=connector.is_connected, queue=settings.broker_queue_name
    )
    store_health = await _check_status_store_health(status_store)

    dispatcher = getattr(request.app.state, "dispatcher", None)
    dispatcher_health = DispatcherHealth(
        running=bool(dispatcher and dispatcher.running),
        active_jobs=len(dispatcher.active_jobs) if dispatcher else 0,
        prefetch=settings.broker_prefetch_count,
    )

    health_data = {
        "ok": broker_health.connected and store_health.connected,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": datetime.now(UTC).isoformat(),
        "broker": broker_health.model_dump(),
        "status_store": store_health.model_dump(),
        "dispatcher": dispatcher_health.model_dump(),
    }

    return create_success_response(data=health_data)


async def _check_status_store_health(status_store: StatusStore) -> StatusStoreHealth:
    """Check status store connectivity and response time."""
    start_time = time.perf_counter()

    try:
        await status_store.ping()
    except Exception as e:
        return StatusStoreHealth(connected=False, error=str(e))

    response_time_ms = (time.perf_counter() - start_time) * 1000
    return StatusStoreHealth(connected=True, response_time_ms=round(response_time_ms, 2))
