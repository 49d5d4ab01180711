import asyncio
import os
import time
from collections import deque
from collections.abc import AsyncGenerator
from functools import partial
from typing import Any

import fakeredis
import fakeredis.aioredis
import pytest
from httpx import ASGITransport, AsyncClient

from api.config.settings import Settings
from api.infra.broker import BrokerConnectionError, BrokerUnavailableError, Delivery
from api.infra.status_store import StatusStore
from api.main import create_app
from api.v1.core.registries import task_registry
from api.v1.infra.jobs.dispatcher import Dispatcher
from api.v1.infra.jobs.models import JobState


# Worker tasks used by the tests. Worker processes are forked in tests, so
# these only need to be importable from the parent.
def sleep_task(payload: dict[str, Any]) -> dict[str, Any]:
    time.sleep(payload.get("seconds", 0.5))
    return {"slept": payload.get("seconds", 0.5)}


def crash_task(payload: dict[str, Any]) -> dict[str, Any]:
    os._exit(payload.get("code", 3))


def silent_exit_task(payload: dict[str, Any]) -> dict[str, Any]:
    raise SystemExit(0)


for _name, _task in (
    ("test_sleep", sleep_task),
    ("test_crash", crash_task),
    ("test_silent_exit", silent_exit_task),
):
    if _name not in task_registry:
        task_registry.register(_name, _task)


class InMemoryBroker:
    """
    Broker double with the connector's interface.

    Honors the prefetch ceiling: at most ``prefetch_count`` deliveries are
    handed out before one of them is committed or discarded.
    """

    def __init__(self, prefetch_count: int = 2, queue_name: str = "heavy-computation"):
        self.prefetch_count = prefetch_count
        self.queue_name = queue_name
        self.connected = False
        self.refuse_connections = False
        self.connect_calls = 0

        self.ready: deque[tuple[bytes, bool]] = deque()
        self.unacked: dict[int, bytes] = {}
        self.published: list[bytes] = []
        self.acked: list[bytes] = []
        self.rejected: list[bytes] = []
        self.requeued: list[bytes] = []
        self.delivered = 0
        self.max_unacked_seen = 0

        self._handler = None
        self._next_tag = 1
        self._handler_tasks: set[asyncio.Task] = set()
        self._lost = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self, max_attempts: int | None = None) -> None:
        self.connect_calls += 1
        if self.refuse_connections:
            raise BrokerConnectionError("Could not connect to broker after 1 attempts")
        self.connected = True
        self._lost.clear()
        self._pump()

    async def reconnect(self) -> None:
        if self.connected:
            return
        await self.connect(max_attempts=1)

    async def publish(self, body: bytes, message_id: str | None = None) -> None:
        if not self.connected:
            raise BrokerUnavailableError("No broker channel is established")
        self.published.append(body)
        self.ready.append((body, False))
        self._pump()

    async def consume(self, handler) -> None:
        if not self.connected:
            raise BrokerUnavailableError("No broker channel is established")
        self._handler = handler
        self._pump()

    async def cancel_consume(self) -> None:
        self._handler = None

    async def close(self) -> None:
        self.connected = False

    async def wait_lost(self) -> None:
        await self._lost.wait()

    def _pump(self) -> None:
        while (
            self._handler is not None
            and self.connected
            and self.ready
            and len(self.unacked) < self.prefetch_count
        ):
            body, redelivered = self.ready.popleft()
            tag = self._next_tag
            self._next_tag += 1
            self.unacked[tag] = body
            self.delivered += 1
            self.max_unacked_seen = max(self.max_unacked_seen, len(self.unacked))

            delivery = Delivery(
                body,
                redelivered=redelivered,
                on_commit=partial(self._ack, tag),
                on_discard=partial(self._reject, tag),
                delivery_tag=tag,
            )
            task = asyncio.get_running_loop().create_task(self._handler(delivery))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)

    async def _ack(self, tag: int) -> None:
        self.acked.append(self.unacked.pop(tag))
        self._pump()

    async def _reject(self, tag: int, requeue: bool) -> None:
        body = self.unacked.pop(tag)
        if requeue:
            self.requeued.append(body)
            self.ready.append((body, True))
        else:
            self.rejected.append(body)
        self._pump()


async def wait_for_state(
    store: StatusStore,
    job_id: str,
    states: set[JobState],
    timeout: float = 15.0,
):
    """Poll the status store until the job reaches one of ``states``."""
    deadline = time.monotonic() + timeout
    while True:
        record = await store.get(job_id)
        if record is not None and record.state in states:
            return record
        if time.monotonic() >= deadline:
            raise AssertionError(
                f"Job {job_id} stuck in {record.state if record else 'missing'}"
            )
        await asyncio.sleep(0.05)


TERMINAL = {JobState.COMPLETED, JobState.FAILED}


@pytest.fixture
def settings() -> Settings:
    """Test settings: fast retries and forked workers."""
    return Settings(
        broker_prefetch_count=2,
        broker_connect_max_attempts=3,
        broker_connect_retry_delay_s=0,
        worker_start_method="fork",
        job_status_ttl_s=3600,
    )


@pytest.fixture
def fake_redis():
    return fakeredis.aioredis.FakeRedis(
        server=fakeredis.FakeServer(), decode_responses=True
    )


@pytest.fixture
async def status_store(settings, fake_redis) -> AsyncGenerator[StatusStore, None]:
    store = StatusStore(settings, redis=fake_redis)
    yield store
    await store.close()


@pytest.fixture
async def broker(settings) -> InMemoryBroker:
    broker = InMemoryBroker(prefetch_count=settings.broker_prefetch_count)
    await broker.connect()
    return broker


@pytest.fixture
async def dispatcher(settings, broker, status_store) -> AsyncGenerator[Dispatcher, None]:
    dispatcher = Dispatcher(settings, broker, status_store)
    await dispatcher.start()
    yield dispatcher
    if dispatcher.running:
        await dispatcher.stop(timeout_s=10)


@pytest.fixture
def app(settings, broker, status_store):
    """Create a test FastAPI application wired to the test doubles."""
    return create_app(settings, connector=broker, status_store=status_store)


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
