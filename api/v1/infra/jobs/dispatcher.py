"""
Broker-fed job dispatcher with bounded concurrency.
"""

import asyncio
import json
import os
import socket
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any

import pydantic
import structlog

from api.config.logging import get_logger
from api.config.settings import CrashRetryPolicy, Settings
from api.infra.broker import BrokerConnector, BrokerUnavailableError, Delivery
from api.infra.status_store import InvalidTransitionError, StatusStore
from api.v1.core.registries import task_registry
from api.v1.infra.jobs import registry_init  # noqa: F401
from api.v1.infra.jobs.executor import WorkerOutcome, WorkerUnit
from api.v1.infra.jobs.models import JobMessage, JobState

logger = get_logger(__name__)


class MalformedMessageError(Exception):
    """Raised when a delivery body is not a usable job message."""

    def __init__(self, message: str, job_id: str | None = None):
        self.job_id = job_id
        super().__init__(message)


def _extract_job_id(body: bytes) -> str | None:
    try:
        data = json.loads(body)
    except ValueError:
        return None
    job_id = data.get("jobId") if isinstance(data, dict) else None
    return job_id if isinstance(job_id, str) and job_id else None


def parse_delivery(delivery: Delivery) -> JobMessage:
    """Decode a delivery body, checking that its task is registered."""
    try:
        message = JobMessage.model_validate_json(delivery.body)
    except pydantic.ValidationError as e:
        raise MalformedMessageError(
            f"Malformed job message: {e.error_count()} validation error(s)",
            job_id=_extract_job_id(delivery.body),
        ) from e

    if message.task not in task_registry:
        raise MalformedMessageError(
            f"Unknown task: {message.task}", job_id=message.job_id
        )
    return message


class Dispatcher:
    """
    Consumes job deliveries and runs each one in its own worker process.

    Features:
    - At most ``broker_prefetch_count`` worker units alive at once
    - Exactly one commit or discard per delivery
    - Poison messages dropped, never requeued
    - Optional republish of crashed jobs, bounded by ``job_max_attempts``
    - Reconnects with the full retry budget when the broker connection drops
    """

    def __init__(
        self, settings: Settings, connector: BrokerConnector, status_store: StatusStore
    ):
        self.settings = settings
        self.connector = connector
        self.status_store = status_store
        self.dispatcher_id = f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.prefetch = settings.broker_prefetch_count
        self.running = False
        self.active_jobs: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._slots = asyncio.Semaphore(self.prefetch)
        self._executor = ThreadPoolExecutor(
            max_workers=self.prefetch, thread_name_prefix="worker-unit"
        )
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        """Register the delivery handler with the connector."""
        if self.running:
            raise RuntimeError("Dispatcher is already running")

        self._stopped.clear()
        await self.connector.consume(self.on_delivery)
        self.running = True

        logger.info(
            "Dispatcher started",
            dispatcher_id=self.dispatcher_id,
            prefetch=self.prefetch,
            queue=self.settings.broker_queue_name,
        )

    async def run(self) -> None:
        """
        Start consuming and keep going until ``stop`` is called.

        Raises BrokerConnectionError if the connection drops and cannot be
        re-established within the retry budget.
        """
        await self.start()

        while self.running:
            lost = asyncio.create_task(self.connector.wait_lost())
            stopped = asyncio.create_task(self._stopped.wait())
            try:
                done, _ = await asyncio.wait(
                    {lost, stopped}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                lost.cancel()
                stopped.cancel()

            if stopped in done or not self.running:
                break

            logger.warning(
                "Broker connection lost, reconnecting",
                dispatcher_id=self.dispatcher_id,
            )
            await self.connector.connect()

    async def stop(self, timeout_s: float = 30) -> None:
        """Stop consuming and wait for in-flight deliveries to settle."""
        logger.info("Stopping dispatcher", dispatcher_id=self.dispatcher_id)
        self.running = False
        await self.connector.cancel_consume()

        if self._tasks:
            _, pending = await asyncio.wait(set(self._tasks), timeout=timeout_s)
            if pending:
                # Unsettled deliveries are redelivered once the connection closes
                logger.warning(
                    "Dispatcher stopped with active deliveries",
                    dispatcher_id=self.dispatcher_id,
                    active_deliveries=len(pending),
                )

        self._executor.shutdown(wait=False)
        self._stopped.set()

    async def on_delivery(self, delivery: Delivery) -> None:
        """Connector callback: hand the delivery to its own task and return."""
        task = asyncio.create_task(self._process_delivery(delivery))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_idle(self) -> None:
        """Wait until every delivery received so far has been settled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _process_delivery(self, delivery: Delivery) -> None:
        try:
            await self._handle(delivery)
        except Exception:
            logger.exception(
                "Unexpected error while handling delivery",
                delivery_tag=delivery.delivery_tag,
            )
            if not delivery.settled:
                try:
                    await delivery.discard(requeue=False)
                except Exception:
                    logger.exception(
                        "Failed to discard delivery",
                        delivery_tag=delivery.delivery_tag,
                    )

    async def _handle(self, delivery: Delivery) -> None:
        try:
            message = parse_delivery(delivery)
        except MalformedMessageError as e:
            await self._reject_malformed(delivery, e)
            return

        job_logger = logger.bind(job_id=message.job_id, attempt=message.attempt)
        job_logger.info("Delivery received", redelivered=delivery.redelivered)

        # Claim under the slot so a duplicate that waited behind running jobs
        # sees the status those jobs wrote
        async with self._slots:
            if not await self._claim(delivery, message, job_logger):
                return
            outcome = await self._execute(message, job_logger)

        if outcome.ok:
            await self._finish(
                delivery,
                message,
                job_logger,
                JobState.COMPLETED,
                result=outcome.data,
            )
            return

        if outcome.crashed and await self._republish(delivery, message, job_logger):
            return

        await self._finish(
            delivery,
            message,
            job_logger,
            JobState.FAILED,
            error=outcome.message,
        )

    async def _claim(
        self,
        delivery: Delivery,
        message: JobMessage,
        job_logger: structlog.BoundLogger,
    ) -> bool:
        """
        Mark the job active, or settle the delivery and return False when the
        job must not run: it already finished, or its status cannot be written.
        """
        try:
            record = await self.status_store.get(message.job_id)
            if record is not None and record.is_terminal():
                job_logger.info(
                    "Job already finished, acknowledging duplicate delivery",
                    state=record.state.value,
                )
                await delivery.commit()
                return False

            await self.status_store.transition(
                message.job_id,
                JobState.ACTIVE,
                started_at=datetime.now(UTC),
                attempts=message.attempt,
            )
        except Exception as e:
            await self._settle_after_store_failure(delivery, job_logger, e)
            return False
        return True

    async def _execute(
        self, message: JobMessage, job_logger: structlog.BoundLogger
    ) -> WorkerOutcome:
        """Run one worker unit; the caller holds a slot."""
        unit = WorkerUnit(
            task_registry.get(message.task),
            message.payload,
            start_method=self.settings.worker_start_method.value,
            timeout_s=self.settings.job_timeout_s,
        )

        self.active_jobs.add(message.job_id)
        job_logger.info("Worker unit started", active_jobs=len(self.active_jobs))
        try:
            outcome = await unit.run(self._executor)
        except Exception as e:
            job_logger.exception("Worker unit could not be run")
            outcome = WorkerOutcome(
                ok=False, message=f"Worker failed to start: {e}", crashed=True
            )
        finally:
            self.active_jobs.discard(message.job_id)

        job_logger.info(
            "Worker unit finished",
            ok=outcome.ok,
            crashed=outcome.crashed,
            exitcode=unit.exitcode,
            error=outcome.message,
        )
        return outcome

    async def _finish(
        self,
        delivery: Delivery,
        message: JobMessage,
        job_logger: structlog.BoundLogger,
        state: JobState,
        **fields: Any,
    ) -> None:
        """Write the terminal record, then commit (completed) or discard (failed)."""
        try:
            await self.status_store.transition(
                message.job_id, state, completed_at=datetime.now(UTC), **fields
            )
        except InvalidTransitionError as e:
            job_logger.warning("Terminal status already recorded", error=str(e))
            await delivery.commit()
            return
        except Exception as e:
            await self._settle_after_store_failure(delivery, job_logger, e)
            return

        if state == JobState.COMPLETED:
            await delivery.commit()
            job_logger.info("Job completed")
        else:
            await delivery.discard(requeue=False)
            job_logger.warning("Job failed", error=fields.get("error"))

    async def _republish(
        self,
        delivery: Delivery,
        message: JobMessage,
        job_logger: structlog.BoundLogger,
    ) -> bool:
        """Re-enqueue a crashed job as a new message when the policy allows it."""
        if self.settings.job_crash_retry_policy != CrashRetryPolicy.REPUBLISH:
            return False
        if message.attempt >= self.settings.job_max_attempts:
            job_logger.warning(
                "Crash retry budget exhausted",
                max_attempts=self.settings.job_max_attempts,
            )
            return False

        retry = message.model_copy(update={"attempt": message.attempt + 1})
        try:
            await self.connector.publish(retry.to_bytes(), message_id=retry.job_id)
        except BrokerUnavailableError as e:
            job_logger.error("Could not republish crashed job", error=str(e))
            return False

        await delivery.commit()
        job_logger.info("Crashed job republished", next_attempt=retry.attempt)
        return True

    async def _reject_malformed(
        self, delivery: Delivery, error: MalformedMessageError
    ) -> None:
        logger.warning(
            "Rejecting malformed delivery",
            job_id=error.job_id,
            error=str(error),
            delivery_tag=delivery.delivery_tag,
        )
        if error.job_id is not None:
            try:
                await self.status_store.transition(
                    error.job_id,
                    JobState.FAILED,
                    error=str(error),
                    completed_at=datetime.now(UTC),
                )
            except Exception as e:
                logger.error(
                    "Could not record malformed delivery as failed",
                    job_id=error.job_id,
                    error=str(e),
                )
        await delivery.discard(requeue=False)

    async def _settle_after_store_failure(
        self,
        delivery: Delivery,
        job_logger: structlog.BoundLogger,
        error: Exception,
    ) -> None:
        # A first delivery is requeued so the job is replayed once the store
        # recovers; a redelivery is dropped to keep the replay chain bounded.
        if delivery.redelivered:
            job_logger.error(
                "Status write failed on redelivery, dropping message",
                error=str(error),
            )
            await delivery.discard(requeue=False)
        else:
            job_logger.error(
                "Status write failed, requeueing delivery for replay",
                error=str(error),
            )
            await delivery.discard(requeue=True)
