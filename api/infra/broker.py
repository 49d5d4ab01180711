import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractIncomingMessage,
    AbstractQueue,
)
from aio_pika.exceptions import AMQPError

from api.config.logging import get_logger
from api.config.settings import Settings

logger = get_logger(__name__)

_CONNECT_ERRORS = (AMQPError, OSError, asyncio.TimeoutError)


class BrokerConnectionError(Exception):
    """Raised when the broker stays unreachable for the whole retry budget."""


class BrokerUnavailableError(Exception):
    """Raised when an operation needs a channel and none is established."""


class DeliveryAlreadySettledError(Exception):
    """Raised when a delivery is committed or discarded a second time."""


class Delivery:
    """
    One broker handoff of a job message.

    The consumer must settle every delivery exactly once, either with
    ``commit`` (acknowledge, the message is removed) or ``discard`` (reject,
    dropped unless ``requeue`` is set).
    """

    def __init__(
        self,
        body: bytes,
        *,
        redelivered: bool,
        on_commit: Callable[[], Awaitable[Any]],
        on_discard: Callable[[bool], Awaitable[Any]],
        delivery_tag: int | None = None,
    ):
        self.body = body
        self.redelivered = redelivered
        self.delivery_tag = delivery_tag
        self._on_commit = on_commit
        self._on_discard = on_discard
        self.outcome: str | None = None

    @classmethod
    def from_message(cls, message: AbstractIncomingMessage) -> "Delivery":
        async def discard(requeue: bool) -> None:
            await message.reject(requeue=requeue)

        return cls(
            message.body,
            redelivered=bool(message.redelivered),
            on_commit=message.ack,
            on_discard=discard,
            delivery_tag=message.delivery_tag,
        )

    @property
    def settled(self) -> bool:
        return self.outcome is not None

    def _settle(self, outcome: str) -> None:
        if self.outcome is not None:
            raise DeliveryAlreadySettledError(
                f"Delivery {self.delivery_tag} already {self.outcome}"
            )
        self.outcome = outcome

    async def commit(self) -> None:
        """Acknowledge the delivery, permanently removing the message."""
        self._settle("committed")
        await self._on_commit()

    async def discard(self, requeue: bool = False) -> None:
        """Reject the delivery; the message is dropped unless requeued."""
        self._settle("requeued" if requeue else "discarded")
        await self._on_discard(requeue)


DeliveryHandler = Callable[[Delivery], Awaitable[None]]


class BrokerConnector:
    """
    Owns the single connection and channel to the message broker.

    The channel's prefetch count caps the number of unsettled deliveries
    this consumer holds, which is the pipeline's only backpressure.
    Construct it explicitly, call ``connect`` before use and ``close`` on
    shutdown.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.url = settings.broker_url
        self.queue_name = settings.broker_queue_name
        self.prefetch_count = settings.broker_prefetch_count
        self.max_attempts = settings.broker_connect_max_attempts
        self.retry_delay_s = settings.broker_connect_retry_delay_s
        self.connect_timeout_s = settings.broker_connect_timeout_s

        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._queue: AbstractQueue | None = None
        self._handler: DeliveryHandler | None = None
        self._consumer_tag: str | None = None
        self._publish_lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()
        self._lost = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self._channel is not None and not self._channel.is_closed

    async def connect(self, max_attempts: int | None = None) -> None:
        """
        Connect, open the channel and declare the durable queue.

        Retries with a fixed delay; raises BrokerConnectionError once the
        attempt budget is spent. A previously registered consumer is
        re-registered on the new channel. Concurrent callers are serialized
        and a caller that finds the channel already open returns at once.
        """
        async with self._connect_lock:
            if self.is_connected:
                return
            # Drop whatever is left of a lost connection before opening anew
            await self._reset()
            await self._connect(max_attempts or self.max_attempts)

    async def reconnect(self) -> None:
        """
        Make exactly one new connection attempt unless another caller has
        already restored the channel.
        """
        await self.connect(max_attempts=1)

    async def _connect(self, attempts: int) -> None:
        last_error: BaseException | None = None

        for attempt in range(1, attempts + 1):
            try:
                await self._open()
            except _CONNECT_ERRORS as e:
                last_error = e
                logger.warning(
                    "Broker connection attempt failed",
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(e) or e.__class__.__name__,
                )
                await self._reset()
                if attempt < attempts:
                    await asyncio.sleep(self.retry_delay_s)
                continue

            self._lost.clear()
            logger.info(
                "Connected to broker",
                queue=self.queue_name,
                prefetch_count=self.prefetch_count,
                attempt=attempt,
            )
            if self._handler is not None:
                await self._start_consumer()
            return

        logger.error("Broker unreachable, giving up", attempts=attempts)
        raise BrokerConnectionError(
            f"Could not connect to broker after {attempts} attempts"
        ) from last_error

    async def _open(self) -> None:
        self._connection = await aio_pika.connect(
            self.url, timeout=self.connect_timeout_s
        )
        self._connection.close_callbacks.add(self._on_connection_closed)

        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=self.prefetch_count)
        self._queue = await self._channel.declare_queue(self.queue_name, durable=True)

    async def _reset(self) -> None:
        connection = self._connection
        self._connection = None
        self._channel = None
        self._queue = None
        self._consumer_tag = None

        if connection is not None:
            connection.close_callbacks.discard(self._on_connection_closed)
            if not connection.is_closed:
                await connection.close()

    def _on_connection_closed(self, _sender: Any, exc: BaseException | None = None) -> None:
        logger.warning("Broker connection lost", error=str(exc) if exc else None)
        self._channel = None
        self._queue = None
        self._consumer_tag = None
        self._lost.set()

    async def wait_lost(self) -> None:
        """Block until the connection drops unexpectedly."""
        await self._lost.wait()

    async def publish(self, body: bytes, message_id: str | None = None) -> None:
        """
        Publish a persistent message to the job queue.

        Raises BrokerUnavailableError when no channel is established or the
        broker refuses the message.
        """
        async with self._publish_lock:
            if not self.is_connected:
                raise BrokerUnavailableError("No broker channel is established")

            message = aio_pika.Message(
                body=body,
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                message_id=message_id,
            )
            try:
                await self._channel.default_exchange.publish(
                    message, routing_key=self.queue_name
                )
            except (AMQPError, OSError) as e:
                self._channel = None
                raise BrokerUnavailableError(f"Publish failed: {e}") from e

        logger.debug("Message published", queue=self.queue_name, message_id=message_id)

    async def consume(self, handler: DeliveryHandler) -> None:
        """Register ``handler`` to be called once per delivery."""
        if not self.is_connected:
            raise BrokerUnavailableError("No broker channel is established")

        self._handler = handler
        await self._start_consumer()

    async def _start_consumer(self) -> None:
        handler = self._handler

        async def on_message(message: AbstractIncomingMessage) -> None:
            await handler(Delivery.from_message(message))

        self._consumer_tag = await self._queue.consume(on_message, no_ack=False)
        logger.info(
            "Consuming from queue",
            queue=self.queue_name,
            consumer_tag=self._consumer_tag,
        )

    async def cancel_consume(self) -> None:
        """Stop receiving new deliveries; unsettled ones stay valid."""
        self._handler = None
        if self._queue is not None and self._consumer_tag is not None:
            try:
                await self._queue.cancel(self._consumer_tag)
            except _CONNECT_ERRORS as e:
                logger.warning("Failed to cancel consumer", error=str(e))
        self._consumer_tag = None

    async def close(self) -> None:
        """Close the channel and connection."""
        self._handler = None
        await self._reset()
        logger.info("Broker connection closed")
