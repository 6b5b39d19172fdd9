"""RabbitMQ lifecycle event consumer."""

import json
from typing import Any, Callable, Coroutine

import aio_pika
from aio_pika import ExchangeType, IncomingMessage
from aio_pika.abc import AbstractRobustConnection
from pydantic import ValidationError

from courseflow.core.config import get_settings
from courseflow.core.logging import get_logger
from courseflow.models.event import LifecycleEvent
from courseflow.observability.metrics import EVENTS_PROCESSED, EVENTS_RECEIVED

logger = get_logger(__name__)

# Type alias for message handler
MessageHandler = Callable[[LifecycleEvent], Coroutine[Any, Any, None]]


class RabbitMQConsumer:
    """Consumes lifecycle events published by the catalog.

    The queue is bound to the lifecycle topic exchange and can also be
    published to directly by name.
    """

    def __init__(self, handler: MessageHandler):
        """Initialize consumer.

        Args:
            handler: Async function to handle incoming events
        """
        self._settings = get_settings()
        self._handler = handler
        self._connection: AbstractRobustConnection | None = None
        self._should_stop = False

    async def connect(self) -> None:
        """Connect to RabbitMQ."""
        self._connection = await aio_pika.connect_robust(
            self._settings.rabbitmq_url,
            reconnect_interval=5,
        )
        logger.info("Connected to RabbitMQ")

    async def disconnect(self) -> None:
        """Disconnect from RabbitMQ."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Disconnected from RabbitMQ")

    async def start_consuming(self) -> None:
        """Declare the topology and consume until stopped."""
        if not self._connection:
            await self.connect()

        channel = await self._connection.channel()
        await channel.set_qos(prefetch_count=self._settings.rabbitmq_prefetch)

        exchange = await channel.declare_exchange(
            self._settings.rabbitmq_exchange,
            ExchangeType.TOPIC,
            durable=True,
        )
        queue = await channel.declare_queue(self._settings.rabbitmq_queue, durable=True)
        await queue.bind(exchange, routing_key="#")

        logger.info(
            "Starting message consumption",
            queue=self._settings.rabbitmq_queue,
            exchange=self._settings.rabbitmq_exchange,
        )

        async with queue.iterator() as queue_iter:
            async for message in queue_iter:
                if self._should_stop:
                    break
                await self._process_message(message)

    async def _process_message(self, message: IncomingMessage) -> None:
        """Decode one message and hand it to the handler.

        Malformed messages are acknowledged and dropped. A message whose
        handler fails is requeued once; a second failure drops it.
        """
        event = self._decode(message)
        if event is None:
            await message.ack()
            return

        EVENTS_RECEIVED.labels(event_type=event.event_type.value).inc()
        logger.debug("Processing event", event_id=event.event_id, event_type=event.event_type.value)

        try:
            await self._handler(event)
        except Exception as e:
            requeue = not message.redelivered
            EVENTS_PROCESSED.labels(event_type=event.event_type.value, status="error").inc()
            logger.error(
                "Error processing message",
                event_id=event.event_id,
                error=str(e),
                requeue=requeue,
                exc_info=True,
            )
            await message.reject(requeue=requeue)
            return

        await message.ack()

    @staticmethod
    def _decode(message: IncomingMessage) -> LifecycleEvent | None:
        try:
            body = json.loads(message.body.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error("Invalid JSON message", message_id=message.message_id, error=str(e))
            return None

        if not isinstance(body, dict) or "event_type" not in body:
            logger.warning("Message missing event_type", message_id=message.message_id)
            return None

        try:
            return LifecycleEvent.from_message(body, fallback_id=message.message_id or "")
        except ValidationError as e:
            logger.error(
                "Invalid lifecycle event",
                message_id=message.message_id,
                event_type=body.get("event_type"),
                errors=e.errors(include_url=False),
            )
            return None

    def stop(self) -> None:
        """Signal consumer to stop."""
        self._should_stop = True
        logger.info("Consumer stop requested")
