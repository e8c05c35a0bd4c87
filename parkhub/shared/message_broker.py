"""Message broker abstraction for RabbitMQ."""
import asyncio
import json
import logging
from typing import Any, Callable, Optional

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange, AbstractQueue
from tenacity import retry, stop_after_attempt, wait_exponential

from .events import BaseEvent, EventType, deserialize_event

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "parking_events"
DEAD_LETTER_EXCHANGE_NAME = "parking_events_dlx"


class MessageBroker:
    """RabbitMQ message broker for domain event publishing and consumption."""

    def __init__(self, rabbitmq_url: str):
        self.rabbitmq_url = rabbitmq_url
        self.connection: Optional[AbstractConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.exchange: Optional[AbstractExchange] = None
        self.dead_letter_exchange: Optional[AbstractExchange] = None

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=2, max=10)
    )
    async def connect(self):
        """Establish connection to RabbitMQ."""
        logger.info("Connecting to RabbitMQ...")
        self.connection = await aio_pika.connect_robust(self.rabbitmq_url)
        self.channel = await self.connection.channel()

        await self.channel.set_qos(prefetch_count=1)

        self.exchange = await self.channel.declare_exchange(
            EXCHANGE_NAME,
            ExchangeType.TOPIC,
            durable=True
        )

        self.dead_letter_exchange = await self.channel.declare_exchange(
            DEAD_LETTER_EXCHANGE_NAME,
            ExchangeType.TOPIC,
            durable=True
        )

        dead_letter_queue = await self.channel.declare_queue(
            "parking_dead_letter_queue",
            durable=True,
            arguments={"x-queue-type": "quorum"}
        )
        await dead_letter_queue.bind(self.dead_letter_exchange, routing_key="dlq.#")

        logger.info("Connected to RabbitMQ successfully")

    async def disconnect(self):
        """Close connection to RabbitMQ."""
        if self.connection:
            await self.connection.close()
            logger.info("Disconnected from RabbitMQ")

    async def publish_event(self, event: BaseEvent, routing_key: Optional[str] = None):
        """
        Publish an event to the message broker.

        Args:
            event: The event to publish
            routing_key: Optional routing key (defaults to event_type)
        """
        if not self.exchange:
            raise RuntimeError("Message broker not connected")

        routing_key = routing_key or event.event_type.value

        message = Message(
            body=event.model_dump_json().encode(),
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
            headers={
                "event_type": event.event_type.value,
                "event_id": str(event.event_id),
                "correlation_id": str(event.correlation_id),
                "version": event.version
            }
        )

        await self.exchange.publish(message, routing_key=routing_key)

        logger.info(
            f"Published event: {event.event_type.value} "
            f"(id={event.event_id}, correlation={event.correlation_id})"
        )

    async def subscribe_to_event(
        self,
        event_type: EventType,
        queue_name: str,
        handler: Callable[[BaseEvent], Any],
        max_retries: int = 3
    ):
        """
        Subscribe to events of a specific type.

        Args:
            event_type: Type of event to subscribe to
            queue_name: Name of the queue to consume from
            handler: Async function to handle the event
            max_retries: Maximum number of retries before sending to DLQ
        """
        queue = await self._declare_bound_queue(queue_name, event_type.value)
        await self._consume(queue, event_type.value, handler, max_retries)

    async def subscribe_to_pattern(
        self,
        pattern: str,
        queue_name: str,
        handler: Callable[[BaseEvent], Any],
        max_retries: int = 3
    ):
        """
        Subscribe to events matching a pattern.

        Args:
            pattern: Routing key pattern (e.g., "reservation.*", "payment.#")
            queue_name: Name of the queue to consume from
            handler: Async function to handle the event
            max_retries: Maximum number of retries before sending to DLQ
        """
        queue = await self._declare_bound_queue(queue_name, pattern)
        await self._consume(queue, pattern, handler, max_retries)

    async def _declare_bound_queue(self, queue_name: str, routing_key: str) -> AbstractQueue:
        if not self.channel:
            raise RuntimeError("Message broker not connected")

        queue = await self.channel.declare_queue(
            queue_name,
            durable=True,
            arguments={
                "x-dead-letter-exchange": DEAD_LETTER_EXCHANGE_NAME,
                "x-dead-letter-routing-key": f"dlq.{routing_key}",
                "x-queue-type": "quorum"
            }
        )
        await queue.bind(self.exchange, routing_key=routing_key)

        logger.info(f"Subscribed to '{routing_key}' on queue {queue_name}")
        return queue

    async def _consume(
        self,
        queue: AbstractQueue,
        routing_key: str,
        handler: Callable[[BaseEvent], Any],
        max_retries: int,
    ):
        async def process_message(message: aio_pika.IncomingMessage):
            async with message.process(requeue=False):
                retry_count = 0
                if message.headers and "x-retry-count" in message.headers:
                    retry_count = int(message.headers["x-retry-count"])

                try:
                    event = deserialize_event(json.loads(message.body.decode()))

                    logger.info(
                        f"Processing event: {event.event_type.value} "
                        f"(id={event.event_id}, retry={retry_count})"
                    )

                    await handler(event)

                    logger.info(f"Successfully processed event: {event.event_id}")

                except Exception as e:
                    logger.error(f"Error processing event: {str(e)}", exc_info=True)

                    retry_count += 1
                    if retry_count > max_retries:
                        # Rejected message goes to the dead letter exchange
                        logger.error(
                            f"Max retries exceeded for event {message.headers.get('event_id')}. "
                            "Sending to dead letter queue."
                        )
                        raise

                    logger.info(f"Retrying event (attempt {retry_count}/{max_retries})")

                    headers = dict(message.headers) if message.headers else {}
                    headers["x-retry-count"] = retry_count

                    retry_message = Message(
                        body=message.body,
                        delivery_mode=DeliveryMode.PERSISTENT,
                        content_type=message.content_type,
                        headers=headers
                    )

                    await asyncio.sleep(min(2 ** retry_count, 60))

                    await self.exchange.publish(
                        retry_message,
                        routing_key=message.routing_key or routing_key
                    )

        await queue.consume(process_message)
