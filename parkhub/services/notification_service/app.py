"""Notification Service FastAPI application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from parkhub.shared.config import Settings
from parkhub.shared.events import BaseEvent
from parkhub.shared.message_broker import MessageBroker

from .dispatcher import NotificationDispatcher

# Settings
settings = Settings(
    service_name="notification-service",
    service_port=8005,
)

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Message broker
message_broker = MessageBroker(settings.rabbitmq_url)
dispatcher = NotificationDispatcher()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""

    # Startup
    logger.info("Starting Notification Service...")

    await message_broker.connect()
    await subscribe_to_events()

    logger.info("Notification Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Notification Service...")
    await message_broker.disconnect()


app = FastAPI(title="Notification Service", lifespan=lifespan)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "notification-service"}


# Event Handlers
async def subscribe_to_events():
    """Subscribe to reservation and payment events for notifications."""

    async def handle_event(event: BaseEvent):
        delivered = await dispatcher.dispatch(event)
        logger.info(f"Sent {delivered} notification(s) for event {event.event_id}")

    async def log_all_events(event: BaseEvent):
        """Log all events for audit purposes."""
        logger.info(
            f"Event received: {event.event_type.value} "
            f"(id={event.event_id}, correlation={event.correlation_id})"
        )

    for event_type in dispatcher.event_types:
        await message_broker.subscribe_to_event(
            event_type,
            f"notification_service_{event_type.value.replace('.', '_')}",
            handle_event,
        )

    # Subscribe to all events for logging
    await message_broker.subscribe_to_pattern(
        "#",
        "notification_service_all_events",
        log_all_events,
    )

    logger.info("Subscribed to notification events")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
