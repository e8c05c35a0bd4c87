"""Domain events emitted by the reservation lifecycle."""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event types published by the booking service."""

    # Reservation events
    RESERVATION_CREATED = "reservation.created"
    RESERVATION_CONFIRMED = "reservation.confirmed"
    RESERVATION_ACTIVATED = "reservation.activated"
    RESERVATION_COMPLETED = "reservation.completed"
    RESERVATION_CANCELLED = "reservation.cancelled"
    RESERVATION_EXPIRED = "reservation.expired"
    RESERVATION_EXTENDED = "reservation.extended"

    # Payment events
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUND_REQUESTED = "payment.refund.requested"
    PAYMENT_REFUNDED = "payment.refunded"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: UUID  # reservation id
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: int = Field(default=1)
    correlation_id: UUID  # For tracing across services
    causation_id: Optional[UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_encoders = {
            datetime: lambda v: v.isoformat(),
            UUID: lambda v: str(v)
        }


class ReservationEvent(BaseEvent):
    """Fields every reservation event carries."""
    reservation_id: UUID
    user_id: str
    parking_id: int


# Reservation Events
class ReservationCreatedEvent(ReservationEvent):
    """Event emitted when a pending reservation is created and a spot is held."""
    event_type: EventType = EventType.RESERVATION_CREATED
    start_time: datetime
    end_time: datetime
    total_amount: Decimal
    currency: str


class ReservationConfirmedEvent(ReservationEvent):
    """Event emitted when payment confirmed the reservation."""
    event_type: EventType = EventType.RESERVATION_CONFIRMED
    start_time: datetime
    end_time: datetime
    total_amount: Decimal
    currency: str


class ReservationActivatedEvent(ReservationEvent):
    """Event emitted when the reservation window starts."""
    event_type: EventType = EventType.RESERVATION_ACTIVATED


class ReservationCompletedEvent(ReservationEvent):
    """Event emitted when the reservation window ended and the spot was returned."""
    event_type: EventType = EventType.RESERVATION_COMPLETED


class ReservationCancelledEvent(ReservationEvent):
    """Event emitted when a reservation is cancelled by the user or by a failed payment."""
    event_type: EventType = EventType.RESERVATION_CANCELLED
    previous_status: str
    reason: str


class ReservationExpiredEvent(ReservationEvent):
    """Event emitted when an unpaid reservation ran out of its grace period."""
    event_type: EventType = EventType.RESERVATION_EXPIRED


class ReservationExtendedEvent(ReservationEvent):
    """Event emitted when end_time was pushed later."""
    event_type: EventType = EventType.RESERVATION_EXTENDED
    previous_end_time: datetime
    end_time: datetime


# Payment Events
class PaymentSucceededEvent(ReservationEvent):
    """Event emitted when the provider reported a successful payment."""
    event_type: EventType = EventType.PAYMENT_SUCCEEDED
    provider_intent_id: str
    amount: Decimal
    currency: str
    payment_method: str


class PaymentFailedEvent(ReservationEvent):
    """Event emitted when the provider reported a failed payment."""
    event_type: EventType = EventType.PAYMENT_FAILED
    provider_intent_id: Optional[str] = None
    reason: str


class PaymentRefundRequestedEvent(ReservationEvent):
    """Event requesting a refund (compensating action)."""
    event_type: EventType = EventType.PAYMENT_REFUND_REQUESTED
    provider_intent_id: str
    amount: Decimal
    currency: str
    reason: str


class PaymentRefundedEvent(ReservationEvent):
    """Event emitted when a refund went through."""
    event_type: EventType = EventType.PAYMENT_REFUNDED
    provider_intent_id: str
    refund_id: Optional[str] = None
    amount: Decimal


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.RESERVATION_CREATED: ReservationCreatedEvent,
    EventType.RESERVATION_CONFIRMED: ReservationConfirmedEvent,
    EventType.RESERVATION_ACTIVATED: ReservationActivatedEvent,
    EventType.RESERVATION_COMPLETED: ReservationCompletedEvent,
    EventType.RESERVATION_CANCELLED: ReservationCancelledEvent,
    EventType.RESERVATION_EXPIRED: ReservationExpiredEvent,
    EventType.RESERVATION_EXTENDED: ReservationExtendedEvent,

    EventType.PAYMENT_SUCCEEDED: PaymentSucceededEvent,
    EventType.PAYMENT_FAILED: PaymentFailedEvent,
    EventType.PAYMENT_REFUND_REQUESTED: PaymentRefundRequestedEvent,
    EventType.PAYMENT_REFUNDED: PaymentRefundedEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
