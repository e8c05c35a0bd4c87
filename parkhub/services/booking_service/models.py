"""Database models for Booking Service."""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)

from parkhub.shared.database import Base


class ReservationStatus(str, Enum):
    """Reservation lifecycle status."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentStatus(str, Enum):
    """Payment status as seen by the reservation."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class IntentStatus(str, Enum):
    """Mirror of the provider's payment intent lifecycle."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class ParkingType(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    RESIDENTIAL = "residential"


TERMINAL_STATUSES = frozenset({
    ReservationStatus.COMPLETED.value,
    ReservationStatus.CANCELLED.value,
    ReservationStatus.EXPIRED.value,
})

HOLDING_STATUSES = frozenset({
    ReservationStatus.PENDING.value,
    ReservationStatus.CONFIRMED.value,
    ReservationStatus.ACTIVE.value,
})


class ParkingLocation(Base):
    """Parking location with its shared spot counter."""

    __tablename__ = "parkings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    address = Column(Text, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)

    # Only the inventory ledger writes available_spots
    total_spots = Column(Integer, nullable=False)
    available_spots = Column(Integer, nullable=False)

    hourly_rate = Column(Numeric(10, 2), nullable=False)
    daily_rate = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), default="EUR", nullable=False)
    parking_type = Column(String(20), default=ParkingType.PUBLIC.value, nullable=False)
    amenities = Column(JSON, default=list)
    rating = Column(Float, default=0.0, nullable=False)
    total_ratings = Column(Integer, default=0, nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    is_open = Column(Boolean, default=True, nullable=False)
    owner_id = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("total_spots >= 0", name="ck_parkings_total_spots_non_negative"),
        CheckConstraint(
            "available_spots >= 0 AND available_spots <= total_spots",
            name="ck_parkings_available_spots_bounds",
        ),
        Index("ix_parkings_location", "latitude", "longitude"),
    )


class Reservation(Base):
    """A user's booking of one spot for a time window."""

    __tablename__ = "reservations"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    parking_id = Column(Integer, nullable=False, index=True)

    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration_hours = Column(Integer, nullable=False)

    total_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="EUR", nullable=False)

    status = Column(String(20), default=ReservationStatus.PENDING.value, nullable=False)
    payment_status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False)
    payment_method = Column(String(50), nullable=True)
    payment_intent_id = Column(String(255), nullable=True, index=True)

    notes = Column(Text, nullable=True)
    contact_phone = Column(String(32), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_reservations_window"),
        Index("ix_reservations_status_created", "status", "created_at"),
        Index("ix_reservations_status_end", "status", "end_time"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class InventoryHold(Base):
    """One unit of a location's inventory held by exactly one reservation."""

    __tablename__ = "inventory_holds"

    id = Column(Uuid, primary_key=True, default=uuid4)
    parking_id = Column(Integer, nullable=False, index=True)
    reservation_id = Column(Uuid, nullable=False, unique=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    released_at = Column(DateTime, nullable=True)

    @property
    def is_released(self) -> bool:
        return self.released_at is not None


class PaymentIntentRecord(Base):
    """Local mirror of a provider payment intent opened for a reservation."""

    __tablename__ = "payment_intents"

    id = Column(Uuid, primary_key=True, default=uuid4)
    reservation_id = Column(Uuid, nullable=False, index=True)
    provider_intent_id = Column(String(255), nullable=False, unique=True)
    client_secret = Column(String(255), nullable=True)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), default=IntentStatus.PENDING.value, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Payment(Base):
    """Settled payment; at most one per provider intent."""

    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    reservation_id = Column(Uuid, nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    payment_method = Column(String(50), nullable=False, default="card")
    provider_intent_id = Column(String(255), nullable=False, unique=True)
    status = Column(String(20), default=IntentStatus.SUCCEEDED.value, nullable=False)
    refund_id = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ProcessedWebhookEvent(Base):
    """Provider events already applied; the unique event_id makes delivery idempotent."""

    __tablename__ = "processed_webhook_events"

    id = Column(Uuid, primary_key=True, default=uuid4)
    event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)
    reservation_id = Column(Uuid, nullable=True, index=True)
    result = Column(String(20), nullable=False)
    payload_hash = Column(String(64), nullable=False)

    processed_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ParkingReview(Base):
    """A user's 1-5 rating of a parking location; one per user and location."""

    __tablename__ = "parking_reviews"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    parking_id = Column(Integer, nullable=False, index=True)
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_parking_reviews_rating"),
        UniqueConstraint("user_id", "parking_id", name="uq_parking_reviews_user_parking"),
    )
