"""Booking Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from parkhub.shared.config import Settings
from parkhub.shared.database import Database
from parkhub.shared.errors import ParkingError
from parkhub.shared.events import EventType, PaymentRefundRequestedEvent
from parkhub.shared.message_broker import MessageBroker
from parkhub.shared.outbox import OutboxPublisher

from .booking import BookingService
from .gateway import StripeGateway
from .reconciler import PaymentReconciler
from .reviews import ReviewService
from .search import LocationResult, LocationSearch, SearchFilters
from .sweeper import ExpirySweeper

logger = logging.getLogger(__name__)


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# Request/Response models
class CreateReservationRequest(BaseModel):
    """Request to book a spot."""
    parking_id: int
    start_time: datetime
    end_time: datetime
    total_amount: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    payment_method: Optional[str] = Field(default="card", max_length=50)
    notes: Optional[str] = None
    contact_phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_times(cls, value: datetime) -> datetime:
        return _to_naive_utc(value)

    @model_validator(mode="after")
    def check_window(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class ExtendReservationRequest(BaseModel):
    """Request to push a reservation's end_time later."""
    new_end_time: datetime

    @field_validator("new_end_time")
    @classmethod
    def normalize_time(cls, value: datetime) -> datetime:
        return _to_naive_utc(value)


class ReservationResponse(BaseModel):
    """Reservation response."""
    id: UUID
    user_id: str
    parking_id: int
    start_time: datetime
    end_time: datetime
    duration_hours: int
    total_amount: float
    currency: str
    status: str
    payment_status: str
    payment_method: Optional[str]
    payment_intent_id: Optional[str]
    cancellation_reason: Optional[str] = None
    contact_phone: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class PaymentResponse(BaseModel):
    """Settled payment."""
    id: UUID
    reservation_id: UUID
    amount: float
    currency: str
    payment_method: str
    provider_intent_id: str
    status: str
    refund_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentIntentResponse(BaseModel):
    """Locally known status of a payment intent."""
    provider_intent_id: str
    reservation_id: UUID
    amount: float
    currency: str
    status: str
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class CreateReviewRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=500)


class ReviewResponse(BaseModel):
    id: int
    parking_id: int
    user_id: str
    rating: int
    comment: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class ReviewListResponse(BaseModel):
    data: List[ReviewResponse]
    total: int
    page: int
    limit: int


class BookingResponse(BaseModel):
    """Created reservation plus the secret the client needs to pay."""
    reservation: ReservationResponse
    client_secret: Optional[str]


class ParkingResponse(BaseModel):
    """Parking location with advisory availability."""
    id: int
    name: str
    description: Optional[str]
    address: str
    latitude: float
    longitude: float
    total_spots: int
    available_spots: int
    hourly_rate: float
    daily_rate: Optional[float]
    currency: str
    parking_type: str
    amenities: List[str]
    rating: float
    total_ratings: int
    is_open: bool
    distance_m: Optional[int] = None

    @classmethod
    def from_result(cls, result: LocationResult) -> "ParkingResponse":
        loc = result.location
        return cls(
            id=loc.id,
            name=loc.name,
            description=loc.description,
            address=loc.address,
            latitude=loc.latitude,
            longitude=loc.longitude,
            total_spots=loc.total_spots,
            available_spots=loc.available_spots,
            hourly_rate=float(loc.hourly_rate),
            daily_rate=float(loc.daily_rate) if loc.daily_rate is not None else None,
            currency=loc.currency,
            parking_type=loc.parking_type,
            amenities=loc.amenities or [],
            rating=loc.rating,
            total_ratings=loc.total_ratings,
            is_open=loc.is_open,
            distance_m=round(result.distance_km * 1000) if result.distance_km is not None else None,
        )


class SearchResponse(BaseModel):
    data: List[ParkingResponse]
    count: int
    total: int
    page: int
    limit: int


class WebhookResponse(BaseModel):
    received: bool
    status: str
    event_id: str


def create_app(
    settings: Settings,
    database: Optional[Database] = None,
    gateway: Optional[StripeGateway] = None,
    message_broker: Optional[MessageBroker] = None,
    run_background_tasks: bool = True,
) -> FastAPI:
    """
    Build the booking service.

    Collaborators are injected so tests can swap the store and the payment
    provider; the broker, outbox publisher and sweeper only run when the
    lifespan runs.
    """
    database = database or Database(settings.database_url)
    gateway = gateway or StripeGateway(settings.stripe_secret_key)

    booking_service = BookingService(database, gateway, max_reservation_hours=settings.max_reservation_hours)
    review_service = ReviewService(database)
    reconciler = PaymentReconciler(
        database,
        webhook_secret=settings.stripe_webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
        max_reservation_hours=settings.max_reservation_hours,
    )
    sweeper = ExpirySweeper(
        database,
        grace_period=timedelta(minutes=settings.payment_grace_period_minutes),
        interval=settings.sweeper_interval_seconds,
        batch_size=settings.sweeper_batch_size,
        gateway=gateway,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for the application."""
        logger.info("Starting Booking Service...")

        await database.create_tables()

        outbox_publisher = None
        if message_broker:
            await message_broker.connect()
            outbox_publisher = OutboxPublisher(
                session_factory=database.session_factory,
                message_broker=message_broker,
                poll_interval=settings.outbox_poll_interval,
                batch_size=settings.outbox_batch_size,
            )
            await outbox_publisher.start()
            await subscribe_to_events(message_broker, booking_service)

        if run_background_tasks:
            await sweeper.start()

        logger.info("Booking Service started successfully")

        yield

        logger.info("Shutting down Booking Service...")
        await sweeper.stop()
        if outbox_publisher:
            await outbox_publisher.stop()
        if message_broker:
            await message_broker.disconnect()
        await database.close()

    app = FastAPI(title="Booking Service", lifespan=lifespan)
    app.state.database = database
    app.state.booking_service = booking_service
    app.state.reconciler = reconciler
    app.state.sweeper = sweeper

    @app.exception_handler(ParkingError)
    async def parking_error_handler(request: Request, exc: ParkingError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Reservations
    @app.post("/reservations", response_model=BookingResponse, status_code=201)
    async def create_reservation(
        request: CreateReservationRequest,
        user_id: str = Header(..., alias="X-User-Id"),
    ):
        """Hold a spot and open the payment for it."""
        result = await booking_service.book(
            user_id=user_id,
            parking_id=request.parking_id,
            start_time=request.start_time,
            end_time=request.end_time,
            total_amount=request.total_amount,
            currency=request.currency,
            payment_method=request.payment_method,
            notes=request.notes,
            contact_phone=request.contact_phone,
        )
        return BookingResponse(
            reservation=ReservationResponse.model_validate(result.reservation),
            client_secret=result.client_secret,
        )

    @app.get("/reservations", response_model=List[ReservationResponse])
    async def list_reservations(user_id: str = Header(..., alias="X-User-Id")):
        """List the caller's reservations, newest first."""
        return await booking_service.list_reservations(user_id)

    @app.get("/reservations/{reservation_id}", response_model=ReservationResponse)
    async def get_reservation(reservation_id: UUID, user_id: str = Header(..., alias="X-User-Id")):
        return await booking_service.get_reservation(reservation_id, user_id)

    @app.post("/reservations/{reservation_id}/cancel", response_model=ReservationResponse)
    async def cancel_reservation(reservation_id: UUID, user_id: str = Header(..., alias="X-User-Id")):
        """Cancel a reservation; cancelling twice is not an error."""
        return await booking_service.cancel(reservation_id, user_id)

    @app.post("/reservations/{reservation_id}/extend", response_model=ReservationResponse)
    async def extend_reservation(
        reservation_id: UUID,
        request: ExtendReservationRequest,
        user_id: str = Header(..., alias="X-User-Id"),
    ):
        return await booking_service.extend(reservation_id, user_id, request.new_end_time)

    # Payments
    @app.get("/payments", response_model=List[PaymentResponse])
    async def list_payments(user_id: str = Header(..., alias="X-User-Id")):
        """List the caller's settled payments, newest first."""
        return await booking_service.list_payments(user_id)

    @app.get("/payments/{provider_intent_id}", response_model=PaymentIntentResponse)
    async def get_payment_status(provider_intent_id: str, user_id: str = Header(..., alias="X-User-Id")):
        return await booking_service.get_payment_intent(provider_intent_id, user_id)

    # Payment provider webhook
    @app.post("/webhooks/stripe", response_model=WebhookResponse)
    async def stripe_webhook(
        request: Request,
        stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    ):
        """Apply a signed Stripe event. Duplicates and unknown types are acknowledged."""
        payload = await request.body()
        result = await reconciler.apply(payload, stripe_signature)
        return WebhookResponse(received=True, status=result.status.value, event_id=result.event_id)

    # Search
    @app.get("/parkings/nearby", response_model=SearchResponse)
    async def nearby_parkings(
        latitude: float = Query(..., ge=-90, le=90),
        longitude: float = Query(..., ge=-180, le=180),
        radius: float = Query(settings.search_default_radius_km, ge=0.1, le=settings.search_max_radius_km),
        limit: int = Query(settings.search_default_limit, ge=1, le=100),
        session: AsyncSession = Depends(database.get_session),
    ):
        results = await LocationSearch(session).nearby(latitude, longitude, radius_km=radius, limit=limit)
        data = [ParkingResponse.from_result(r) for r in results]
        return SearchResponse(data=data, count=len(data), total=len(data), page=1, limit=limit)

    @app.get("/parkings/search", response_model=SearchResponse)
    async def search_parkings(
        q: Optional[str] = Query(None, min_length=1),
        type: Optional[str] = Query(None, pattern="^(public|private|residential)$"),
        min_price: Optional[Decimal] = Query(None, ge=0),
        max_price: Optional[Decimal] = Query(None, ge=0),
        amenities: List[str] = Query([]),
        latitude: Optional[float] = Query(None, ge=-90, le=90),
        longitude: Optional[float] = Query(None, ge=-180, le=180),
        radius: float = Query(settings.search_default_radius_km, ge=0.1, le=settings.search_max_radius_km),
        page: int = Query(1, ge=1),
        limit: int = Query(settings.search_default_limit, ge=1, le=100),
        session: AsyncSession = Depends(database.get_session),
    ):
        filters = SearchFilters(
            q=q,
            parking_type=type,
            min_price=min_price,
            max_price=max_price,
            amenities=amenities,
            latitude=latitude,
            longitude=longitude,
            radius_km=radius,
            page=page,
            limit=limit,
        )
        result = await LocationSearch(session).search(filters)
        data = [ParkingResponse.from_result(r) for r in result.items]
        return SearchResponse(data=data, count=len(data), total=result.total, page=result.page, limit=result.limit)

    @app.get("/parkings/{parking_id}", response_model=ParkingResponse)
    async def get_parking(parking_id: int, session: AsyncSession = Depends(database.get_session)):
        location = await LocationSearch(session).get_location(parking_id)
        return ParkingResponse.from_result(LocationResult(location))

    # Reviews
    @app.post("/parkings/{parking_id}/reviews", response_model=ReviewResponse, status_code=201)
    async def add_review(
        parking_id: int,
        request: CreateReviewRequest,
        user_id: str = Header(..., alias="X-User-Id"),
    ):
        """Rate a location once; the location's rating and total_ratings follow."""
        return await review_service.add_review(parking_id, user_id, request.rating, request.comment)

    @app.get("/parkings/{parking_id}/reviews", response_model=ReviewListResponse)
    async def list_reviews(
        parking_id: int,
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=50),
    ):
        result = await review_service.list_reviews(parking_id, page=page, limit=limit)
        return ReviewListResponse(
            data=[ReviewResponse.model_validate(r) for r in result.items],
            total=result.total,
            page=result.page,
            limit=result.limit,
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": settings.service_name}

    return app


# Event Handlers
async def subscribe_to_events(message_broker: MessageBroker, booking_service: BookingService):
    """Subscribe to the compensating actions this service performs."""

    async def handle_refund_requested(event: PaymentRefundRequestedEvent):
        """Refund a payment that no longer has a spot behind it."""
        await booking_service.process_refund(event)

    await message_broker.subscribe_to_event(
        EventType.PAYMENT_REFUND_REQUESTED,
        "booking_service_refund_requested",
        handle_refund_requested,
    )

    logger.info("Subscribed to refund events")


def build_default_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings(service_name="booking-service", service_port=8001)
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    return create_app(settings, message_broker=MessageBroker(settings.rabbitmq_url))


if __name__ == "__main__":
    import uvicorn
    settings = Settings(service_name="booking-service", service_port=8001)
    uvicorn.run(build_default_app(settings), host="0.0.0.0", port=settings.service_port)
