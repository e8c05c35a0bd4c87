"""Shared fixtures for the booking service tests."""
import hashlib
import hmac
import json
import os
import tempfile
import time
import unittest
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import func, select

from parkhub.services.booking_service.gateway import OpenedIntent
from parkhub.services.booking_service.ledger import InventoryLedger
from parkhub.services.booking_service.models import ParkingLocation, Payment, Reservation
from parkhub.services.booking_service.state_machine import ReservationStateMachine
from parkhub.shared.database import Database
from parkhub.shared.errors import PaymentGatewayError
from parkhub.shared.outbox import OutboxMessage

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway:
    """In-memory stand-in for StripeGateway."""

    def __init__(self, fail_create: bool = False, fail_cancel: bool = False):
        self.fail_create = fail_create
        self.fail_cancel = fail_cancel
        self.created: List[dict] = []
        self.cancelled: List[str] = []
        self.refunded: List[str] = []

    async def create_intent(self, amount, currency, metadata, idempotency_key=None) -> OpenedIntent:
        if self.fail_create:
            raise PaymentGatewayError("Failed to create payment intent")
        intent_id = f"pi_{len(self.created) + 1}"
        self.created.append({
            "id": intent_id,
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        return OpenedIntent(intent_id, f"{intent_id}_secret_abc", "requires_payment_method")

    async def cancel_intent(self, provider_intent_id: str) -> None:
        if self.fail_cancel:
            raise PaymentGatewayError(f"Failed to cancel payment intent {provider_intent_id}")
        self.cancelled.append(provider_intent_id)

    async def refund(self, provider_intent_id: str, idempotency_key=None) -> str:
        self.refunded.append(provider_intent_id)
        return f"re_{len(self.refunded)}"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def provider_event(event_type: str, obj: dict, event_id: Optional[str] = None) -> bytes:
    return json.dumps({
        "id": event_id or f"evt_{uuid4().hex}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }).encode("utf-8")


def intent_object(
    intent_id: str,
    reservation_id: Optional[UUID] = None,
    amount: int = 1000,
    currency: str = "eur",
    error: Optional[str] = None,
) -> dict:
    obj = {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount,
        "amount_received": 0 if error else amount,
        "currency": currency,
        "payment_method_types": ["card"],
        "metadata": {"reservation_id": str(reservation_id)} if reservation_id else {},
    }
    if error:
        obj["last_payment_error"] = {"message": error}
    return obj


def refund_charge_object(intent_id: str, refund_id: str = "re_provider", amount: int = 1000) -> dict:
    return {
        "id": f"ch_{intent_id}",
        "object": "charge",
        "payment_intent": intent_id,
        "amount": amount,
        "amount_captured": amount,
        "currency": "eur",
        "refunded": True,
        "refunds": {"data": [{"id": refund_id}]},
        "metadata": {},
    }


class DatabaseTestCase(unittest.IsolatedAsyncioTestCase):
    """Runs each test against a fresh SQLite file database."""

    async def asyncSetUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self.database_url = f"sqlite+aiosqlite:///{os.path.join(self._tmpdir.name, 'parkhub.db')}"
        self.database = Database(self.database_url)
        await self.database.create_tables()

    async def asyncTearDown(self):
        await self.database.close()
        self._tmpdir.cleanup()

    async def add_parking(self, total_spots: int = 1, available_spots: Optional[int] = None, **fields) -> int:
        values = dict(
            name="Central Parking",
            address="1 Rue de Rivoli",
            latitude=48.8566,
            longitude=2.3522,
            hourly_rate=Decimal("2.50"),
            currency="EUR",
        )
        values.update(fields)
        async with self.database.transaction() as session:
            location = ParkingLocation(
                total_spots=total_spots,
                available_spots=total_spots if available_spots is None else available_spots,
                **values,
            )
            session.add(location)
            await session.flush()
            return location.id

    async def available(self, parking_id: int) -> int:
        async with self.database.transaction() as session:
            return (await InventoryLedger(session).peek(parking_id)).available

    async def create_reservation(
        self,
        parking_id: int,
        user_id: str = "user-1",
        start_in: timedelta = timedelta(hours=1),
        hours: int = 2,
        amount: Decimal = Decimal("10.00"),
    ) -> Reservation:
        start = datetime.utcnow() + start_in
        async with self.database.transaction() as session:
            return await ReservationStateMachine(session).create_pending(
                user_id, parking_id, start, start + timedelta(hours=hours), amount
            )

    async def load_reservation(self, reservation_id: UUID) -> Reservation:
        async with self.database.transaction() as session:
            return await ReservationStateMachine(session).get(reservation_id)

    async def outbox_events(self, event_type: Optional[str] = None) -> List[OutboxMessage]:
        async with self.database.transaction() as session:
            query = select(OutboxMessage).order_by(OutboxMessage.created_at)
            if event_type:
                query = query.where(OutboxMessage.event_type == event_type)
            return list((await session.execute(query)).scalars().all())

    async def count_payments(self) -> int:
        async with self.database.transaction() as session:
            return (await session.execute(select(func.count()).select_from(Payment))).scalar_one()

    async def get_payment(self, provider_intent_id: str) -> Optional[Payment]:
        async with self.database.transaction() as session:
            return (
                await session.execute(select(Payment).where(Payment.provider_intent_id == provider_intent_id))
            ).scalar_one_or_none()
