"""Booking operations: create, cancel, extend, read and refund reservations."""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select

from parkhub.shared.database import Database, store_retry
from parkhub.shared.errors import NotFound, PaymentGatewayError
from parkhub.shared.events import PaymentRefundRequestedEvent

from .gateway import OpenedIntent, StripeGateway
from .models import IntentStatus, Payment, PaymentIntentRecord, Reservation
from .state_machine import PENDING, ReservationStateMachine

logger = logging.getLogger(__name__)


@dataclass
class BookingResult:
    reservation: Reservation
    client_secret: Optional[str] = None


class BookingService:
    """
    Entry point for user-initiated reservation operations.

    Each operation runs in its own transaction and is retried while the
    store reports a transient failure. Provider calls happen outside the
    transactions; a failed intent creation is compensated by cancelling the
    pending reservation, which returns its spot.
    """

    def __init__(self, database: Database, gateway: StripeGateway, max_reservation_hours: int = 720):
        self.database = database
        self.gateway = gateway
        self.max_reservation_hours = max_reservation_hours

    def _machine(self, session) -> ReservationStateMachine:
        return ReservationStateMachine(session, max_reservation_hours=self.max_reservation_hours)

    async def book(
        self,
        user_id: str,
        parking_id: int,
        start_time: datetime,
        end_time: datetime,
        total_amount: Decimal,
        currency: Optional[str] = None,
        payment_method: Optional[str] = None,
        notes: Optional[str] = None,
        contact_phone: Optional[str] = None,
    ) -> BookingResult:
        """
        Reserve a spot and open a payment intent for it.

        Raises NotFound / NoCapacity / ValidationFailed without touching the
        provider; raises PaymentGatewayError after releasing the spot if the
        intent cannot be opened.
        """
        reservation = await self._create_pending(
            user_id, parking_id, start_time, end_time, total_amount, currency, payment_method, notes,
            contact_phone,
        )

        try:
            intent = await self.gateway.create_intent(
                amount=reservation.total_amount,
                currency=reservation.currency,
                metadata={"reservation_id": str(reservation.id), "user_id": user_id},
                idempotency_key=f"reservation-{reservation.id}",
            )
        except PaymentGatewayError:
            logger.error(f"Could not open payment intent for reservation {reservation.id}, releasing spot")
            await self._compensate(reservation.id)
            raise

        reservation = await self._attach_intent(reservation.id, intent)
        return BookingResult(reservation=reservation, client_secret=intent.client_secret)

    @store_retry()
    async def _create_pending(self, user_id, parking_id, start_time, end_time, total_amount,
                              currency, payment_method, notes, contact_phone) -> Reservation:
        async with self.database.transaction() as session:
            return await self._machine(session).create_pending(
                user_id=user_id,
                parking_id=parking_id,
                start_time=start_time,
                end_time=end_time,
                total_amount=total_amount,
                currency=currency,
                payment_method=payment_method,
                notes=notes,
                contact_phone=contact_phone,
            )

    @store_retry()
    async def _attach_intent(self, reservation_id: UUID, intent: OpenedIntent) -> Reservation:
        async with self.database.transaction() as session:
            machine = self._machine(session)
            reservation = await machine.get(reservation_id)

            existing = (
                await session.execute(
                    select(PaymentIntentRecord).where(
                        PaymentIntentRecord.provider_intent_id == intent.provider_intent_id
                    )
                )
            ).scalar_one_or_none()
            if not existing:
                session.add(PaymentIntentRecord(
                    reservation_id=reservation.id,
                    provider_intent_id=intent.provider_intent_id,
                    client_secret=intent.client_secret,
                    amount=reservation.total_amount,
                    currency=reservation.currency,
                    status=IntentStatus.PENDING.value,
                ))

            if reservation.payment_intent_id is None:
                reservation.payment_intent_id = intent.provider_intent_id
                reservation.updated_at = datetime.utcnow()

            return reservation

    @store_retry()
    async def _compensate(self, reservation_id: UUID):
        async with self.database.transaction() as session:
            await self._machine(session).cancel(reservation_id, reason="Payment could not be initiated")

    async def cancel(self, reservation_id: UUID, user_id: str) -> Reservation:
        """Cancel a reservation owned by user_id; repeat calls succeed without side effects."""
        outcome = await self._cancel(reservation_id, user_id)
        reservation = outcome.reservation

        if outcome.changed and outcome.previous_status == PENDING and reservation.payment_intent_id:
            # Stop the client from paying for a released spot; best effort
            try:
                await self.gateway.cancel_intent(reservation.payment_intent_id)
            except PaymentGatewayError as e:
                logger.warning(f"Could not cancel intent {reservation.payment_intent_id}: {e}")

        return reservation

    @store_retry()
    async def _cancel(self, reservation_id: UUID, user_id: str):
        async with self.database.transaction() as session:
            return await self._machine(session).cancel(
                reservation_id, reason="Cancelled by user", user_id=user_id
            )

    @store_retry()
    async def extend(self, reservation_id: UUID, user_id: str, new_end_time: datetime) -> Reservation:
        async with self.database.transaction() as session:
            return await self._machine(session).extend(reservation_id, new_end_time, user_id=user_id)

    @store_retry()
    async def get_reservation(self, reservation_id: UUID, user_id: str) -> Reservation:
        async with self.database.transaction() as session:
            return await self._machine(session).get(reservation_id, user_id)

    @store_retry()
    async def list_reservations(self, user_id: str) -> List[Reservation]:
        async with self.database.transaction() as session:
            result = await session.execute(
                select(Reservation)
                .where(Reservation.user_id == user_id)
                .order_by(Reservation.created_at.desc())
            )
            return list(result.scalars().all())

    @store_retry()
    async def list_payments(self, user_id: str) -> List[Payment]:
        """Settled payments of user_id, newest first."""
        async with self.database.transaction() as session:
            result = await session.execute(
                select(Payment)
                .where(Payment.user_id == user_id)
                .order_by(Payment.created_at.desc())
            )
            return list(result.scalars().all())

    @store_retry()
    async def get_payment_intent(self, provider_intent_id: str, user_id: str) -> PaymentIntentRecord:
        """
        Local status of a payment intent opened for one of user_id's reservations.

        Answers from the mirror kept by the reconciler, without calling the
        provider.
        """
        async with self.database.transaction() as session:
            intent = (
                await session.execute(
                    select(PaymentIntentRecord)
                    .join(Reservation, Reservation.id == PaymentIntentRecord.reservation_id)
                    .where(
                        PaymentIntentRecord.provider_intent_id == provider_intent_id,
                        Reservation.user_id == user_id,
                    )
                )
            ).scalar_one_or_none()
            if not intent:
                raise NotFound(
                    f"Payment {provider_intent_id} not found", {"provider_intent_id": provider_intent_id}
                )
            return intent

    async def process_refund(self, event: PaymentRefundRequestedEvent) -> bool:
        """
        Handle a refund request (compensating action).

        The provider call carries an idempotency key derived from the intent,
        so a redelivered request cannot refund twice.
        """
        if await self._is_refunded(event.provider_intent_id):
            logger.info(f"Intent {event.provider_intent_id} already refunded")
            return False

        refund_id = await self.gateway.refund(
            event.provider_intent_id, idempotency_key=f"refund-{event.provider_intent_id}"
        )
        return await self._record_refund(event.provider_intent_id, refund_id)

    @store_retry()
    async def _is_refunded(self, provider_intent_id: str) -> bool:
        async with self.database.transaction() as session:
            payment = (
                await session.execute(
                    select(Payment).where(Payment.provider_intent_id == provider_intent_id)
                )
            ).scalar_one_or_none()
            return payment is not None and payment.status == IntentStatus.REFUNDED.value

    @store_retry()
    async def _record_refund(self, provider_intent_id: str, refund_id: str) -> bool:
        async with self.database.transaction() as session:
            return await self._machine(session).record_refund(provider_intent_id, refund_id)
