"""Reservation lifecycle state machine."""
import logging
import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, FrozenSet, NamedTuple, Optional
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from parkhub.shared.errors import AlreadyTerminal, InvalidTransition, NotFound, ValidationFailed
from parkhub.shared.events import (
    PaymentRefundRequestedEvent,
    PaymentRefundedEvent,
    ReservationActivatedEvent,
    ReservationCancelledEvent,
    ReservationCompletedEvent,
    ReservationConfirmedEvent,
    ReservationCreatedEvent,
    ReservationExpiredEvent,
    ReservationExtendedEvent,
)
from parkhub.shared.outbox import save_event_to_outbox

from .ledger import InventoryLedger
from .models import (
    TERMINAL_STATUSES,
    IntentStatus,
    ParkingLocation,
    Payment,
    PaymentIntentRecord,
    PaymentStatus,
    Reservation,
    ReservationStatus,
)

logger = logging.getLogger(__name__)

PENDING = ReservationStatus.PENDING.value
CONFIRMED = ReservationStatus.CONFIRMED.value
ACTIVE = ReservationStatus.ACTIVE.value
COMPLETED = ReservationStatus.COMPLETED.value
CANCELLED = ReservationStatus.CANCELLED.value
EXPIRED = ReservationStatus.EXPIRED.value

# target status -> statuses it may be entered from
ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    CONFIRMED: frozenset({PENDING}),
    ACTIVE: frozenset({CONFIRMED}),
    COMPLETED: frozenset({CONFIRMED, ACTIVE}),
    CANCELLED: frozenset({PENDING, CONFIRMED, ACTIVE}),
    EXPIRED: frozenset({PENDING}),
}

EXTENDABLE_STATUSES = frozenset({CONFIRMED, ACTIVE})

MAX_CAS_ATTEMPTS = 3


class TransitionResult(NamedTuple):
    reservation: Reservation
    changed: bool
    previous_status: str


class ReservationStateMachine:
    """
    Owns every status change of a reservation.

    Transitions are compare-and-set updates on (status, payment_status): a
    transition only commits if the row still holds the state it was
    evaluated against. Entering a state the reservation is already in is a
    no-op, so repeated cancels, expiries and confirmations never release
    inventory twice. Nothing here commits; the caller's transaction covers
    the reservation row, its hold, the location counter and the outbox.
    """

    def __init__(self, session: AsyncSession, max_reservation_hours: int = 720):
        self.session = session
        self.ledger = InventoryLedger(session)
        self.max_reservation_hours = max_reservation_hours

    async def create_pending(
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
    ) -> Reservation:
        """Hold a spot and create the pending reservation that owns it."""
        self._validate_window(start_time, end_time)
        if total_amount < 0:
            raise ValidationFailed("total_amount must not be negative")

        reservation_id = uuid4()
        await self.ledger.reserve(parking_id, reservation_id)

        if currency is None:
            location = await self.session.get(ParkingLocation, parking_id)
            currency = location.currency

        now = datetime.utcnow()
        reservation = Reservation(
            id=reservation_id,
            user_id=user_id,
            parking_id=parking_id,
            start_time=start_time,
            end_time=end_time,
            duration_hours=_duration_hours(start_time, end_time),
            total_amount=total_amount,
            currency=currency.upper(),
            status=PENDING,
            payment_status=PaymentStatus.PENDING.value,
            payment_method=payment_method,
            notes=notes,
            contact_phone=contact_phone,
            created_at=now,
            updated_at=now,
        )
        self.session.add(reservation)
        await self.session.flush()

        save_event_to_outbox(self.session, ReservationCreatedEvent(
            aggregate_id=reservation.id,
            correlation_id=reservation.id,
            reservation_id=reservation.id,
            user_id=user_id,
            parking_id=parking_id,
            start_time=start_time,
            end_time=end_time,
            total_amount=reservation.total_amount,
            currency=reservation.currency,
            metadata=contact_metadata(reservation),
        ))

        logger.info(f"Created pending reservation {reservation.id} at parking {parking_id}")
        return reservation

    async def confirm(self, reservation_id: UUID, causation_id: Optional[UUID] = None) -> TransitionResult:
        """pending -> confirmed after a successful payment."""
        outcome = await self._transition(
            reservation_id, CONFIRMED, payment_status=PaymentStatus.PAID.value
        )
        if outcome.changed:
            reservation = outcome.reservation
            save_event_to_outbox(self.session, ReservationConfirmedEvent(
                aggregate_id=reservation.id,
                correlation_id=reservation.id,
                causation_id=causation_id,
                reservation_id=reservation.id,
                user_id=reservation.user_id,
                parking_id=reservation.parking_id,
                start_time=reservation.start_time,
                end_time=reservation.end_time,
                total_amount=reservation.total_amount,
                currency=reservation.currency,
                metadata=contact_metadata(reservation),
            ))
        return outcome

    async def activate(self, reservation_id: UUID) -> TransitionResult:
        """confirmed -> active once start_time is reached."""
        outcome = await self._transition(reservation_id, ACTIVE)
        if outcome.changed:
            save_event_to_outbox(self.session, ReservationActivatedEvent(
                **self._event_fields(outcome.reservation)
            ))
        return outcome

    async def complete(self, reservation_id: UUID) -> TransitionResult:
        """confirmed/active -> completed once end_time passed; returns the spot."""
        outcome = await self._transition(reservation_id, COMPLETED)
        if outcome.changed:
            await self.ledger.release_for_reservation(reservation_id)
            save_event_to_outbox(self.session, ReservationCompletedEvent(
                **self._event_fields(outcome.reservation)
            ))
        return outcome

    async def expire(self, reservation_id: UUID) -> TransitionResult:
        """pending -> expired when the payment grace period elapsed."""
        outcome = await self._transition(reservation_id, EXPIRED)
        if outcome.changed:
            await self.ledger.release_for_reservation(reservation_id)
            await self._set_intent_status(reservation_id, IntentStatus.CANCELLED, only_from=IntentStatus.PENDING)
            save_event_to_outbox(self.session, ReservationExpiredEvent(
                **self._event_fields(outcome.reservation)
            ))
        return outcome

    async def cancel(
        self,
        reservation_id: UUID,
        reason: str,
        user_id: Optional[str] = None,
        causation_id: Optional[UUID] = None,
    ) -> TransitionResult:
        """
        Cancel from pending, confirmed or active and return the spot.

        Cancelling an already cancelled reservation succeeds without side
        effects. A paid reservation gets a refund request in the same
        transaction.
        """
        outcome = await self._transition(
            reservation_id, CANCELLED, user_id=user_id, cancellation_reason=reason
        )
        if outcome.changed:
            await self._after_cancel(outcome, reason, causation_id, IntentStatus.CANCELLED)
        return outcome

    async def fail_payment(
        self,
        reservation_id: UUID,
        reason: str,
        causation_id: Optional[UUID] = None,
    ) -> TransitionResult:
        """
        pending -> cancelled after the provider reported a failed payment.

        Only a pending reservation can be cancelled this way; a failure that
        arrives after the reservation was confirmed raises InvalidTransition.
        """
        outcome = await self._transition(
            reservation_id,
            CANCELLED,
            allowed_from=frozenset({PENDING}),
            cancellation_reason=reason,
            payment_status=PaymentStatus.FAILED.value,
        )
        if outcome.changed:
            await self._after_cancel(outcome, reason, causation_id, IntentStatus.FAILED)
        return outcome

    async def _after_cancel(
        self,
        outcome: TransitionResult,
        reason: str,
        causation_id: Optional[UUID],
        intent_status: IntentStatus,
    ):
        reservation = outcome.reservation
        await self.ledger.release_for_reservation(reservation.id)
        await self._set_intent_status(reservation.id, intent_status, only_from=IntentStatus.PENDING)

        save_event_to_outbox(self.session, ReservationCancelledEvent(
            **self._event_fields(reservation),
            causation_id=causation_id,
            previous_status=outcome.previous_status,
            reason=reason,
        ))

        if reservation.payment_status == PaymentStatus.PAID.value:
            await self.request_refund(reservation, reason="Reservation cancelled")

    async def mark_paid(self, reservation_id: UUID) -> bool:
        """Record a settled payment on a reservation without changing its status."""
        result = await self.session.execute(
            update(Reservation)
            .where(
                Reservation.id == reservation_id,
                Reservation.payment_status.in_([PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]),
            )
            .values(payment_status=PaymentStatus.PAID.value, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_refund(self, provider_intent_id: str, refund_id: Optional[str] = None) -> bool:
        """
        Mark the payment of an intent as refunded.

        Returns False when there is no settled payment for the intent or it
        was already marked refunded.
        """
        payment = (
            await self.session.execute(
                select(Payment).where(Payment.provider_intent_id == provider_intent_id)
            )
        ).scalar_one_or_none()
        if not payment:
            logger.warning(f"No payment recorded for intent {provider_intent_id}")
            return False

        now = datetime.utcnow()
        result = await self.session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == IntentStatus.SUCCEEDED.value)
            .values(status=IntentStatus.REFUNDED.value, refund_id=refund_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(f"Payment for intent {provider_intent_id} already refunded")
            return False

        await self.session.execute(
            update(PaymentIntentRecord)
            .where(PaymentIntentRecord.provider_intent_id == provider_intent_id)
            .values(status=IntentStatus.REFUNDED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            update(Reservation)
            .where(
                Reservation.id == payment.reservation_id,
                Reservation.payment_status == PaymentStatus.PAID.value,
            )
            .values(payment_status=PaymentStatus.REFUNDED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )

        reservation = await self.get(payment.reservation_id)
        save_event_to_outbox(self.session, PaymentRefundedEvent(
            **self._event_fields(reservation),
            provider_intent_id=provider_intent_id,
            refund_id=refund_id,
            amount=payment.amount,
        ))

        logger.info(f"Recorded refund of intent {provider_intent_id} for reservation {reservation.id}")
        return True

    async def extend(self, reservation_id: UUID, new_end_time: datetime, user_id: Optional[str] = None) -> Reservation:
        """
        Push end_time later on a confirmed or active reservation.

        The reservation keeps its existing hold, so no capacity check runs.
        """
        reservation = await self.get(reservation_id, user_id)

        if reservation.status not in EXTENDABLE_STATUSES:
            if reservation.is_terminal:
                raise AlreadyTerminal(
                    f"Reservation {reservation_id} is {reservation.status}", reservation.status
                )
            raise InvalidTransition(
                f"Reservation {reservation_id} cannot be extended while {reservation.status}",
                reservation.status,
            )
        if new_end_time <= reservation.end_time:
            raise ValidationFailed("new_end_time must be later than the current end_time")
        self._validate_window(reservation.start_time, new_end_time)

        previous_end_time = reservation.end_time
        result = await self.session.execute(
            update(Reservation)
            .where(
                Reservation.id == reservation_id,
                Reservation.status == reservation.status,
                Reservation.end_time == previous_end_time,
            )
            .values(
                end_time=new_end_time,
                duration_hours=_duration_hours(reservation.start_time, new_end_time),
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = await self.get(reservation_id)
            raise InvalidTransition(
                f"Reservation {reservation_id} changed while extending", current.status
            )

        reservation = await self.get(reservation_id)
        save_event_to_outbox(self.session, ReservationExtendedEvent(
            **self._event_fields(reservation),
            previous_end_time=previous_end_time,
            end_time=new_end_time,
        ))

        logger.info(f"Extended reservation {reservation_id} to {new_end_time.isoformat()}")
        return reservation

    async def request_refund(self, reservation: Reservation, reason: str) -> bool:
        """Queue a refund for the settled payment of a reservation, if there is one."""
        result = await self.session.execute(
            select(Payment).where(
                Payment.reservation_id == reservation.id,
                Payment.status == IntentStatus.SUCCEEDED.value,
            )
        )
        payment = result.scalars().first()
        if not payment:
            logger.warning(f"No settled payment to refund for reservation {reservation.id}")
            return False

        save_event_to_outbox(self.session, PaymentRefundRequestedEvent(
            **self._event_fields(reservation),
            provider_intent_id=payment.provider_intent_id,
            amount=payment.amount,
            currency=payment.currency,
            reason=reason,
        ))

        logger.info(f"Requested refund of {payment.provider_intent_id} for reservation {reservation.id}")
        return True

    async def get(self, reservation_id: UUID, user_id: Optional[str] = None) -> Reservation:
        """Load a fresh copy of a reservation, optionally scoped to its owner."""
        query = (
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        if user_id is not None:
            query = query.where(Reservation.user_id == user_id)

        reservation = (await self.session.execute(query)).scalar_one_or_none()
        if not reservation:
            raise NotFound(f"Reservation {reservation_id} not found", {"reservation_id": str(reservation_id)})
        return reservation

    async def _transition(
        self,
        reservation_id: UUID,
        to_status: str,
        user_id: Optional[str] = None,
        allowed_from: Optional[FrozenSet[str]] = None,
        **values,
    ) -> TransitionResult:
        allowed_from = allowed_from or ALLOWED_TRANSITIONS[to_status]

        for _ in range(MAX_CAS_ATTEMPTS):
            reservation = await self.get(reservation_id, user_id)
            current = reservation.status

            if current == to_status:
                logger.info(f"Reservation {reservation_id} already {to_status}")
                return TransitionResult(reservation, False, current)

            if current not in allowed_from:
                if current in TERMINAL_STATUSES:
                    raise AlreadyTerminal(f"Reservation {reservation_id} is already {current}", current)
                raise InvalidTransition(
                    f"Reservation {reservation_id} cannot move from {current} to {to_status}", current
                )

            result = await self.session.execute(
                update(Reservation)
                .where(
                    Reservation.id == reservation_id,
                    Reservation.status == current,
                    Reservation.payment_status == reservation.payment_status,
                )
                .values(status=to_status, updated_at=datetime.utcnow(), **values)
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 1:
                reservation = await self.get(reservation_id)
                logger.info(f"Reservation {reservation_id}: {current} -> {to_status}")
                return TransitionResult(reservation, True, current)

            logger.info(f"Reservation {reservation_id} changed concurrently, re-evaluating")

        raise InvalidTransition(f"Reservation {reservation_id} is being modified concurrently")

    async def _set_intent_status(
        self,
        reservation_id: UUID,
        status: IntentStatus,
        only_from: Optional[IntentStatus] = None,
    ):
        query = (
            update(PaymentIntentRecord)
            .where(PaymentIntentRecord.reservation_id == reservation_id)
            .values(status=status.value, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if only_from is not None:
            query = query.where(PaymentIntentRecord.status == only_from.value)
        await self.session.execute(query)

    def _validate_window(self, start_time: datetime, end_time: datetime):
        if end_time <= start_time:
            raise ValidationFailed("end_time must be after start_time")
        if end_time - start_time > timedelta(hours=self.max_reservation_hours):
            raise ValidationFailed(
                f"Reservations cannot exceed {self.max_reservation_hours} hours"
            )

    @staticmethod
    def _event_fields(reservation: Reservation) -> dict:
        return {
            "aggregate_id": reservation.id,
            "correlation_id": reservation.id,
            "reservation_id": reservation.id,
            "user_id": reservation.user_id,
            "parking_id": reservation.parking_id,
            "metadata": contact_metadata(reservation),
        }


def contact_metadata(reservation: Reservation) -> dict:
    """Event metadata the notification service reads (the contact phone, when given)."""
    if reservation.contact_phone:
        return {"phone": reservation.contact_phone}
    return {}


def _duration_hours(start_time: datetime, end_time: datetime) -> int:
    return max(1, math.ceil((end_time - start_time).total_seconds() / 3600))
