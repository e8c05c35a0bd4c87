"""Payment reconciler: applies Stripe webhook events to reservations."""
import hashlib
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

import stripe
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from parkhub.shared.database import Database, store_retry
from parkhub.shared.errors import AuthenticationError, InvalidPayload, InvalidTransition
from parkhub.shared.events import PaymentFailedEvent, PaymentSucceededEvent
from parkhub.shared.outbox import save_event_to_outbox

from .gateway import from_minor_units
from .models import (
    IntentStatus,
    Payment,
    PaymentIntentRecord,
    ProcessedWebhookEvent,
    Reservation,
    ReservationStatus,
)
from .state_machine import ReservationStateMachine, contact_metadata

logger = logging.getLogger(__name__)


class ReconcileStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    NOT_FOUND = "not_found"


@dataclass
class ReconcileResult:
    status: ReconcileStatus
    event_id: str
    reservation_id: Optional[UUID] = None


class ProviderEventData(BaseModel):
    object: Dict[str, Any]


class ProviderEvent(BaseModel):
    """The parts of a Stripe event envelope the reconciler reads."""
    id: str
    type: str
    data: ProviderEventData
    created: Optional[int] = None
    livemode: bool = False


class PaymentDetails(BaseModel):
    """Payment facts extracted from a payment_intent or charge object."""
    provider_intent_id: Optional[str] = None
    reservation_ref: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    payment_method: str = "card"
    failure_reason: Optional[str] = None
    refund_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "PaymentDetails":
        metadata = obj.get("metadata") or {}
        kind = obj.get("object")

        if kind == "charge":
            intent_id = obj.get("payment_intent")
            minor = obj.get("amount_captured") or obj.get("amount")
            method = (obj.get("payment_method_details") or {}).get("type") or "card"
            failure = obj.get("failure_message")
            refunds = (obj.get("refunds") or {}).get("data") or []
            refund_id = refunds[0].get("id") if refunds else None
        else:
            intent_id = obj.get("id")
            minor = obj.get("amount_received") or obj.get("amount")
            method_types = obj.get("payment_method_types") or []
            method = method_types[0] if method_types else "card"
            failure = (obj.get("last_payment_error") or {}).get("message") or obj.get("cancellation_reason")
            refund_id = None

        return cls(
            provider_intent_id=intent_id,
            reservation_ref=metadata.get("reservation_id"),
            amount=from_minor_units(minor) if minor is not None else None,
            currency=obj.get("currency"),
            payment_method=method,
            failure_reason=failure,
            refund_id=refund_id,
            metadata=metadata,
        )


SUCCEEDED_EVENTS = frozenset({"payment_intent.succeeded", "charge.succeeded"})
FAILED_EVENTS = frozenset({"payment_intent.payment_failed", "payment_intent.canceled", "charge.failed"})
REFUNDED_EVENTS = frozenset({"charge.refunded"})
HANDLED_EVENTS = SUCCEEDED_EVENTS | FAILED_EVENTS | REFUNDED_EVENTS

PAID_STATUSES = frozenset({
    ReservationStatus.CONFIRMED.value,
    ReservationStatus.ACTIVE.value,
    ReservationStatus.COMPLETED.value,
})


class PaymentReconciler:
    """
    Idempotent consumer of payment provider events.

    Delivery is at-least-once and unordered. Every event id is recorded in
    processed_webhook_events inside the same transaction that applies it,
    so a redelivered event is acknowledged without touching any state.
    """

    def __init__(
        self,
        database: Database,
        webhook_secret: str,
        tolerance_seconds: int = 300,
        max_reservation_hours: int = 720,
    ):
        self.database = database
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self.max_reservation_hours = max_reservation_hours

    async def apply(self, payload: bytes, signature: Optional[str]) -> ReconcileResult:
        """
        Verify, parse and apply one webhook delivery.

        Raises:
            AuthenticationError: missing or invalid signature
            InvalidPayload: body is not a provider event, or its payment object is malformed
        """
        self.verify_signature(payload, signature)

        try:
            event = ProviderEvent.model_validate_json(payload)
        except ValidationError as e:
            raise InvalidPayload("Webhook payload is not a valid event") from e

        details = None
        if event.type in HANDLED_EVENTS:
            try:
                details = PaymentDetails.from_object(event.data.object)
            except (ValidationError, ArithmeticError, TypeError, AttributeError) as e:
                raise InvalidPayload(f"Event {event.id} carries a malformed {event.type} object") from e

        payload_hash = hashlib.sha256(payload).hexdigest()

        try:
            return await self._apply_event(event, details, payload_hash)
        except IntegrityError:
            # A concurrent delivery of the same event committed first
            logger.info(f"Event {event.id} applied concurrently, treating as duplicate")
            return ReconcileResult(ReconcileStatus.DUPLICATE, event.id)

    def verify_signature(self, payload: bytes, signature: Optional[str]):
        if not signature:
            logger.warning("Webhook rejected: missing signature header")
            raise AuthenticationError("Missing webhook signature")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, self.webhook_secret, self.tolerance_seconds
            )
        except UnicodeDecodeError as e:
            raise InvalidPayload("Webhook payload is not UTF-8") from e
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook rejected: {e}")
            raise AuthenticationError("Invalid webhook signature") from e

    @store_retry()
    async def _apply_event(
        self, event: ProviderEvent, details: Optional[PaymentDetails], payload_hash: str
    ) -> ReconcileResult:
        async with self.database.transaction() as session:
            already = (
                await session.execute(
                    select(ProcessedWebhookEvent.id).where(ProcessedWebhookEvent.event_id == event.id)
                )
            ).scalar_one_or_none()
            if already:
                logger.info(f"Event {event.id} ({event.type}) already processed")
                return ReconcileResult(ReconcileStatus.DUPLICATE, event.id)

            # Claim the event id first; a concurrent duplicate blocks or fails here
            record = ProcessedWebhookEvent(
                event_id=event.id,
                event_type=event.type,
                result=ReconcileStatus.PROCESSED.value,
                payload_hash=payload_hash,
            )
            session.add(record)
            await session.flush()

            result = await self._dispatch(session, event, details)

            record.result = result.status.value
            record.reservation_id = result.reservation_id
            return result

    async def _dispatch(
        self, session: AsyncSession, event: ProviderEvent, details: Optional[PaymentDetails]
    ) -> ReconcileResult:
        if event.type in SUCCEEDED_EVENTS:
            handler = self._handle_succeeded
        elif event.type in FAILED_EVENTS:
            handler = self._handle_failed
        elif event.type in REFUNDED_EVENTS:
            handler = self._handle_refunded
        else:
            logger.info(f"Unhandled event type: {event.type}")
            return ReconcileResult(ReconcileStatus.IGNORED, event.id)

        reservation = await self._find_reservation(session, details)
        if not reservation:
            logger.warning(
                f"No reservation for event {event.id} ({event.type}, "
                f"intent={details.provider_intent_id}, ref={details.reservation_ref})"
            )
            return ReconcileResult(ReconcileStatus.NOT_FOUND, event.id)

        machine = ReservationStateMachine(session, max_reservation_hours=self.max_reservation_hours)
        status = await handler(session, machine, event, details, reservation)
        return ReconcileResult(status, event.id, reservation.id)

    async def _handle_succeeded(
        self,
        session: AsyncSession,
        machine: ReservationStateMachine,
        event: ProviderEvent,
        details: PaymentDetails,
        reservation: Reservation,
    ) -> ReconcileStatus:
        if not details.provider_intent_id:
            logger.warning(f"Event {event.id} has no payment intent, ignoring")
            return ReconcileStatus.IGNORED

        payment_is_new = await self._record_payment(session, reservation, details)
        await self._upsert_intent(session, reservation, details, IntentStatus.SUCCEEDED)
        if reservation.payment_intent_id is None:
            reservation.payment_intent_id = details.provider_intent_id

        if reservation.status in PAID_STATUSES:
            logger.info(f"Reservation {reservation.id} already {reservation.status}")
            return ReconcileStatus.PROCESSED

        try:
            outcome = await machine.confirm(reservation.id)
        except InvalidTransition as e:
            if payment_is_new:
                # Paid after cancellation or expiry: the spot is gone, give the money back
                logger.warning(
                    f"Payment {details.provider_intent_id} arrived for {e.current_status} "
                    f"reservation {reservation.id}, requesting refund"
                )
                await machine.mark_paid(reservation.id)
                await machine.request_refund(
                    await machine.get(reservation.id),
                    reason=f"Payment received for {e.current_status} reservation",
                )
            return ReconcileStatus.PROCESSED

        if outcome.changed and payment_is_new:
            save_event_to_outbox(session, PaymentSucceededEvent(
                aggregate_id=reservation.id,
                correlation_id=reservation.id,
                reservation_id=reservation.id,
                user_id=reservation.user_id,
                parking_id=reservation.parking_id,
                provider_intent_id=details.provider_intent_id,
                amount=details.amount if details.amount is not None else reservation.total_amount,
                currency=(details.currency or reservation.currency).upper(),
                payment_method=details.payment_method,
                metadata=contact_metadata(reservation),
            ))

        logger.info(f"Payment succeeded for reservation {reservation.id}")
        return ReconcileStatus.PROCESSED

    async def _handle_failed(
        self,
        session: AsyncSession,
        machine: ReservationStateMachine,
        event: ProviderEvent,
        details: PaymentDetails,
        reservation: Reservation,
    ) -> ReconcileStatus:
        reason = details.failure_reason or "Payment failed"

        try:
            outcome = await machine.fail_payment(reservation.id, reason=reason)
        except InvalidTransition as e:
            logger.info(
                f"Ignoring {event.type} for reservation {reservation.id} in status {e.current_status}"
            )
            return ReconcileStatus.IGNORED

        if outcome.changed:
            save_event_to_outbox(session, PaymentFailedEvent(
                aggregate_id=reservation.id,
                correlation_id=reservation.id,
                reservation_id=reservation.id,
                user_id=reservation.user_id,
                parking_id=reservation.parking_id,
                provider_intent_id=details.provider_intent_id,
                reason=reason,
                metadata=contact_metadata(reservation),
            ))

        logger.info(f"Payment failed for reservation {reservation.id}: {reason}")
        return ReconcileStatus.PROCESSED

    async def _handle_refunded(
        self,
        session: AsyncSession,
        machine: ReservationStateMachine,
        event: ProviderEvent,
        details: PaymentDetails,
        reservation: Reservation,
    ) -> ReconcileStatus:
        if not details.provider_intent_id:
            return ReconcileStatus.IGNORED
        await machine.record_refund(details.provider_intent_id, details.refund_id)
        return ReconcileStatus.PROCESSED

    async def _find_reservation(self, session: AsyncSession, details: PaymentDetails) -> Optional[Reservation]:
        if details.reservation_ref:
            try:
                reservation_id = UUID(str(details.reservation_ref))
            except ValueError:
                logger.warning(f"Malformed reservation reference {details.reservation_ref!r}")
            else:
                reservation = await session.get(Reservation, reservation_id)
                if reservation:
                    return reservation

        if not details.provider_intent_id:
            return None

        result = await session.execute(
            select(Reservation).where(Reservation.payment_intent_id == details.provider_intent_id)
        )
        reservation = result.scalars().first()
        if reservation:
            return reservation

        result = await session.execute(
            select(Reservation)
            .join(PaymentIntentRecord, PaymentIntentRecord.reservation_id == Reservation.id)
            .where(PaymentIntentRecord.provider_intent_id == details.provider_intent_id)
        )
        return result.scalars().first()

    async def _record_payment(self, session: AsyncSession, reservation: Reservation, details: PaymentDetails) -> bool:
        """Insert the Payment row for an intent. Returns False if one already exists."""
        existing = (
            await session.execute(
                select(Payment.id).where(Payment.provider_intent_id == details.provider_intent_id)
            )
        ).scalar_one_or_none()
        if existing:
            return False

        session.add(Payment(
            reservation_id=reservation.id,
            user_id=reservation.user_id,
            amount=details.amount if details.amount is not None else reservation.total_amount,
            currency=(details.currency or reservation.currency).upper(),
            payment_method=details.payment_method,
            provider_intent_id=details.provider_intent_id,
            status=IntentStatus.SUCCEEDED.value,
        ))
        await session.flush()
        return True

    async def _upsert_intent(
        self,
        session: AsyncSession,
        reservation: Reservation,
        details: PaymentDetails,
        status: IntentStatus,
    ):
        result = await session.execute(
            update(PaymentIntentRecord)
            .where(PaymentIntentRecord.provider_intent_id == details.provider_intent_id)
            .values(status=status.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.add(PaymentIntentRecord(
                reservation_id=reservation.id,
                provider_intent_id=details.provider_intent_id,
                amount=details.amount if details.amount is not None else reservation.total_amount,
                currency=(details.currency or reservation.currency).upper(),
                status=status.value,
            ))
            await session.flush()
