"""Turns reservation and payment events into user notifications."""
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from parkhub.shared.events import (
    BaseEvent,
    EventType,
    PaymentFailedEvent,
    PaymentRefundedEvent,
    PaymentSucceededEvent,
    ReservationCancelledEvent,
    ReservationConfirmedEvent,
    ReservationCreatedEvent,
    ReservationEvent,
    ReservationExpiredEvent,
    ReservationExtendedEvent,
)

logger = logging.getLogger(__name__)

EmailSender = Callable[[str, str, str], Awaitable[None]]
SmsSender = Callable[[str, str], Awaitable[None]]


async def send_email(recipient: str, subject: str, body: str):
    """
    Send email notification.

    In a real system, this would integrate with SendGrid, SES, or similar.
    """
    logger.info(f"[EMAIL] To: {recipient}")
    logger.info(f"[EMAIL] Subject: {subject}")
    logger.info(f"[EMAIL] Body: {body}")
    logger.info("-" * 60)


async def send_sms(recipient: str, message: str):
    """
    Send SMS notification.

    In a real system, this would integrate with Twilio, SNS, or similar.
    """
    logger.info(f"[SMS] To: {recipient}")
    logger.info(f"[SMS] Message: {message}")
    logger.info("-" * 60)


def _short(event: ReservationEvent) -> str:
    return str(event.reservation_id)[:8]


def _fmt(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M")


class NotificationDispatcher:
    """
    Maps domain events to email/SMS messages.

    Delivery failures are logged and dropped: a notification that cannot be
    sent never affects the reservation it describes.
    """

    def __init__(self, email_sender: EmailSender = send_email, sms_sender: SmsSender = send_sms):
        self.email_sender = email_sender
        self.sms_sender = sms_sender
        self._handlers: Dict[EventType, Callable[[BaseEvent], List[tuple]]] = {
            EventType.RESERVATION_CREATED: self._reservation_created,
            EventType.RESERVATION_CONFIRMED: self._reservation_confirmed,
            EventType.RESERVATION_CANCELLED: self._reservation_cancelled,
            EventType.RESERVATION_EXPIRED: self._reservation_expired,
            EventType.RESERVATION_EXTENDED: self._reservation_extended,
            EventType.PAYMENT_SUCCEEDED: self._payment_succeeded,
            EventType.PAYMENT_FAILED: self._payment_failed,
            EventType.PAYMENT_REFUNDED: self._payment_refunded,
        }

    @property
    def event_types(self) -> List[EventType]:
        return list(self._handlers)

    async def dispatch(self, event: BaseEvent) -> int:
        """Send every message the event maps to; returns how many were delivered."""
        handler = self._handlers.get(event.event_type)
        if handler is None:
            return 0

        delivered = 0
        for channel, recipient, *content in handler(event):
            try:
                if channel == "email":
                    await self.email_sender(recipient, *content)
                else:
                    await self.sms_sender(recipient, *content)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Failed to send {channel} for {event.event_type.value} "
                    f"(id={event.event_id}): {str(e)}"
                )
        return delivered

    @staticmethod
    def _email(event: ReservationEvent) -> str:
        return f"user_{event.user_id}@example.com"

    @staticmethod
    def _phone(event: ReservationEvent) -> Optional[str]:
        # contact_phone given at booking, copied into event metadata by the booking service
        return event.metadata.get("phone")

    def _with_sms(self, event: ReservationEvent, messages: List[tuple], text: str) -> List[tuple]:
        phone = self._phone(event)
        if phone:
            messages.append(("sms", phone, text))
        return messages

    def _reservation_created(self, event: ReservationCreatedEvent) -> List[tuple]:
        return [(
            "email", self._email(event),
            "Reservation Received",
            f"Your reservation {event.reservation_id} at parking {event.parking_id} "
            f"({_fmt(event.start_time)} - {_fmt(event.end_time)}) is waiting for payment "
            f"of {event.total_amount} {event.currency}.",
        )]

    def _reservation_confirmed(self, event: ReservationConfirmedEvent) -> List[tuple]:
        messages = [(
            "email", self._email(event),
            "Reservation Confirmed",
            f"Your spot at parking {event.parking_id} is booked from "
            f"{_fmt(event.start_time)} to {_fmt(event.end_time)}. "
            f"Reservation ID: {event.reservation_id}",
        )]
        return self._with_sms(
            event, messages, f"Reservation {_short(event)} confirmed for {_fmt(event.start_time)}"
        )

    def _reservation_cancelled(self, event: ReservationCancelledEvent) -> List[tuple]:
        return [(
            "email", self._email(event),
            "Reservation Cancelled",
            f"Your reservation {event.reservation_id} has been cancelled. Reason: {event.reason}.",
        )]

    def _reservation_expired(self, event: ReservationExpiredEvent) -> List[tuple]:
        return [(
            "email", self._email(event),
            "Reservation Expired",
            f"We did not receive payment for reservation {event.reservation_id} in time, "
            "so the spot has been released. Please book again.",
        )]

    def _reservation_extended(self, event: ReservationExtendedEvent) -> List[tuple]:
        messages = [(
            "email", self._email(event),
            "Reservation Extended",
            f"Your reservation {event.reservation_id} now ends at {_fmt(event.end_time)}.",
        )]
        return self._with_sms(
            event, messages, f"Reservation {_short(event)} extended until {_fmt(event.end_time)}"
        )

    def _payment_succeeded(self, event: PaymentSucceededEvent) -> List[tuple]:
        return [(
            "email", self._email(event),
            "Payment Received",
            f"Your payment of {event.amount} {event.currency} for reservation "
            f"{event.reservation_id} has been received.",
        )]

    def _payment_failed(self, event: PaymentFailedEvent) -> List[tuple]:
        messages = [(
            "email", self._email(event),
            "Payment Failed",
            f"Payment for reservation {event.reservation_id} failed: {event.reason}. "
            "The reservation has been cancelled.",
        )]
        return self._with_sms(event, messages, f"Payment for reservation {_short(event)} failed")

    def _payment_refunded(self, event: PaymentRefundedEvent) -> List[tuple]:
        return [(
            "email", self._email(event),
            "Refund Issued",
            f"A refund of {event.amount} for reservation {event.reservation_id} is on its way.",
        )]
