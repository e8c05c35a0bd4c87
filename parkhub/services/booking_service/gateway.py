"""Stripe payment gateway client."""
import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

import stripe

from parkhub.shared.errors import PaymentGatewayError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OpenedIntent:
    """Payment intent as returned by the provider."""
    provider_intent_id: str
    client_secret: Optional[str]
    status: str


def to_minor_units(amount: Decimal) -> int:
    """Stripe expects amounts in cents."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


class StripeGateway:
    """
    Thin async wrapper around the Stripe SDK.

    The SDK is blocking, so every call runs in a worker thread. Errors from
    Stripe are re-raised as PaymentGatewayError.
    """

    def __init__(self, api_key: str):
        self.client = stripe.StripeClient(api_key)

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> OpenedIntent:
        params = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}

        try:
            intent = await asyncio.to_thread(
                self.client.payment_intents.create, params=params, options=options
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe rejected payment intent: {e.user_message or str(e)}")
            raise PaymentGatewayError("Failed to create payment intent") from e

        logger.info(f"Opened payment intent {intent.id} for {metadata.get('reservation_id')}")
        return OpenedIntent(
            provider_intent_id=intent.id,
            client_secret=intent.client_secret,
            status=intent.status,
        )

    async def cancel_intent(self, provider_intent_id: str) -> None:
        try:
            await asyncio.to_thread(self.client.payment_intents.cancel, provider_intent_id)
        except stripe.StripeError as e:
            raise PaymentGatewayError(f"Failed to cancel payment intent {provider_intent_id}") from e

        logger.info(f"Cancelled payment intent {provider_intent_id}")

    async def refund(self, provider_intent_id: str, idempotency_key: Optional[str] = None) -> str:
        """Refund the full amount captured by an intent. Returns the provider refund id."""
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        try:
            refund = await asyncio.to_thread(
                self.client.refunds.create,
                params={"payment_intent": provider_intent_id},
                options=options,
            )
        except stripe.StripeError as e:
            raise PaymentGatewayError(f"Failed to refund payment intent {provider_intent_id}") from e

        logger.info(f"Refunded payment intent {provider_intent_id} (refund={refund.id})")
        return refund.id
