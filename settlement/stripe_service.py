"""Narrow adapter over Stripe; the rest of the service never imports stripe directly."""

import stripe

from settlement.config import get_settings
from settlement.errors import GatewayError
from settlement.logging_config import get_logger

log = get_logger(__name__)

stripe.api_key = get_settings().stripe_secret_key


def create_payment(amount: int, currency: str, idempotency_key: str, metadata: dict | None = None):
    try:
        return stripe.PaymentIntent.create(
            amount=amount,
            currency=currency,
            automatic_payment_methods={"enabled": True},
            metadata=metadata or {},
            idempotency_key=idempotency_key
        )
    except stripe.StripeError as e:
        log.error(f"PaymentIntent creation failed ({idempotency_key}): {e}")
        raise GatewayError(f"Payment provider rejected the payment: {e}") from e


def refund_payment(payment_intent_id: str, amount: int, idempotency_key: str):
    try:
        return stripe.Refund.create(
            payment_intent=payment_intent_id,
            amount=amount,
            idempotency_key=idempotency_key
        )
    except stripe.StripeError as e:
        log.error(f"Refund failed for {payment_intent_id}: {e}")
        raise GatewayError(f"Payment provider rejected the refund: {e}") from e


def construct_event(payload: bytes, signature: str):
    return stripe.Webhook.construct_event(payload, signature, get_settings().stripe_webhook_secret)
