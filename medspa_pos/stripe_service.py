import logging
from decimal import Decimal

import stripe

from medspa_pos.config import STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET
from medspa_pos.pricing import money

logger = logging.getLogger(__name__)

stripe.api_key = STRIPE_SECRET_KEY


def to_cents(amount) -> int:
    return int(money(amount) * 100)


def create_payment_intent(amount: Decimal, currency: str, idempotency_key: str, metadata=None):
    # Same idempotency key -> Stripe hands back the same intent on retries
    intent = stripe.PaymentIntent.create(
        amount=to_cents(amount),
        currency=currency,
        payment_method_types=["card"],
        metadata=metadata or {},
        idempotency_key=idempotency_key
    )
    logger.info(f"Stripe PaymentIntent created: {intent.id}")
    return intent


def retrieve_payment_intent(payment_intent_id: str):
    return stripe.PaymentIntent.retrieve(payment_intent_id)


def refund_payment(payment_intent_id: str):
    refund = stripe.Refund.create(payment_intent=payment_intent_id)
    logger.info(f"Stripe refund created for {payment_intent_id}")
    return refund


def construct_event(payload: bytes, signature: str):
    return stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
