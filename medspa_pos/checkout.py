"""
POS checkout: payment creation, Stripe confirmation, refunds.

The Payment row and its items are written in one database transaction
before Stripe is called. The PaymentIntent is then created with the
payment's transaction_id as Stripe idempotency key, so a failed call can
be retried later against the already committed pending payment without
charging twice.

A declined card moves the payment to ``failed`` but the PaymentIntent
stays usable, so ``failed`` payments can still be retried and completed.
Only ``refunded`` is final.
"""

import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import stripe
from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medspa_pos import stripe_service
from medspa_pos.audit import record_audit
from medspa_pos.auth import Principal, ensure_client_access
from medspa_pos.config import (
    COMMISSION_RATE, DUPLICATE_WINDOW_SECONDS, STRIPE_CURRENCY,
)
from medspa_pos.models import Client, Payment, PaymentItem, Product, Service, utcnow
from medspa_pos.pricing import Cart, money
from medspa_pos.schemas import PaymentRequest, QuoteRequest, serialize_payment

logger = logging.getLogger(__name__)

CATALOG = {"service": Service, "product": Product}

# Stripe payments that may still be charged
PAYABLE_STATUSES = ("pending", "failed")


@dataclass
class CheckoutResult:
    payment: Payment
    client_secret: Optional[str] = None
    replayed: bool = False


def generate_transaction_id() -> str:
    return f"TXN-{uuid.uuid4().hex.upper()}-{int(time.time())}"


def request_fingerprint(request: PaymentRequest) -> str:
    canonical = {
        "client_id": request.client_id,
        "amount": str(money(request.amount)),
        "payment_method": request.payment_method,
        "tips": str(money(request.tips)),
        "discount_type": request.discount_type,
        "discount_value": str(request.discount_value),
        "notes": request.notes or "",
        "cart_items": [
            [item.type, item.id, str(money(item.price)), item.quantity]
            for item in request.cart_items
        ],
    }
    return hashlib.sha256(json.dumps(canonical, sort_keys=True).encode()).hexdigest()


def duplicate_guard(fingerprint: str) -> str:
    """Unique per fingerprint and duplicate window, so concurrent identical inserts collide."""
    return f"{fingerprint}:{int(time.time()) // DUPLICATE_WINDOW_SECONDS}"


def lookup_catalog_item(db: Session, item_type: str, item_id: int):
    model = CATALOG[item_type]
    return db.query(model).filter(model.id == item_id, model.active.is_(True)).first()


def find_existing_payment(db: Session, idempotency_key: Optional[str], fingerprint: str):
    if idempotency_key:
        return db.query(Payment).filter(Payment.idempotency_key == idempotency_key).first()
    window_start = utcnow() - timedelta(seconds=DUPLICATE_WINDOW_SECONDS)
    return (
        db.query(Payment)
        .filter(
            Payment.request_fingerprint == fingerprint,
            Payment.created_at >= window_start,
        )
        .order_by(Payment.id.desc())
        .first()
    )


def priced_cart(lines, discount_type="none", discount_value=0, tip=0) -> Cart:
    """Build a cart from ``(item_id, item_type, name, price, quantity)`` tuples."""
    cart = Cart(discount_type, discount_value, tip)
    for item_id, item_type, name, price, quantity in lines:
        cart.add(item_id, item_type, name, price)
        cart.update_quantity(item_id, item_type, quantity - 1)
    return cart


def _build_items(db: Session, request: PaymentRequest):
    items = []
    for line in request.cart_items:
        catalog_item = lookup_catalog_item(db, line.type, line.id)
        if catalog_item is None:
            raise HTTPException(status_code=422, detail=f"Unknown {line.type} id {line.id}")
        price = money(catalog_item.price)
        if money(line.price) != price:
            raise HTTPException(
                status_code=422,
                detail=f"Price for '{catalog_item.name}' does not match the catalog ({price})",
            )
        items.append(PaymentItem(
            item_type=line.type,
            item_id=line.id,
            item_name=catalog_item.name,
            price=price,
            quantity=line.quantity,
            subtotal=price * line.quantity,
        ))
    return items


def check_amount(amount, request: PaymentRequest, items):
    """Reject an amount that is not the cart total, with or without the tax line."""
    if not items:
        raise HTTPException(status_code=422, detail="Cart is empty")
    cart = priced_cart(
        [(i.item_id, i.item_type, i.item_name, i.price, i.quantity) for i in items],
        request.discount_type, request.discount_value, request.tips,
    )
    totals = cart.quote()
    if totals.discount_amount > totals.subtotal:
        raise HTTPException(status_code=422, detail="Discount exceeds the cart subtotal")
    if amount not in (totals.total, totals.total - totals.tax_amount):
        logger.warning(f"Checkout amount {amount} does not match cart total {totals.total}")
        raise HTTPException(
            status_code=422,
            detail=f"Amount {amount} does not match the cart total ({totals.total})",
        )


def _stripe_failure(payment: Payment, error: Exception, message: str):
    logger.error(f"{message} for payment {payment.id} ({payment.transaction_id}): {error}")
    return HTTPException(
        status_code=502,
        detail={
            "message": message,
            "error": getattr(error, "user_message", None) or str(error),
            "payment_id": payment.id,
            "transaction_id": payment.transaction_id,
        },
    )


def attach_intent(db: Session, payment: Payment) -> str:
    """Create (or re-fetch) the PaymentIntent of an open Stripe payment, return its client secret."""
    try:
        if payment.stripe_payment_intent_id:
            intent = stripe_service.retrieve_payment_intent(payment.stripe_payment_intent_id)
        else:
            intent = stripe_service.create_payment_intent(
                payment.amount,
                STRIPE_CURRENCY,
                idempotency_key=payment.transaction_id,
                metadata={"payment_id": payment.id, "transaction_id": payment.transaction_id},
            )
    except stripe.error.StripeError as e:
        raise _stripe_failure(payment, e, "Stripe payment initialization failed")

    if payment.stripe_payment_intent_id != intent.id:
        payment.stripe_payment_intent_id = intent.id
        db.commit()
    return intent.client_secret


def _replay(db: Session, payment: Payment, fingerprint: str, principal: Principal) -> CheckoutResult:
    ensure_client_access(principal, payment.client_id)
    if payment.request_fingerprint != fingerprint:
        logger.warning(f"Idempotency key of payment {payment.id} reused with a different request")
        raise HTTPException(
            status_code=409,
            detail="Idempotency key was already used for a different payment",
        )
    logger.info(f"Duplicate checkout collapsed onto payment {payment.id} ({payment.transaction_id})")
    client_secret = None
    if payment.payment_method == "stripe" and payment.status in PAYABLE_STATUSES:
        client_secret = attach_intent(db, payment)
    return CheckoutResult(payment=payment, client_secret=client_secret, replayed=True)


def create_checkout(db: Session, request: PaymentRequest, principal: Principal,
                    idempotency_key: Optional[str] = None) -> CheckoutResult:
    idempotency_key = idempotency_key or request.idempotency_key
    fingerprint = request_fingerprint(request)

    existing = find_existing_payment(db, idempotency_key, fingerprint)
    if existing is not None:
        return _replay(db, existing, fingerprint, principal)

    client = db.get(Client, request.client_id)
    if client is None:
        logger.warning(f"Checkout for unknown client {request.client_id}")
        raise HTTPException(status_code=404, detail="Client not found")
    ensure_client_access(principal, client.id)

    items = _build_items(db, request)
    amount = money(request.amount)
    check_amount(amount, request, items)

    payment = Payment(
        transaction_id=generate_transaction_id(),
        client_id=client.id,
        amount=amount,
        tips=money(request.tips),
        commission=money(amount * COMMISSION_RATE / 100),
        payment_method=request.payment_method,
        status="completed" if request.payment_method == "cash" else "pending",
        notes=request.notes,
        idempotency_key=idempotency_key,
        request_fingerprint=fingerprint,
        duplicate_guard=None if idempotency_key else duplicate_guard(fingerprint),
        created_by=principal.subject,
    )
    payment.items = items
    db.add(payment)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent request with the same key or guard committed first
        db.rollback()
        existing = find_existing_payment(db, idempotency_key, fingerprint)
        if existing is None:
            raise
        return _replay(db, existing, fingerprint, principal)
    db.refresh(payment)

    logger.info(
        f"Payment {payment.id} created: {payment.transaction_id} "
        f"{payment.payment_method} {payment.amount} ({len(items)} items)"
    )
    record_audit(db, principal.subject, "create", "payments", payment.id,
                 new_data=serialize_payment(payment))

    client_secret = None
    if payment.payment_method == "stripe":
        client_secret = attach_intent(db, payment)
    return CheckoutResult(payment=payment, client_secret=client_secret)


def get_payment_or_404(db: Session, payment_id: int, message: str = "Payment not found") -> Payment:
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail=message)
    return payment


def retry_intent(db: Session, payment_id: int, principal: Principal) -> str:
    payment = db.get(Payment, payment_id)
    if payment is None or payment.payment_method != "stripe":
        raise HTTPException(status_code=404, detail="Stripe payment not found")
    ensure_client_access(principal, payment.client_id)
    if payment.status not in PAYABLE_STATUSES:
        raise HTTPException(status_code=409, detail=f"Payment is {payment.status}")
    return attach_intent(db, payment)


def _check_intent_matches(db: Session, payment: Payment, intent):
    metadata = intent.metadata or {}
    if (intent.amount != stripe_service.to_cents(payment.amount)
            or metadata.get("transaction_id") != payment.transaction_id):
        logger.warning(
            f"Intent {intent.id} (amount {intent.amount}, transaction "
            f"{metadata.get('transaction_id')}) does not match payment {payment.id}"
        )
        raise HTTPException(status_code=400, detail="Payment intent does not match this payment")

    owner = (
        db.query(Payment)
        .filter(Payment.stripe_payment_intent_id == intent.id, Payment.id != payment.id)
        .first()
    )
    if owner is not None:
        logger.warning(f"Intent {intent.id} already belongs to payment {owner.id}")
        raise HTTPException(status_code=400, detail="Payment intent belongs to another payment")


def confirm_payment(db: Session, payment_id: int, payment_intent_id: str,
                    principal: Principal) -> Payment:
    payment = db.get(Payment, payment_id)
    if payment is None or payment.payment_method != "stripe":
        raise HTTPException(status_code=404, detail="Stripe payment not found")
    ensure_client_access(principal, payment.client_id)

    if payment.stripe_payment_intent_id and payment.stripe_payment_intent_id != payment_intent_id:
        raise HTTPException(status_code=400, detail="Payment intent does not belong to this payment")
    if payment.status == "completed":
        return payment
    if payment.status not in PAYABLE_STATUSES:
        raise HTTPException(status_code=409, detail=f"Payment is {payment.status}")

    # Status comes from Stripe, not from the caller
    try:
        intent = stripe_service.retrieve_payment_intent(payment_intent_id)
    except stripe.error.StripeError as e:
        raise _stripe_failure(payment, e, "Failed to confirm Stripe payment")

    if intent.status != "succeeded":
        logger.info(f"Payment {payment.id} not confirmed, intent status {intent.status}")
        raise HTTPException(
            status_code=400,
            detail={"message": "Payment not completed", "status": intent.status},
        )
    _check_intent_matches(db, payment, intent)

    old_data = serialize_payment(payment)
    payment.stripe_payment_intent_id = intent.id
    payment.status = "completed"
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning(f"Intent {intent.id} was claimed by another payment during confirmation")
        raise HTTPException(status_code=400, detail="Payment intent belongs to another payment")
    db.refresh(payment)

    logger.info(f"Stripe payment confirmed: {payment.id} ({payment.transaction_id})")
    record_audit(db, principal.subject, "update", "payments", payment.id,
                 new_data=serialize_payment(payment), old_data=old_data)
    return payment


def refund_payment(db: Session, payment_id: int, principal: Principal) -> Payment:
    payment = get_payment_or_404(db, payment_id)
    if payment.status != "completed":
        raise HTTPException(status_code=409, detail=f"Only completed payments can be refunded, payment is {payment.status}")

    if payment.payment_method == "stripe":
        try:
            stripe_service.refund_payment(payment.stripe_payment_intent_id)
        except stripe.error.StripeError as e:
            raise _stripe_failure(payment, e, "Stripe refund failed")

    old_data = serialize_payment(payment)
    payment.status = "refunded"
    db.commit()
    db.refresh(payment)

    logger.info(f"Payment {payment.id} refunded ({payment.transaction_id})")
    record_audit(db, principal.subject, "refund", "payments", payment.id,
                 new_data=serialize_payment(payment), old_data=old_data)
    return payment


def apply_intent_event(db: Session, payment_intent_id: str, status: str) -> Optional[Payment]:
    """
    Apply a Stripe webhook outcome to the payment behind a PaymentIntent.

    ``completed`` is accepted from ``pending`` and ``failed``, since a
    declined intent can still succeed with another card. ``failed`` is
    accepted from ``pending`` only. Returns None for unknown intents.
    """
    payment = (
        db.query(Payment)
        .filter(Payment.stripe_payment_intent_id == payment_intent_id)
        .first()
    )
    if payment is None:
        logger.warning(f"Payment not found for Stripe intent {payment_intent_id}")
        return None
    allowed_from = PAYABLE_STATUSES if status == "completed" else ("pending",)
    if payment.status not in allowed_from:
        logger.info(f"Ignoring {status} event for payment {payment.id}, already {payment.status}")
        return payment

    old_data = serialize_payment(payment)
    payment.status = status
    db.commit()
    db.refresh(payment)
    logger.info(f"Payment {payment.id} marked {status} from Stripe webhook")
    record_audit(db, "stripe", "update", "payments", payment.id,
                 new_data=serialize_payment(payment), old_data=old_data)
    return payment


def quote(db: Session, request: QuoteRequest):
    lines = []
    for line in request.items:
        catalog_item = lookup_catalog_item(db, line.type, line.id)
        if catalog_item is None:
            raise HTTPException(status_code=422, detail=f"Unknown {line.type} id {line.id}")
        lines.append((line.id, line.type, catalog_item.name, catalog_item.price, line.quantity))
    return priced_cart(lines, request.discount_type, request.discount_value, request.tip).quote()
