import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Response
from sqlalchemy.orm import Session

from medspa_pos import checkout
from medspa_pos.auth import Principal, ensure_client_access, require_roles
from medspa_pos.database import get_db
from medspa_pos.models import Payment
from medspa_pos.receipts import render_receipt
from medspa_pos.schemas import (
    ConfirmRequest, PaymentRequest, QuoteRequest, envelope, serialize_payment,
)

logger = logging.getLogger(__name__)

router = APIRouter()

CHECKOUT_ROLES = ("admin", "reception", "provider", "client")
STAFF_ROLES = ("admin", "reception", "provider")


@router.post("/payments", status_code=201)
def create_payment_api(
    request: PaymentRequest,
    response: Response,
    idempotency_key: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles(*CHECKOUT_ROLES)),
):
    logger.info(
        f"Checkout received from {principal.subject}: client {request.client_id}, "
        f"{request.payment_method} {request.amount}, {len(request.cart_items)} items"
    )
    result = checkout.create_checkout(db, request, principal, idempotency_key=idempotency_key)

    payment = result.payment
    if result.replayed:
        response.status_code = 200
        message = "Payment already recorded"
    elif payment.payment_method == "stripe":
        message = "Stripe payment initiated"
    else:
        message = "Cash payment completed"

    body = {
        "message": message,
        "payment": serialize_payment(payment),
        "payment_id": payment.id,
        "replayed": result.replayed,
    }
    if result.client_secret:
        body["client_secret"] = result.client_secret
    return body


@router.get("/payments")
def list_payments(
    status: Optional[str] = None,
    payment_method: Optional[str] = None,
    client_id: Optional[int] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles(*CHECKOUT_ROLES)),
):
    query = db.query(Payment)
    if principal.role == "client":
        query = query.filter(Payment.client_id == principal.client_id)
    elif client_id:
        query = query.filter(Payment.client_id == client_id)
    if status and status != "All":
        query = query.filter(Payment.status == status)
    if payment_method:
        query = query.filter(Payment.payment_method == payment_method)

    payments = query.order_by(Payment.created_at.desc(), Payment.id.desc()).all()
    return envelope([serialize_payment(p) for p in payments])


@router.get("/payments/{payment_id}")
def get_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles(*CHECKOUT_ROLES)),
):
    payment = checkout.get_payment_or_404(db, payment_id)
    ensure_client_access(principal, payment.client_id)
    return serialize_payment(payment)


@router.post("/payments/{payment_id}/confirm")
@router.post("/payments/{payment_id}/confirm-stripe")
def confirm_payment_api(
    payment_id: int,
    request: ConfirmRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles(*CHECKOUT_ROLES)),
):
    payment = checkout.confirm_payment(db, payment_id, request.payment_intent_id, principal)
    return {
        "message": "Payment completed successfully",
        "payment": serialize_payment(payment),
        "payment_id": payment.id,
    }


@router.post("/payments/{payment_id}/intent")
def retry_intent_api(
    payment_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles(*CHECKOUT_ROLES)),
):
    client_secret = checkout.retry_intent(db, payment_id, principal)
    return {"payment_id": payment_id, "client_secret": client_secret}


@router.post("/payments/{payment_id}/refund")
def refund(
    payment_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles("admin", "reception")),
):
    payment = checkout.refund_payment(db, payment_id, principal)
    return {"status": "refunded", "payment": serialize_payment(payment)}


@router.get("/payments/{payment_id}/receipt")
def receipt(
    payment_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles(*CHECKOUT_ROLES)),
):
    payment = checkout.get_payment_or_404(db, payment_id)
    ensure_client_access(principal, payment.client_id)
    return Response(
        content=render_receipt(payment),
        media_type="application/pdf",
        headers={"Content-Disposition": f"attachment; filename=receipt-{payment.id}.pdf"},
    )


@router.post("/pos/quote")
def quote_api(
    request: QuoteRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles(*STAFF_ROLES)),
):
    return checkout.quote(db, request).as_dict()
