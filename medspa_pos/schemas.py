from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class CartItem(BaseModel):
    id: int
    type: Literal["service", "product"]
    name: str
    price: Decimal = Field(ge=0)
    quantity: int = Field(ge=1)


class PaymentRequest(BaseModel):
    client_id: int
    amount: Decimal = Field(ge=1)
    payment_method: Literal["cash", "stripe", "card"]
    tips: Optional[Decimal] = Field(default=None, ge=0)
    discount_type: Literal["none", "percentage", "amount"] = "none"
    discount_value: Decimal = Field(default=Decimal("0"), ge=0)
    # Sent by older POS builds; the server decides the initial status
    status: Optional[str] = None
    notes: Optional[str] = None
    cart_items: List[CartItem] = []
    idempotency_key: Optional[str] = None

    @field_validator("payment_method")
    @classmethod
    def normalize_method(cls, value):
        return "stripe" if value == "card" else value


class ConfirmRequest(BaseModel):
    payment_intent_id: str = Field(min_length=1)


class QuoteItem(BaseModel):
    id: int
    type: Literal["service", "product"]
    quantity: int = Field(default=1, ge=1)


class QuoteRequest(BaseModel):
    items: List[QuoteItem]
    discount_type: Literal["none", "percentage", "amount"] = "none"
    discount_value: Decimal = Field(default=Decimal("0"), ge=0)
    tip: Decimal = Field(default=Decimal("0"), ge=0)


def _money(value):
    return float(value) if value is not None else 0.0


def _timestamp(value):
    return value.isoformat() if value else None


def serialize_item(item):
    return {
        "id": item.id,
        "item_type": item.item_type,
        "item_id": item.item_id,
        "item_name": item.item_name,
        "price": _money(item.price),
        "quantity": item.quantity,
        "subtotal": _money(item.subtotal),
    }


def serialize_payment(payment):
    client = payment.client
    return {
        "id": payment.id,
        "transaction_id": payment.transaction_id,
        "client_id": payment.client_id,
        "client": {"id": client.id, "name": client.name, "email": client.email} if client else None,
        "amount": _money(payment.amount),
        "tips": _money(payment.tips),
        "commission": _money(payment.commission),
        "payment_method": payment.payment_method,
        "status": payment.status,
        "stripe_payment_intent_id": payment.stripe_payment_intent_id,
        "notes": payment.notes,
        "created_at": _timestamp(payment.created_at),
        "updated_at": _timestamp(payment.updated_at),
        "payment_items": [serialize_item(item) for item in payment.items],
        "payment_items_count": len(payment.items),
    }


def serialize_audit_log(log):
    return {
        "id": log.id,
        "user_id": log.user_id,
        "action": log.action,
        "table_name": log.table_name,
        "record_id": log.record_id,
        "old_data": log.old_data,
        "new_data": log.new_data,
        "created_at": _timestamp(log.created_at),
    }


def serialize_alert(alert):
    return {
        "id": alert.id,
        "title": alert.title,
        "description": alert.description,
        "type": alert.type,
        "priority": alert.priority,
        "status": alert.status,
        "category": alert.category,
        "affected_items": alert.affected_items,
        "due_date": alert.due_date.isoformat() if alert.due_date else None,
        "assigned_to": alert.assigned_to,
        "created_at": _timestamp(alert.created_at),
    }


def envelope(rows, **extra):
    """The one list shape every endpoint answers with."""
    return {"data": rows, "total": extra.pop("total", len(rows)), **extra}


def unwrap_list(payload):
    """
    Normalize the list envelopes older responses used:
    ``[...]``, ``{"data": [...]}`` and ``{"data": {"data": [...]}}``.
    """
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get("data"), list):
            return data["data"]
    return []
