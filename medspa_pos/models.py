from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Boolean, Column, Date, DateTime, ForeignKey, Index, Integer,
    Numeric, String, Text,
)
from sqlalchemy.orm import relationship

from medspa_pos.database import Base

PAYMENT_METHODS = ("cash", "stripe")
PAYMENT_STATUSES = ("pending", "completed", "refunded", "failed")
ITEM_TYPES = ("service", "product")


def utcnow():
    # Naive UTC, the way the columns store it
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Client(Base):
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String)
    phone = Column(String)
    user_id = Column(String, index=True)           # auth subject of the client login
    created_at = Column(DateTime, default=utcnow)

    payments = relationship("Payment", back_populates="client")


class Service(Base):
    __tablename__ = "services"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    active = Column(Boolean, default=True, nullable=False)


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    active = Column(Boolean, default=True, nullable=False)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    transaction_id = Column(String, unique=True, nullable=False)   # TXN-<HEX>-<unix ts>
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    tips = Column(Numeric(10, 2), default=0, nullable=False)
    commission = Column(Numeric(10, 2), default=0, nullable=False)
    payment_method = Column(String, nullable=False)                # cash | stripe
    status = Column(String, nullable=False, index=True)            # pending | completed | refunded | failed
    stripe_payment_intent_id = Column(String, unique=True, nullable=True)
    notes = Column(Text)
    idempotency_key = Column(String, unique=True, nullable=True)
    request_fingerprint = Column(String(64), index=True)
    duplicate_guard = Column(String, unique=True, nullable=True)   # <fingerprint>:<window bucket>, keyless requests only
    created_by = Column(String)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    client = relationship("Client", back_populates="payments")
    items = relationship(
        "PaymentItem",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="PaymentItem.id",
    )


class PaymentItem(Base):
    __tablename__ = "payment_items"
    __table_args__ = (Index("ix_payment_items_item", "item_type", "item_id"),)

    id = Column(Integer, primary_key=True)
    payment_id = Column(
        Integer, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_type = Column(String, nullable=False)     # service | product
    item_id = Column(Integer, nullable=False)      # not a strict FK, depends on item_type
    item_name = Column(String, nullable=False)     # catalog name at sale time
    price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)

    payment = relationship("Payment", back_populates="items")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    user_id = Column(String, index=True)
    action = Column(String, nullable=False, index=True)
    table_name = Column(String, nullable=False)
    record_id = Column(Integer)
    old_data = Column(JSON)
    new_data = Column(JSON)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class ComplianceAlert(Base):
    __tablename__ = "compliance_alerts"

    id = Column(Integer, primary_key=True)
    title = Column(String, nullable=False)
    description = Column(Text)
    type = Column(String)
    priority = Column(String, default="medium")    # low | medium | high | critical
    status = Column(String, default="active")      # active | resolved | dismissed
    category = Column(String)
    affected_items = Column(Integer, default=0)
    due_date = Column(Date)
    assigned_to = Column(String)
    created_at = Column(DateTime, default=utcnow, nullable=False)
