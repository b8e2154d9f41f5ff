"""PaymentOrder model — one attempted premium purchase."""

from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from app.db.base import Base


class PaymentStatus(str, Enum):
    """Payment lifecycle states. Transitions only move forward."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentOrder(Base):
    __tablename__ = "payment_orders"
    __table_args__ = (UniqueConstraint("principal_id", "idempotency_key", name="uq_payment_orders_principal_key"),)

    id = Column(String(36), primary_key=True)
    principal_id = Column(String(255), nullable=False, index=True)

    # Gateway references
    gateway_order_id = Column(String(255), unique=True, nullable=False, index=True)
    gateway_capture_id = Column(String(255), nullable=True)

    # Purchase (amount in cents, always taken from the server-side price table)
    tier = Column(String(20), nullable=False)  # monthly | yearly
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    idempotency_key = Column(String(255), unique=True, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    completed_at = Column(DateTime(timezone=True), nullable=True)
    entitlement_expires_at = Column(DateTime(timezone=True), nullable=True)
