"""WebhookDelivery model — audit record and replay guard for gateway notifications."""

from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, String

from app.db.base import Base


class WebhookDelivery(Base):
    """One inbound gateway notification, keyed by the gateway transmission id.

    Insert-only. The primary key doubles as the replay guard: a second
    insert of the same delivery id fails on the constraint.
    """

    __tablename__ = "webhook_deliveries"

    delivery_id = Column(String(255), primary_key=True)
    transmission_time = Column(String(64), nullable=False, default="")
    event_type = Column(String(100), nullable=False)
    resource_type = Column(String(100), nullable=True)
    gateway_order_id = Column(String(255), nullable=True, index=True)

    # No payer fields: event type, amount, status and order id only
    sanitized_payload = Column(JSON, nullable=False, default=dict)

    received_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
