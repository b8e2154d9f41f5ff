"""Entitlement model — current premium state of a principal."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from app.db.base import Base


class Entitlement(Base):
    __tablename__ = "entitlements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    principal_id = Column(String(255), unique=True, nullable=False, index=True)

    # Cached flag; only authoritative together with expires_at > server now
    is_active = Column(Boolean, nullable=False, default=False)
    tier = Column(String(20), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    # Gateway order id of the payment that last granted or extended this row
    source_order_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
