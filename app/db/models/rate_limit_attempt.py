"""RateLimitAttempt model — one evaluated attempt of a throttled action."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Index, String

from app.db.base import Base


class RateLimitAttempt(Base):
    __tablename__ = "rate_limit_attempts"
    __table_args__ = (Index("ix_rate_limit_attempts_lookup", "principal_id", "action", "attempted_at"),)

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    principal_id = Column(String(255), nullable=False)
    action = Column(String(50), nullable=False)  # create_payment, ...
    attempted_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
