"""UserStats model — per-platform live stream counters for a principal."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String

from app.db.base import Base


class UserStats(Base):
    __tablename__ = "user_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    principal_id = Column(String(255), unique=True, nullable=False, index=True)

    instagram_live_count = Column(Integer, nullable=False, default=0)
    instagram_last_stream_at = Column(DateTime(timezone=True), nullable=True)

    tiktok_live_count = Column(Integer, nullable=False, default=0)
    tiktok_last_stream_at = Column(DateTime(timezone=True), nullable=True)

    facebook_live_count = Column(Integer, nullable=False, default=0)
    facebook_last_stream_at = Column(DateTime(timezone=True), nullable=True)

    total_live_stream_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
