"""Sliding-window attempt counter per (principal, action), backed by the database."""

from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.rate_limit_attempt import RateLimitAttempt

logger = structlog.get_logger(__name__)

CREATE_PAYMENT_ACTION = "create_payment"


class RateLimiter:
    """Counts recent attempts; tolerant of slight over-admission at window edges.

    Does not commit. The caller commits so the recorded attempt is durable
    before any expensive work it guards.
    """

    async def allow(
        self,
        session: AsyncSession,
        principal_id: str,
        action: str,
        max_attempts: int,
        window_seconds: int,
        now: datetime | None = None,
    ) -> bool:
        """Record and admit the attempt, or return False when the window is full.

        Rejected attempts are not recorded, so a blocked caller is let back in
        once older attempts age out of the window.
        """
        now = now or datetime.now(UTC)
        window_start = now - timedelta(seconds=window_seconds)

        result = await session.execute(
            select(func.count())
            .select_from(RateLimitAttempt)
            .where(
                RateLimitAttempt.principal_id == principal_id,
                RateLimitAttempt.action == action,
                RateLimitAttempt.attempted_at > window_start,
            )
        )
        attempts: int = result.scalar_one()

        if attempts >= max_attempts:
            logger.warning("rate_limit_exceeded", principal_id=principal_id, action=action, attempts=attempts)
            return False

        session.add(RateLimitAttempt(principal_id=principal_id, action=action, attempted_at=now))
        return True

    async def sweep(self, session: AsyncSession, older_than_hours: int = 24, now: datetime | None = None) -> int:
        """Delete attempts older than the cutoff. Returns the number of rows removed."""
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(hours=older_than_hours)

        result = await session.execute(delete(RateLimitAttempt).where(RateLimitAttempt.attempted_at < cutoff))
        logger.info("rate_limit_sweep", deleted=result.rowcount, cutoff=cutoff.isoformat())
        return result.rowcount
