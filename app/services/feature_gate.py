"""Server-side enforcement of the premium-gated stream features.

Full features (unlimited viewers, verified badge) come from a verified email
or a live entitlement. The client's claims are checked here rather than
trusted. Accepted starts are counted per platform in ``user_stats``.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import Principal
from app.core.config import PaymentConfig
from app.db.base import upsert_insert
from app.db.models.user_stats import UserStats
from app.services import ledger

logger = structlog.get_logger(__name__)

PLATFORMS: tuple[str, ...] = ("instagram", "tiktok", "facebook")


class StreamRejected(Exception):
    def __init__(self, status_code: int, message: str, max_viewer_count: int | None = None):
        self.status_code = status_code
        self.message = message
        self.max_viewer_count = max_viewer_count
        super().__init__(message)


@dataclass(frozen=True)
class PremiumStatus:
    is_premium: bool
    tier: str | None
    expires_at: datetime | None
    email_verified: bool

    @property
    def has_full_features(self) -> bool:
        return self.email_verified or self.is_premium


@dataclass(frozen=True)
class StreamAllowance:
    has_full_features: bool
    max_viewer_count: int
    can_use_verified: bool


async def get_premium_status(session: AsyncSession, principal: Principal, now: datetime | None = None) -> PremiumStatus:
    now = now or datetime.now(UTC)
    entitlement = await ledger.get_entitlement(session, principal.principal_id)
    live = ledger.is_entitlement_live(entitlement, now)
    return PremiumStatus(
        is_premium=live,
        tier=entitlement.tier if live else None,
        expires_at=ledger.ensure_utc(entitlement.expires_at) if live else None,
        email_verified=principal.email_verified,
    )


def check_stream_start(
    status: PremiumStatus,
    config: PaymentConfig,
    platform: str,
    viewer_count: int,
    is_verified: bool,
) -> StreamAllowance:
    """Validate a requested stream configuration against the principal's features.

    Raises StreamRejected with the HTTP status the caller should return.
    """
    if platform not in PLATFORMS:
        raise StreamRejected(400, "Invalid platform")
    if viewer_count < 0:
        raise StreamRejected(400, "Invalid viewer count")

    full = status.has_full_features
    if not full:
        if viewer_count > config.free_max_viewer_count:
            raise StreamRejected(
                403,
                "Viewer limit exceeded. Sign in and verify email or upgrade to premium.",
                max_viewer_count=config.free_max_viewer_count,
            )
        if is_verified:
            raise StreamRejected(403, "Verified badge requires email verification or premium.")

    if viewer_count > config.absolute_max_viewer_count:
        raise StreamRejected(400, "Viewer count too high")

    return StreamAllowance(
        has_full_features=full,
        max_viewer_count=config.absolute_max_viewer_count if full else config.free_max_viewer_count,
        can_use_verified=full,
    )


async def record_stream_start(
    session: AsyncSession, principal_id: str, platform: str, now: datetime | None = None
) -> None:
    """Count an accepted stream start against the principal's per-platform stats.

    Single upsert, so two concurrent first starts cannot both insert. Does
    not commit.
    """
    if platform not in PLATFORMS:
        raise ValueError(f"Unknown platform: {platform!r}")
    now = now or datetime.now(UTC)

    count_col = f"{platform}_live_count"
    last_col = f"{platform}_last_stream_at"
    table = UserStats.__table__

    first = {f"{p}_live_count": 0 for p in PLATFORMS}
    first.update({count_col: 1, last_col: now})

    stmt = upsert_insert(session, UserStats).values(
        principal_id=principal_id,
        total_live_stream_count=1,
        created_at=now,
        updated_at=now,
        **first,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["principal_id"],
        set_={
            count_col: table.c[count_col] + 1,
            last_col: now,
            "total_live_stream_count": table.c.total_live_stream_count + 1,
            "updated_at": now,
        },
    )
    await session.execute(stmt)
    logger.info("stream_start_recorded", principal_id=principal_id, platform=platform)


async def get_user_stats(session: AsyncSession, principal_id: str) -> UserStats | None:
    result = await session.execute(select(UserStats).where(UserStats.principal_id == principal_id))
    return result.scalar_one_or_none()
