"""Payment Ledger and Entitlement Store operations.

Every status transition is a conditional UPDATE guarded on the expected
current status. Its affected-row count is the only arbiter between the
capture round-trip and the webhook, so callers must treat a ``None``/``False``
result as "someone else already handled this order".

None of these functions commit. Callers own the transaction so that a ledger
transition and its entitlement write land together or not at all.
"""

import uuid
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import PaymentConfig
from app.db.base import upsert_insert
from app.db.models.entitlement import Entitlement
from app.db.models.payment_order import PaymentOrder, PaymentStatus

logger = structlog.get_logger(__name__)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from stores without tz support (SQLite)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def is_entitlement_live(entitlement: Entitlement | None, now: datetime | None = None) -> bool:
    """True when the entitlement is active and unexpired at server time ``now``."""
    if entitlement is None or not entitlement.is_active or entitlement.expires_at is None:
        return False
    now = now or datetime.now(UTC)
    return ensure_utc(entitlement.expires_at) > now


# ── Reads ───────────────────────────────────────────────────────────


async def get_order_for_principal(session: AsyncSession, principal_id: str, gateway_order_id: str) -> PaymentOrder | None:
    result = await session.execute(
        select(PaymentOrder).where(
            PaymentOrder.principal_id == principal_id,
            PaymentOrder.gateway_order_id == gateway_order_id,
        )
    )
    return result.scalar_one_or_none()


async def get_order_by_gateway_id(session: AsyncSession, gateway_order_id: str) -> PaymentOrder | None:
    result = await session.execute(select(PaymentOrder).where(PaymentOrder.gateway_order_id == gateway_order_id))
    return result.scalar_one_or_none()


async def get_order_by_idempotency_key(session: AsyncSession, principal_id: str, idempotency_key: str) -> PaymentOrder | None:
    result = await session.execute(
        select(PaymentOrder).where(
            PaymentOrder.principal_id == principal_id,
            PaymentOrder.idempotency_key == idempotency_key,
        )
    )
    return result.scalar_one_or_none()


async def get_order_by_key(session: AsyncSession, idempotency_key: str) -> PaymentOrder | None:
    """Idempotency keys are globally unique; this finds the owner of one."""
    result = await session.execute(select(PaymentOrder).where(PaymentOrder.idempotency_key == idempotency_key))
    return result.scalar_one_or_none()


async def get_entitlement(session: AsyncSession, principal_id: str) -> Entitlement | None:
    result = await session.execute(select(Entitlement).where(Entitlement.principal_id == principal_id))
    return result.scalar_one_or_none()


# ── Writes ──────────────────────────────────────────────────────────


def add_pending_order(
    session: AsyncSession,
    *,
    principal_id: str,
    gateway_order_id: str,
    tier: str,
    amount_cents: int,
    currency: str,
    idempotency_key: str,
    now: datetime | None = None,
) -> PaymentOrder:
    """Stage a new ``pending`` ledger row on the session (flushed on commit)."""
    order = PaymentOrder(
        id=str(uuid.uuid4()),
        principal_id=principal_id,
        gateway_order_id=gateway_order_id,
        tier=tier,
        amount_cents=amount_cents,
        currency=currency,
        status=PaymentStatus.PENDING.value,
        idempotency_key=idempotency_key,
        created_at=now or datetime.now(UTC),
    )
    session.add(order)
    return order


async def _transition(session: AsyncSession, order_id: str, expected: PaymentStatus, values: dict) -> bool:
    result = await session.execute(
        update(PaymentOrder)
        .where(PaymentOrder.id == order_id, PaymentOrder.status == expected.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_order_failed(session: AsyncSession, order_id: str) -> bool:
    """pending → failed. Returns False if the order was no longer pending."""
    return await _transition(session, order_id, PaymentStatus.PENDING, {"status": PaymentStatus.FAILED.value})


async def promote_order(
    session: AsyncSession,
    order: PaymentOrder,
    capture_id: str | None,
    config: PaymentConfig,
    now: datetime | None = None,
) -> datetime | None:
    """pending → completed, and grant or extend the principal's entitlement.

    The conditional UPDATE runs first so the transaction takes the write
    lock before reading the entitlement. A live entitlement is extended from
    its current expiry; otherwise the period starts at ``now``.

    Returns the new entitlement expiry, or None if the order was no longer
    pending (the caller lost the race and must roll back).
    """
    now = now or datetime.now(UTC)

    won = await _transition(
        session,
        order.id,
        PaymentStatus.PENDING,
        {
            "status": PaymentStatus.COMPLETED.value,
            "gateway_capture_id": capture_id,
            "completed_at": now,
        },
    )
    if not won:
        return None

    current = await get_entitlement(session, order.principal_id)
    extended = is_entitlement_live(current, now)
    if extended:
        started_at = ensure_utc(current.started_at) or now
        base = ensure_utc(current.expires_at)
    else:
        started_at = now
        base = now
    expires_at = base + timedelta(days=config.duration_for(order.tier))

    await session.execute(
        update(PaymentOrder)
        .where(PaymentOrder.id == order.id)
        .values(entitlement_expires_at=expires_at)
        .execution_options(synchronize_session=False)
    )
    await _upsert_entitlement(
        session,
        principal_id=order.principal_id,
        tier=order.tier,
        started_at=started_at,
        expires_at=expires_at,
        source_order_id=order.gateway_order_id,
        now=now,
    )

    logger.info(
        "entitlement_granted",
        principal_id=order.principal_id,
        gateway_order_id=order.gateway_order_id,
        tier=order.tier,
        expires_at=expires_at.isoformat(),
        extended=extended,
    )
    return expires_at


async def _upsert_entitlement(
    session: AsyncSession,
    *,
    principal_id: str,
    tier: str,
    started_at: datetime,
    expires_at: datetime,
    source_order_id: str,
    now: datetime,
) -> None:
    changes = {
        "is_active": True,
        "tier": tier,
        "started_at": started_at,
        "expires_at": expires_at,
        "source_order_id": source_order_id,
        "updated_at": now,
    }
    stmt = upsert_insert(session, Entitlement).values(principal_id=principal_id, created_at=now, **changes)
    stmt = stmt.on_conflict_do_update(index_elements=["principal_id"], set_=changes)
    await session.execute(stmt)


async def refund_order(session: AsyncSession, order: PaymentOrder, now: datetime | None = None) -> bool:
    """completed → refunded, and revoke the entitlement this order granted.

    The entitlement is cleared only while its ``source_order_id`` still
    points at this order, so refunding an older purchase never revokes a
    newer, independently paid one.

    A purchase made while premium was still live extends the existing
    expiry and takes over ``source_order_id``. Provenance is per row, not
    per day: refunding the newer order clears the whole entitlement,
    including the days the older order paid for, while refunding the
    older order leaves the extended expiry in place. Both over-revoke or
    under-revoke by at most one purchase window; splitting the expiry per
    order would need a grant history table.

    Returns False if the order was not ``completed``.
    """
    now = now or datetime.now(UTC)

    if not await _transition(session, order.id, PaymentStatus.COMPLETED, {"status": PaymentStatus.REFUNDED.value}):
        return False

    result = await session.execute(
        update(Entitlement)
        .where(
            Entitlement.principal_id == order.principal_id,
            Entitlement.source_order_id == order.gateway_order_id,
        )
        .values(is_active=False, expires_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    logger.info(
        "payment_refunded",
        principal_id=order.principal_id,
        gateway_order_id=order.gateway_order_id,
        entitlement_cleared=result.rowcount == 1,
    )
    return True
