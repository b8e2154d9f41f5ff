"""Tests for the ledger's guarded transitions and entitlement writes."""

from datetime import timedelta

import pytest

from app.db.models import Entitlement, PaymentOrder
from app.services import ledger

pytestmark = pytest.mark.unit


async def _add_order(session_factory, now, gateway_order_id="O-1", tier="monthly", principal_id="u1", status="pending"):
    async with session_factory() as session:
        order = ledger.add_pending_order(
            session,
            principal_id=principal_id,
            gateway_order_id=gateway_order_id,
            tier=tier,
            amount_cents=499 if tier == "monthly" else 2999,
            currency="USD",
            idempotency_key=f"key-{gateway_order_id}",
            now=now,
        )
        order.status = status
        await session.commit()
    return order


async def _reload(session_factory, gateway_order_id):
    async with session_factory() as session:
        return await ledger.get_order_by_gateway_id(session, gateway_order_id)


async def _entitlement(session_factory, principal_id="u1"):
    async with session_factory() as session:
        return await ledger.get_entitlement(session, principal_id)


def test_ensure_utc_attaches_utc_to_naive(now):
    naive = now.replace(tzinfo=None)
    assert ledger.ensure_utc(naive) == now
    assert ledger.ensure_utc(now) is now
    assert ledger.ensure_utc(None) is None


def test_is_entitlement_live(now):
    live = Entitlement(principal_id="u1", is_active=True, expires_at=now + timedelta(seconds=1))
    expired = Entitlement(principal_id="u1", is_active=True, expires_at=now)
    inactive = Entitlement(principal_id="u1", is_active=False, expires_at=now + timedelta(days=1))
    cleared = Entitlement(principal_id="u1", is_active=True, expires_at=None)

    assert ledger.is_entitlement_live(live, now)
    assert not ledger.is_entitlement_live(expired, now)
    assert not ledger.is_entitlement_live(inactive, now)
    assert not ledger.is_entitlement_live(cleared, now)
    assert not ledger.is_entitlement_live(None, now)


async def test_promote_grants_entitlement_for_tier_duration(session_factory, payment_config, now):
    order = await _add_order(session_factory, now)

    async with session_factory() as session:
        expires_at = await ledger.promote_order(session, order, "CAP-1", payment_config, now=now)
        await session.commit()

    assert expires_at == now + timedelta(days=30)

    stored = await _reload(session_factory, "O-1")
    assert stored.status == "completed"
    assert stored.gateway_capture_id == "CAP-1"
    assert ledger.ensure_utc(stored.completed_at) == now
    assert ledger.ensure_utc(stored.entitlement_expires_at) == expires_at

    ent = await _entitlement(session_factory)
    assert ent.is_active is True
    assert ent.tier == "monthly"
    assert ledger.ensure_utc(ent.expires_at) == expires_at
    assert ent.source_order_id == "O-1"


async def test_promote_twice_second_loses(session_factory, payment_config, now):
    order = await _add_order(session_factory, now)

    async with session_factory() as session:
        first = await ledger.promote_order(session, order, "CAP-1", payment_config, now=now)
        await session.commit()
    async with session_factory() as session:
        second = await ledger.promote_order(session, order, "CAP-1", payment_config, now=now + timedelta(days=1))
        await session.rollback()

    assert first is not None
    assert second is None
    ent = await _entitlement(session_factory)
    assert ledger.ensure_utc(ent.expires_at) == first


async def test_promote_extends_live_entitlement_from_current_expiry(session_factory, payment_config, now):
    first = await _add_order(session_factory, now, gateway_order_id="O-1", tier="monthly")
    second = await _add_order(session_factory, now, gateway_order_id="O-2", tier="yearly")

    async with session_factory() as session:
        await ledger.promote_order(session, first, "CAP-1", payment_config, now=now)
        await session.commit()

    later = now + timedelta(days=10)
    async with session_factory() as session:
        expires_at = await ledger.promote_order(session, second, "CAP-2", payment_config, now=later)
        await session.commit()

    assert expires_at == now + timedelta(days=30 + 365)
    ent = await _entitlement(session_factory)
    assert ent.tier == "yearly"
    assert ent.source_order_id == "O-2"
    assert ledger.ensure_utc(ent.started_at) == now


async def test_promote_after_expiry_restarts_period(session_factory, payment_config, now):
    first = await _add_order(session_factory, now, gateway_order_id="O-1")
    second = await _add_order(session_factory, now, gateway_order_id="O-2")

    async with session_factory() as session:
        await ledger.promote_order(session, first, "CAP-1", payment_config, now=now)
        await session.commit()

    later = now + timedelta(days=45)
    async with session_factory() as session:
        expires_at = await ledger.promote_order(session, second, "CAP-2", payment_config, now=later)
        await session.commit()

    assert expires_at == later + timedelta(days=30)
    ent = await _entitlement(session_factory)
    assert ledger.ensure_utc(ent.started_at) == later


async def test_mark_failed_only_from_pending(session_factory, now):
    pending = await _add_order(session_factory, now, gateway_order_id="O-1")
    completed = await _add_order(session_factory, now, gateway_order_id="O-2", status="completed")

    async with session_factory() as session:
        assert await ledger.mark_order_failed(session, pending.id) is True
        assert await ledger.mark_order_failed(session, completed.id) is False
        assert await ledger.mark_order_failed(session, pending.id) is False
        await session.commit()

    assert (await _reload(session_factory, "O-1")).status == "failed"
    assert (await _reload(session_factory, "O-2")).status == "completed"


async def test_refund_clears_entitlement_granted_by_order(session_factory, payment_config, now):
    order = await _add_order(session_factory, now)
    async with session_factory() as session:
        await ledger.promote_order(session, order, "CAP-1", payment_config, now=now)
        await session.commit()

    async with session_factory() as session:
        assert await ledger.refund_order(session, order, now=now + timedelta(days=2)) is True
        await session.commit()

    assert (await _reload(session_factory, "O-1")).status == "refunded"
    ent = await _entitlement(session_factory)
    assert ent.is_active is False
    assert ent.expires_at is None


async def test_refund_of_pending_order_is_rejected(session_factory, now):
    order = await _add_order(session_factory, now)

    async with session_factory() as session:
        assert await ledger.refund_order(session, order, now=now) is False
        await session.commit()

    assert (await _reload(session_factory, "O-1")).status == "pending"


async def test_refund_of_superseded_order_keeps_newer_entitlement(session_factory, payment_config, now):
    old = await _add_order(session_factory, now, gateway_order_id="O-1")
    new = await _add_order(session_factory, now, gateway_order_id="O-2")

    async with session_factory() as session:
        await ledger.promote_order(session, old, "CAP-1", payment_config, now=now)
        await session.commit()
    async with session_factory() as session:
        expires_at = await ledger.promote_order(session, new, "CAP-2", payment_config, now=now + timedelta(days=1))
        await session.commit()

    async with session_factory() as session:
        assert await ledger.refund_order(session, old, now=now + timedelta(days=2)) is True
        await session.commit()

    ent = await _entitlement(session_factory)
    assert ent.is_active is True
    assert ent.source_order_id == "O-2"
    assert ledger.ensure_utc(ent.expires_at) == expires_at


async def test_refund_of_extending_order_revokes_whole_entitlement(session_factory, payment_config, now):
    old = await _add_order(session_factory, now, gateway_order_id="O-1")
    new = await _add_order(session_factory, now, gateway_order_id="O-2")

    async with session_factory() as session:
        await ledger.promote_order(session, old, "CAP-1", payment_config, now=now)
        await session.commit()
    async with session_factory() as session:
        expires_at = await ledger.promote_order(session, new, "CAP-2", payment_config, now=now + timedelta(days=1))
        await session.commit()
    # Extended from the first period, not restarted
    assert expires_at == now + timedelta(days=60)

    async with session_factory() as session:
        assert await ledger.refund_order(session, new, now=now + timedelta(days=2)) is True
        await session.commit()

    # The days O-1 paid for go with it; O-1 itself stays completed
    ent = await _entitlement(session_factory)
    assert ent.is_active is False
    assert ent.expires_at is None
    assert (await _reload(session_factory, "O-1")).status == "completed"
    assert (await _reload(session_factory, "O-2")).status == "refunded"


async def test_get_order_for_principal_scopes_by_owner(session_factory, now):
    await _add_order(session_factory, now, gateway_order_id="O-1", principal_id="u1")

    async with session_factory() as session:
        assert await ledger.get_order_for_principal(session, "u1", "O-1") is not None
        assert await ledger.get_order_for_principal(session, "u2", "O-1") is None
        assert isinstance(await ledger.get_order_by_idempotency_key(session, "u1", "key-O-1"), PaymentOrder)
