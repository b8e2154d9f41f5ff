"""Capture round-trip vs. webhook on the same order.

Whatever the interleaving, the order is completed once and the entitlement
is granted exactly once.
"""

import asyncio
import json
from datetime import timedelta

import pytest

from app.core.exceptions import AlreadyProcessedError
from app.services import ledger
from app.services.capture_service import CaptureService
from app.services.order_service import OrderCreationService
from app.services.webhook_service import WebhookOutcome, WebhookReconciliationService

pytestmark = pytest.mark.integration


@pytest.fixture
def capture_service(session_factory, gateway, payment_config):
    return CaptureService(session_factory, gateway, payment_config)


@pytest.fixture
def webhooks(session_factory, gateway, payment_config):
    return WebhookReconciliationService(session_factory, gateway, payment_config)


@pytest.fixture
async def pending_order(session_factory, gateway, payment_config, verified_principal, now):
    service = OrderCreationService(session_factory, gateway, payment_config)
    created = await service.create_order(verified_principal, "monthly", "k1", now=now)
    return created.gateway_order_id


async def _state(session_factory, gateway_order_id):
    async with session_factory() as session:
        order = await ledger.get_order_by_gateway_id(session, gateway_order_id)
        entitlement = await ledger.get_entitlement(session, "u1")
    return order, entitlement


async def test_webhook_lands_while_capture_in_flight(
    capture_service, webhooks, session_factory, gateway, verified_principal, pending_order, make_capture_event, webhook_headers, now
):
    outcomes = []

    async def webhook_first(order_id):
        body = json.dumps(make_capture_event(order_id)).encode()
        outcomes.append(await webhooks.handle_notification(webhook_headers("WH-1"), body, now=now))

    gateway.on_capture = webhook_first

    result = await capture_service.capture_order(verified_principal, pending_order, now=now)

    assert outcomes == [WebhookOutcome.PROCESSED]
    assert result.already_processed is True
    assert result.tier == "monthly"
    assert result.entitlement_expires_at == now + timedelta(days=30)

    order, ent = await _state(session_factory, pending_order)
    assert order.status == "completed"
    assert ledger.ensure_utc(ent.expires_at) == now + timedelta(days=30)


async def test_webhook_after_capture_does_not_extend(
    capture_service, webhooks, session_factory, verified_principal, pending_order, make_capture_event, webhook_headers, now
):
    result = await capture_service.capture_order(verified_principal, pending_order, now=now)

    body = json.dumps(make_capture_event(pending_order)).encode()
    outcome = await webhooks.handle_notification(webhook_headers("WH-1"), body, now=now + timedelta(seconds=2))

    assert outcome is WebhookOutcome.IGNORED
    _, ent = await _state(session_factory, pending_order)
    assert ledger.ensure_utc(ent.expires_at) == result.entitlement_expires_at


async def test_concurrent_capture_and_webhook_grant_once(
    capture_service, webhooks, session_factory, verified_principal, pending_order, make_capture_event, webhook_headers, now
):
    body = json.dumps(make_capture_event(pending_order)).encode()

    result, outcome = await asyncio.gather(
        capture_service.capture_order(verified_principal, pending_order, now=now),
        webhooks.handle_notification(webhook_headers("WH-1"), body, now=now),
        return_exceptions=True,
    )

    # Exactly one side performed the transition
    if isinstance(result, AlreadyProcessedError):
        # The webhook finished before the capture even read the order
        assert outcome is WebhookOutcome.PROCESSED
    else:
        assert result.already_processed is (outcome is WebhookOutcome.PROCESSED)
        assert result.entitlement_expires_at == now + timedelta(days=30)

    order, ent = await _state(session_factory, pending_order)
    assert order.status == "completed"
    assert ledger.ensure_utc(ent.expires_at) == now + timedelta(days=30)


async def test_concurrent_duplicate_deliveries_processed_once(
    webhooks, session_factory, pending_order, make_capture_event, webhook_headers, now
):
    body = json.dumps(make_capture_event(pending_order)).encode()

    outcomes = await asyncio.gather(
        webhooks.handle_notification(webhook_headers("WH-1"), body, now=now),
        webhooks.handle_notification(webhook_headers("WH-1"), body, now=now),
    )

    assert sorted(o.value for o in outcomes) == ["duplicate", "processed"]
    _, ent = await _state(session_factory, pending_order)
    assert ledger.ensure_utc(ent.expires_at) == now + timedelta(days=30)


async def test_double_click_capture_grants_once(capture_service, session_factory, gateway, verified_principal, pending_order, now):
    first, second = await asyncio.gather(
        capture_service.capture_order(verified_principal, pending_order, now=now),
        capture_service.capture_order(verified_principal, pending_order, now=now),
        return_exceptions=True,
    )

    results = [r for r in (first, second) if not isinstance(r, BaseException)]
    assert results, (first, second)
    assert sum(1 for r in results if not r.already_processed) == 1

    _, ent = await _state(session_factory, pending_order)
    assert ledger.ensure_utc(ent.expires_at) == now + timedelta(days=30)


async def test_pending_capture_then_denied_webhook_never_grants(
    capture_service, webhooks, session_factory, gateway, verified_principal, pending_order, make_capture_event, webhook_headers, now
):
    gateway.capture_status = "PENDING"
    result = await capture_service.capture_order(verified_principal, pending_order, now=now)
    assert result.pending is True

    body = json.dumps(make_capture_event(pending_order, event_type="PAYMENT.CAPTURE.DENIED")).encode()
    outcome = await webhooks.handle_notification(webhook_headers("WH-1"), body, now=now + timedelta(hours=1))

    assert outcome is WebhookOutcome.PROCESSED
    order, ent = await _state(session_factory, pending_order)
    assert order.status == "failed"
    assert ent is None


async def test_pending_capture_settled_by_completed_webhook(
    capture_service, webhooks, session_factory, gateway, verified_principal, pending_order, make_capture_event, webhook_headers, now
):
    gateway.capture_status = "PENDING"
    await capture_service.capture_order(verified_principal, pending_order, now=now)

    settled = now + timedelta(hours=1)
    body = json.dumps(make_capture_event(pending_order)).encode()
    outcome = await webhooks.handle_notification(webhook_headers("WH-1"), body, now=settled)

    assert outcome is WebhookOutcome.PROCESSED
    order, ent = await _state(session_factory, pending_order)
    assert order.status == "completed"
    assert ledger.ensure_utc(ent.expires_at) == settled + timedelta(days=30)
