"""WebhookReconciliationService — the gateway's asynchronous notifications.

Webhooks are the authoritative record of what the gateway did, and they
repair orders whose capture round-trip failed after the buyer was charged.

Pipeline per delivery:
1. Replay guard: a delivery id already on file is acknowledged untouched.
2. Authenticity: the gateway verifies the transmission signature.
3. One transaction: insert the sanitized delivery row (the next replay
   guard), then apply the business mutation. Both commit together, so a
   failed mutation leaves no delivery row and the gateway's retry is
   processed from scratch.
"""

import json
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import PaymentConfig
from app.core.exceptions import InvalidNotificationError, WebhookSignatureError
from app.db.models.payment_order import PaymentStatus
from app.db.models.webhook_delivery import WebhookDelivery
from app.integrations.gateway import PaymentGateway, parse_amount_cents
from app.services import ledger

logger = structlog.get_logger(__name__)

TRANSMISSION_ID_HEADER = "paypal-transmission-id"
TRANSMISSION_TIME_HEADER = "paypal-transmission-time"

EVENT_CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
EVENT_CAPTURE_REFUNDED = "PAYMENT.CAPTURE.REFUNDED"
EVENTS_CAPTURE_DENIED = frozenset({"PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"})


class WebhookOutcome(str, Enum):
    DUPLICATE = "duplicate"
    PROCESSED = "processed"
    IGNORED = "ignored"


def _as_dict(value: Any) -> dict[str, Any]:
    """Signed payloads are still untrusted in shape; non-objects read as empty."""
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def related_order_id(event: dict[str, Any]) -> str | None:
    resource = _as_dict(event.get("resource"))
    related = _as_dict(_as_dict(resource.get("supplementary_data")).get("related_ids"))
    return _as_str(related.get("order_id"))


def sanitize_event(event: dict[str, Any]) -> dict[str, Any]:
    """Keep only what the audit log needs; payer details never reach storage."""
    resource = _as_dict(event.get("resource"))
    return {
        "event_type": _as_str(event.get("event_type")),
        "resource_type": _as_str(event.get("resource_type")),
        "summary": _as_str(event.get("summary")),
        "amount": _as_dict(resource.get("amount")) or None,
        "status": _as_str(resource.get("status")),
        "order_id": related_order_id(event),
    }


class WebhookReconciliationService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        config: PaymentConfig,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.config = config

    async def handle_notification(
        self,
        headers: Mapping[str, str],
        raw_body: bytes,
        now: datetime | None = None,
    ) -> WebhookOutcome:
        """Process one gateway delivery.

        Returns the outcome for every acknowledged delivery, no-ops included.

        Raises:
            InvalidNotificationError: missing transmission id or unparseable body
            WebhookSignatureError: signature verification failed (nothing persisted)
        """
        now = now or datetime.now(UTC)
        lowered = {k.lower(): v for k, v in headers.items()}

        delivery_id = lowered.get(TRANSMISSION_ID_HEADER)
        if not delivery_id:
            raise InvalidNotificationError("Missing transmission ID")

        try:
            event = json.loads(raw_body)
        except ValueError as exc:
            raise InvalidNotificationError("Invalid payload") from exc
        if not isinstance(event, dict):
            raise InvalidNotificationError("Invalid payload")

        async with self.session_factory() as session:
            seen = await session.get(WebhookDelivery, delivery_id)
        if seen is not None:
            logger.info("webhook_duplicate_ignored", delivery_id=delivery_id)
            return WebhookOutcome.DUPLICATE

        if not await self.gateway.verify_notification_signature(lowered, event):
            logger.error("webhook_invalid_signature", delivery_id=delivery_id)
            raise WebhookSignatureError()

        event_type = _as_str(event.get("event_type")) or ""
        order_id = related_order_id(event)

        async with self.session_factory() as session:
            session.add(
                WebhookDelivery(
                    delivery_id=delivery_id,
                    transmission_time=lowered.get(TRANSMISSION_TIME_HEADER) or "",
                    event_type=event_type,
                    resource_type=_as_str(event.get("resource_type")),
                    gateway_order_id=order_id,
                    sanitized_payload=sanitize_event(event),
                    received_at=now,
                )
            )
            try:
                await session.flush()
            except IntegrityError:
                # Concurrent delivery of the same id won the insert
                await session.rollback()
                logger.info("webhook_duplicate_ignored", delivery_id=delivery_id, concurrent=True)
                return WebhookOutcome.DUPLICATE

            outcome = await self._dispatch(session, event_type, order_id, _as_dict(event.get("resource")), now)
            await session.commit()

        logger.info(
            "webhook_received",
            delivery_id=delivery_id,
            event_type=event_type,
            gateway_order_id=order_id,
            outcome=outcome.value,
        )
        return outcome

    async def _dispatch(
        self,
        session: AsyncSession,
        event_type: str,
        order_id: str | None,
        resource: dict[str, Any],
        now: datetime,
    ) -> WebhookOutcome:
        if event_type == EVENT_CAPTURE_COMPLETED:
            return await self._capture_completed(session, order_id, resource, now)
        if event_type == EVENT_CAPTURE_REFUNDED:
            return await self._capture_refunded(session, order_id, now)
        if event_type in EVENTS_CAPTURE_DENIED:
            return await self._capture_denied(session, order_id)
        return WebhookOutcome.IGNORED

    async def _capture_completed(
        self,
        session: AsyncSession,
        order_id: str | None,
        resource: dict[str, Any],
        now: datetime,
    ) -> WebhookOutcome:
        if not order_id:
            logger.warning("webhook_capture_missing_order_id")
            return WebhookOutcome.IGNORED

        order = await ledger.get_order_by_gateway_id(session, order_id)
        if order is None or order.status != PaymentStatus.PENDING.value:
            return WebhookOutcome.IGNORED

        amount = _as_dict(resource.get("amount"))
        try:
            charged_cents = parse_amount_cents(amount.get("value"))
        except ValueError:
            logger.warning("webhook_capture_invalid_amount", gateway_order_id=order_id)
            return WebhookOutcome.IGNORED

        expected_cents = self.config.price_for(order.tier)
        if charged_cents != expected_cents or amount.get("currency_code") != self.config.currency:
            # Left pending: a webhook alone never fails or grants a mismatched order
            logger.warning(
                "webhook_capture_amount_mismatch",
                gateway_order_id=order_id,
                expected_cents=expected_cents,
                charged_cents=charged_cents,
                charged_currency=amount.get("currency_code"),
            )
            return WebhookOutcome.IGNORED

        expires_at = await ledger.promote_order(session, order, _as_str(resource.get("id")), self.config, now=now)
        return WebhookOutcome.PROCESSED if expires_at is not None else WebhookOutcome.IGNORED

    async def _capture_refunded(self, session: AsyncSession, order_id: str | None, now: datetime) -> WebhookOutcome:
        if not order_id:
            logger.warning("webhook_refund_missing_order_id")
            return WebhookOutcome.IGNORED

        order = await ledger.get_order_by_gateway_id(session, order_id)
        if order is None:
            return WebhookOutcome.IGNORED

        if not await ledger.refund_order(session, order, now=now):
            logger.warning("webhook_refund_not_completed", gateway_order_id=order_id, status=order.status)
            return WebhookOutcome.IGNORED
        return WebhookOutcome.PROCESSED

    async def _capture_denied(self, session: AsyncSession, order_id: str | None) -> WebhookOutcome:
        if not order_id:
            return WebhookOutcome.IGNORED

        order = await ledger.get_order_by_gateway_id(session, order_id)
        if order is None:
            return WebhookOutcome.IGNORED

        if await ledger.mark_order_failed(session, order.id):
            logger.info("webhook_capture_denied", gateway_order_id=order_id)
            return WebhookOutcome.PROCESSED
        return WebhookOutcome.IGNORED
