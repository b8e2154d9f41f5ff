"""CaptureService — finalizes an order from the buyer's own client round-trip.

Races with the webhook path on the same order. Neither side reads-then-writes:
the ledger's conditional UPDATE decides the winner, and the loser derives its
answer from the row the winner completed.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.auth import Principal
from app.core.config import PaymentConfig
from app.core.exceptions import AlreadyProcessedError, AmountMismatchError, NotFoundError, PaymentDeclinedError
from app.db.models.payment_order import PaymentStatus
from app.integrations.gateway import PaymentGateway
from app.services import ledger

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CaptureResult:
    tier: str
    entitlement_expires_at: datetime | None
    already_processed: bool = False
    pending: bool = False


class CaptureService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        config: PaymentConfig,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.config = config

    async def capture_order(
        self,
        principal: Principal,
        gateway_order_id: str,
        now: datetime | None = None,
    ) -> CaptureResult:
        """Capture the principal's pending order and grant the entitlement.

        Raises:
            NotFoundError: no order with this id belongs to the principal
            AlreadyProcessedError: the order is no longer pending (carries the order)
            GatewayError: the capture call failed; the order stays pending
            AmountMismatchError: the gateway charged something other than the
                tier price; the order is marked failed
            PaymentDeclinedError: the gateway declined or failed the capture;
                the order is marked failed

        A ``PENDING`` capture grants nothing and returns ``pending=True``; the
        order stays pending until the capture webhook settles it.
        """
        async with self.session_factory() as session:
            order = await ledger.get_order_for_principal(session, principal.principal_id, gateway_order_id)
        if order is None:
            raise NotFoundError()
        if order.status != PaymentStatus.PENDING.value:
            raise AlreadyProcessedError(order)

        capture = await self.gateway.capture_order(gateway_order_id)

        expected_cents = self.config.price_for(order.tier)
        if capture.amount_cents != expected_cents or capture.currency != self.config.currency:
            async with self.session_factory() as session:
                marked = await ledger.mark_order_failed(session, order.id)
                await session.commit()
            logger.error(
                "capture_amount_mismatch",
                principal_id=order.principal_id,
                gateway_order_id=gateway_order_id,
                expected_cents=expected_cents,
                charged_cents=capture.amount_cents,
                charged_currency=capture.currency,
                marked_failed=marked,
            )
            raise AmountMismatchError()

        if capture.is_pending:
            # Funds not settled yet; the capture webhook completes or denies the order
            logger.warning(
                "capture_pending",
                principal_id=order.principal_id,
                gateway_order_id=gateway_order_id,
                capture_id=capture.capture_id,
            )
            return CaptureResult(tier=order.tier, entitlement_expires_at=None, pending=True)

        if not capture.is_completed:
            async with self.session_factory() as session:
                marked = await ledger.mark_order_failed(session, order.id)
                await session.commit()
            logger.error(
                "capture_declined",
                principal_id=order.principal_id,
                gateway_order_id=gateway_order_id,
                capture_status=capture.status,
                marked_failed=marked,
            )
            raise PaymentDeclinedError()

        now = now or datetime.now(UTC)
        async with self.session_factory() as session:
            expires_at = await ledger.promote_order(session, order, capture.capture_id, self.config, now=now)
            if expires_at is not None:
                await session.commit()
                logger.info("capture_completed", principal_id=order.principal_id, gateway_order_id=gateway_order_id)
                return CaptureResult(tier=order.tier, entitlement_expires_at=expires_at)

            # The webhook completed the order between our read and our update
            await session.rollback()
            current = await ledger.get_order_by_gateway_id(session, gateway_order_id)

        logger.info(
            "capture_lost_race",
            gateway_order_id=gateway_order_id,
            status=current.status if current else None,
        )
        if current is None or current.status != PaymentStatus.COMPLETED.value:
            raise AlreadyProcessedError(current or order)
        return CaptureResult(
            tier=current.tier,
            entitlement_expires_at=ledger.ensure_utc(current.entitlement_expires_at),
            already_processed=True,
        )
