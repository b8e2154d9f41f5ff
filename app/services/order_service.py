"""OrderCreationService — opens a gateway order for a premium purchase.

Checks run cheapest-first and every rejection happens before the gateway is
called. The ledger row is written only after the gateway has returned an
order id, so a failed or timed-out gateway call leaves nothing behind.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.auth import Principal
from app.core.config import TIERS, PaymentConfig
from app.core.exceptions import (
    AlreadyEntitledError,
    EmailNotVerifiedError,
    RateLimitedError,
    ValidationError,
)
from app.db.models.payment_order import PaymentOrder
from app.integrations.gateway import PaymentGateway
from app.services import ledger
from app.services.rate_limiter import CREATE_PAYMENT_ACTION, RateLimiter

logger = structlog.get_logger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 255


@dataclass(frozen=True)
class OrderCreated:
    gateway_order_id: str
    amount_cents: int
    currency: str
    tier: str
    reused: bool = False

    @classmethod
    def from_order(cls, order: PaymentOrder, reused: bool) -> "OrderCreated":
        return cls(
            gateway_order_id=order.gateway_order_id,
            amount_cents=order.amount_cents,
            currency=order.currency,
            tier=order.tier,
            reused=reused,
        )


class OrderCreationService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        config: PaymentConfig,
        rate_limiter: RateLimiter | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.config = config
        self.rate_limiter = rate_limiter or RateLimiter()

    async def create_order(
        self,
        principal: Principal,
        tier: str,
        idempotency_key: str,
        now: datetime | None = None,
    ) -> OrderCreated:
        """Open (or re-return) the gateway order for this purchase attempt.

        Raises:
            ValidationError: unknown tier, missing/oversized idempotency key,
                or a key already used by another principal
            EmailNotVerifiedError: principal has not verified their email
            RateLimitedError: too many create attempts in the window
            AlreadyEntitledError: principal already holds live premium
            GatewayError: the gateway could not open the order
        """
        now = now or datetime.now(UTC)

        if tier not in TIERS:
            raise ValidationError("Invalid tier")
        if not idempotency_key or len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise ValidationError("Invalid idempotency key")
        if not principal.email_verified:
            raise EmailNotVerifiedError()

        principal_id = principal.principal_id

        async with self.session_factory() as session:
            existing = await ledger.get_order_by_key(session, idempotency_key)
            if existing is not None and existing.principal_id != principal_id:
                logger.warning("idempotency_key_conflict", principal_id=principal_id)
                raise ValidationError("Idempotency key already used")

            allowed = await self.rate_limiter.allow(
                session,
                principal_id,
                CREATE_PAYMENT_ACTION,
                self.config.create_payment_max_attempts,
                self.config.create_payment_window_seconds,
                now=now,
            )
            if not allowed:
                raise RateLimitedError()
            await session.commit()

            if existing is not None:
                logger.info(
                    "order_idempotent_replay",
                    principal_id=principal_id,
                    gateway_order_id=existing.gateway_order_id,
                )
                return OrderCreated.from_order(existing, reused=True)

            entitlement = await ledger.get_entitlement(session, principal_id)
            if ledger.is_entitlement_live(entitlement, now):
                raise AlreadyEntitledError()

        amount_cents = self.config.price_for(tier)
        gateway_order = await self.gateway.create_order(
            amount_cents=amount_cents,
            currency=self.config.currency,
            description=f"FakeLive Premium - {tier}",
            reference_id=principal_id,
            request_id=idempotency_key,
        )

        async with self.session_factory() as session:
            order = ledger.add_pending_order(
                session,
                principal_id=principal_id,
                gateway_order_id=gateway_order.order_id,
                tier=tier,
                amount_cents=amount_cents,
                currency=self.config.currency,
                idempotency_key=idempotency_key,
                now=now,
            )
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent request with the same key committed first
                await session.rollback()
                existing = await ledger.get_order_by_idempotency_key(session, principal_id, idempotency_key)
                if existing is None:
                    raise ValidationError("Idempotency key already used")
                logger.info(
                    "order_idempotent_race",
                    principal_id=principal_id,
                    gateway_order_id=existing.gateway_order_id,
                    orphaned_gateway_order_id=gateway_order.order_id,
                )
                return OrderCreated.from_order(existing, reused=True)

        logger.info(
            "order_created",
            principal_id=principal_id,
            gateway_order_id=order.gateway_order_id,
            tier=tier,
            amount_cents=amount_cents,
        )
        return OrderCreated.from_order(order, reused=False)
