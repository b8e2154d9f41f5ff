"""Payment routes — PayPal order creation, capture, and premium status."""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.deps import get_config, get_gateway, get_sessions, raise_http
from app.core.auth import Principal, require_auth
from app.core.config import PaymentConfig
from app.core.exceptions import AlreadyProcessedError, FakeLiveError
from app.db.models.payment_order import PaymentStatus
from app.integrations.gateway import PaymentGateway, format_amount
from app.services.capture_service import CaptureService
from app.services.feature_gate import get_premium_status
from app.services.ledger import ensure_utc
from app.services.order_service import OrderCreationService

logger = structlog.get_logger(__name__)

router = APIRouter()


# ── Request / Response schemas ──────────────────────────────────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateOrderRequest(_CamelModel):
    tier: str
    idempotency_key: str = Field(default="", alias="idempotencyKey")


class CreateOrderResponse(_CamelModel):
    order_id: str = Field(alias="orderId")
    amount: str  # decimal string, e.g. "4.99"
    currency: str
    tier: str


class CaptureOrderRequest(_CamelModel):
    order_id: str = Field(alias="orderId", min_length=1)


class CaptureOrderResponse(_CamelModel):
    success: bool
    premium_expires_at: datetime | None = Field(alias="premiumExpiresAt")
    tier: str
    already_processed: bool = Field(default=False, alias="alreadyProcessed")
    pending: bool = False


class PremiumStatusResponse(_CamelModel):
    is_premium: bool = Field(alias="isPremium")
    tier: str | None
    expires_at: datetime | None = Field(alias="expiresAt")
    email_verified: bool = Field(alias="emailVerified")
    has_full_features: bool = Field(alias="hasFullFeatures")


# ── Endpoints ───────────────────────────────────────────────────────


@router.post("/create-order", response_model=CreateOrderResponse)
async def create_order(
    body: CreateOrderRequest,
    principal: Principal = Depends(require_auth),
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
    gateway: PaymentGateway = Depends(get_gateway),
    config: PaymentConfig = Depends(get_config),
):
    """Open a PayPal order for a premium tier. Safe to retry with the same idempotency key."""
    service = OrderCreationService(sessions, gateway, config)
    try:
        created = await service.create_order(principal, body.tier, body.idempotency_key)
    except FakeLiveError as exc:
        raise_http(exc)

    return CreateOrderResponse(
        order_id=created.gateway_order_id,
        amount=format_amount(created.amount_cents),
        currency=created.currency,
        tier=created.tier,
    )


@router.post("/capture-order", response_model=CaptureOrderResponse)
async def capture_order(
    body: CaptureOrderRequest,
    response: Response,
    principal: Principal = Depends(require_auth),
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
    gateway: PaymentGateway = Depends(get_gateway),
    config: PaymentConfig = Depends(get_config),
):
    """Capture an approved order and grant premium.

    Replays against an already-completed order answer with the stored
    expiry; failed or refunded orders answer 409. A capture PayPal still
    holds as pending answers 202 without premium.
    """
    service = CaptureService(sessions, gateway, config)
    try:
        result = await service.capture_order(principal, body.order_id)
    except AlreadyProcessedError as exc:
        order = exc.order
        logger.info("capture_replay", gateway_order_id=order.gateway_order_id, status=order.status)
        if order.status != PaymentStatus.COMPLETED.value:
            raise HTTPException(status_code=409, detail=exc.message)
        return CaptureOrderResponse(
            success=True,
            premium_expires_at=ensure_utc(order.entitlement_expires_at),
            tier=order.tier,
            already_processed=True,
        )
    except FakeLiveError as exc:
        raise_http(exc)

    if result.pending:
        response.status_code = 202
        return CaptureOrderResponse(success=False, premium_expires_at=None, tier=result.tier, pending=True)

    return CaptureOrderResponse(
        success=True,
        premium_expires_at=result.entitlement_expires_at,
        tier=result.tier,
        already_processed=result.already_processed,
    )


@router.get("/status", response_model=PremiumStatusResponse)
async def premium_status(
    principal: Principal = Depends(require_auth),
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
):
    """Return the principal's premium state, evaluated against server time."""
    async with sessions() as session:
        status = await get_premium_status(session, principal)

    return PremiumStatusResponse(
        is_premium=status.is_premium,
        tier=status.tier,
        expires_at=status.expires_at,
        email_verified=status.email_verified,
        has_full_features=status.has_full_features,
    )
