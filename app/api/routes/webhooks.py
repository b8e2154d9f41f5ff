"""Gateway webhook route — signature-verified, replay-guarded PayPal notifications."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.deps import get_config, get_gateway, get_sessions, raise_http
from app.core.config import PaymentConfig
from app.core.exceptions import FakeLiveError
from app.integrations.gateway import PaymentGateway
from app.services.webhook_service import WebhookReconciliationService

router = APIRouter()


@router.post("/paypal")
@router.post("/gateway", include_in_schema=False)
async def paypal_webhook(
    request: Request,
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
    gateway: PaymentGateway = Depends(get_gateway),
    config: PaymentConfig = Depends(get_config),
):
    """Reconcile a PayPal notification.

    Every persisted delivery is acknowledged with 200, including duplicates
    and deliberate no-ops, so PayPal does not retry or disable the hook.
    """
    body = await request.body()
    service = WebhookReconciliationService(sessions, gateway, config)
    try:
        outcome = await service.handle_notification(request.headers, body)
    except FakeLiveError as exc:
        raise_http(exc)

    return {"status": "ok", "outcome": outcome.value}
