"""Liveness and readiness for the payments service."""

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select, text

from app.core.config import Settings, get_settings
from app.core.logging import SERVICE_NAME
from app.db.base import get_session_factory
from app.db.models import Entitlement, PaymentOrder, WebhookDelivery

logger = structlog.get_logger(__name__)

router = APIRouter()

# Tables the capture and webhook paths write to
_LEDGER_TABLES = (PaymentOrder, Entitlement, WebhookDelivery)


@router.get("/health")
async def health_check(request: Request):
    """Liveness probe. Returns 503 while draining after SIGTERM."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": SERVICE_NAME},
        )
    return {"status": "healthy", "service": SERVICE_NAME}


async def _check_database() -> dict[str, bool]:
    checks = {"database": False, "ledger_schema": False}
    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
            checks["database"] = True
            for model in _LEDGER_TABLES:
                await session.execute(select(model.__table__).limit(1))
            checks["ledger_schema"] = True
    except Exception as e:
        logger.error("readiness_database_check_failed", error=str(e), error_type=type(e).__name__)
    return checks


@router.get("/ready")
async def readiness_check(settings: Settings = Depends(get_settings)):
    """Readiness: the ledger database is reachable and its tables exist.

    Gateway configuration is reported but does not gate readiness. Without a
    webhook id every notification fails verification, so orders settle only
    through the capture round-trip.
    """
    checks = await _check_database()

    webhook_verification = bool(settings.paypal_webhook_id)
    if not webhook_verification:
        logger.warning("readiness_webhook_id_missing", paypal_mode=settings.paypal_mode)

    all_healthy = all(checks.values())
    return JSONResponse(
        status_code=200 if all_healthy else 503,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
            "gateway": {"mode": settings.paypal_mode, "webhook_verification": webhook_verification},
        },
    )
