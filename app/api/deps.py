"""Shared FastAPI dependencies for the payment routes.

Route handlers never build collaborators themselves; tests swap these out
through ``app.dependency_overrides``.
"""

from functools import lru_cache
from typing import NoReturn

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import PaymentConfig, get_payment_config, get_settings
from app.core.exceptions import FakeLiveError, GatewayError
from app.db.base import get_session_factory
from app.integrations.gateway import PaymentGateway
from app.integrations.paypal import PayPalClient


@lru_cache
def _paypal_client() -> PayPalClient:
    return PayPalClient.from_settings(get_settings())


def get_gateway() -> PaymentGateway:
    """The process-wide PayPal client (shares its cached OAuth token)."""
    return _paypal_client()


def get_config() -> PaymentConfig:
    return get_payment_config()


def get_sessions() -> async_sessionmaker[AsyncSession]:
    return get_session_factory()


def raise_http(exc: FakeLiveError) -> NoReturn:
    """Translate a domain error into the HTTPException the global handler logs.

    Gateway failures are reported generically; the detail stays in the logs.
    """
    if isinstance(exc, GatewayError):
        raise HTTPException(status_code=exc.status_code, detail=GatewayError.__doc__.strip()) from exc
    raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
