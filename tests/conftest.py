"""Shared test fixtures for all test groups."""

import itertools
import os
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.auth import Principal
from app.core.config import PaymentConfig, Settings
from app.core.exceptions import GatewayError
from app.db.base import Base, engine_options
from app.integrations.gateway import GatewayCapture, GatewayOrder

# Set TEST_DATABASE_URL to run the store-backed tests against PostgreSQL
_TEST_DB_URL = os.getenv("TEST_DATABASE_URL")


class GatewayFake:
    """Recording PaymentGateway double.

    Charges exactly what the order was opened for unless a test overrides
    ``charged_cents``/``charged_currency``. ``on_capture`` runs while the
    capture call is "in flight", which lets tests interleave a webhook.
    """

    def __init__(self):
        self.calls: list[tuple] = []
        self.orders: dict[str, tuple[int, str]] = {}
        self.charged_cents: int | None = None
        self.charged_currency: str | None = None
        self.capture_status = "COMPLETED"
        self.fail_create = False
        self.fail_capture = False
        self.signature_valid = True
        self.on_capture: Callable[[str], Awaitable[None]] | None = None
        self._ids = itertools.count(1)

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    async def get_access_token(self) -> str:
        self.calls.append(("get_access_token",))
        return "fake-access-token"

    async def create_order(self, amount_cents, currency, description, reference_id, request_id) -> GatewayOrder:
        self.calls.append(("create_order", amount_cents, currency, reference_id, request_id))
        if self.fail_create:
            raise GatewayError("create_order unavailable")
        order_id = f"O-{next(self._ids)}"
        self.orders[order_id] = (amount_cents, currency)
        return GatewayOrder(order_id=order_id, status="CREATED")

    async def capture_order(self, order_id: str) -> GatewayCapture:
        self.calls.append(("capture_order", order_id))
        if self.fail_capture:
            raise GatewayError("capture_order timed out")
        if self.on_capture is not None:
            await self.on_capture(order_id)
        amount, currency = self.orders.get(order_id, (0, "USD"))
        return GatewayCapture(
            capture_id=f"CAP-{order_id}",
            amount_cents=self.charged_cents if self.charged_cents is not None else amount,
            currency=self.charged_currency or currency,
            status=self.capture_status,
        )

    async def verify_notification_signature(self, headers, event) -> bool:
        self.calls.append(("verify_notification_signature", headers.get("paypal-transmission-id")))
        return self.signature_valid


@pytest.fixture
def gateway() -> GatewayFake:
    return GatewayFake()


@pytest.fixture
def payment_config() -> PaymentConfig:
    """Production defaults: monthly $4.99 / 30 days, yearly $29.99 / 365 days, 5 creates per hour."""
    return PaymentConfig.from_settings(Settings(_env_file=None))


@pytest.fixture
def verified_principal() -> Principal:
    return Principal(principal_id="u1", email_verified=True)


@pytest.fixture
def unverified_principal() -> Principal:
    return Principal(principal_id="u2", email_verified=False)


@pytest.fixture
def now() -> datetime:
    return datetime(2030, 6, 15, 10, 30, 0, tzinfo=UTC)


@pytest.fixture
async def engine(tmp_path):
    """Fresh schema per test: a temp SQLite file, or TEST_DATABASE_URL when set."""
    import app.db.models  # noqa: F401

    url = _TEST_DB_URL or f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}"
    engine = create_async_engine(url, echo=False, **engine_options(url))

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def make_capture_event():
    """Build a PayPal-style capture webhook event for an order."""

    def _make(
        order_id: str,
        value: str = "4.99",
        currency: str = "USD",
        event_type: str = "PAYMENT.CAPTURE.COMPLETED",
        capture_id: str | None = None,
    ) -> dict:
        return {
            "id": f"WH-{order_id}-{event_type}",
            "event_type": event_type,
            "resource_type": "refund" if event_type.endswith("REFUNDED") else "capture",
            "summary": f"Payment {event_type.rsplit('.', 1)[-1].lower()}",
            "resource": {
                "id": capture_id or f"CAP-{order_id}",
                "status": "COMPLETED",
                "amount": {"currency_code": currency, "value": value},
                "supplementary_data": {"related_ids": {"order_id": order_id}},
                "payer": {
                    "email_address": "buyer@example.com",
                    "name": {"given_name": "Jane", "surname": "Doe"},
                },
            },
        }

    return _make


@pytest.fixture
def webhook_headers():
    """Build the PayPal transmission headers for a delivery id."""

    def _make(delivery_id: str) -> dict[str, str]:
        return {
            "paypal-transmission-id": delivery_id,
            "paypal-transmission-time": "2030-06-15T10:30:00Z",
            "paypal-transmission-sig": "c2lnbmF0dXJl",
            "paypal-auth-algo": "SHA256withRSA",
            "paypal-cert-url": "https://api.paypal.com/v1/notifications/certs/CERT-1",
        }

    return _make
