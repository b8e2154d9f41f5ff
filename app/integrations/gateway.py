"""PaymentGateway protocol: the outbound seam to the external payment provider.

Services depend on this protocol only. ``PayPalClient`` is the production
implementation; tests substitute a recording fake.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class GatewayOrder:
    """An order opened at the gateway."""

    order_id: str
    status: str


# Capture statuses as reported by the gateway
CAPTURE_COMPLETED = "COMPLETED"
CAPTURE_PENDING = "PENDING"


@dataclass(frozen=True)
class GatewayCapture:
    """The charge the gateway reports after capturing an order.

    Only a ``COMPLETED`` capture means the funds moved. ``PENDING`` settles
    later through a webhook; anything else (``DECLINED``, ``FAILED``) is final.
    """

    capture_id: str
    amount_cents: int
    currency: str
    status: str

    @property
    def is_completed(self) -> bool:
        return self.status == CAPTURE_COMPLETED

    @property
    def is_pending(self) -> bool:
        return self.status == CAPTURE_PENDING


@runtime_checkable
class PaymentGateway(Protocol):
    async def get_access_token(self) -> str: ...

    async def create_order(
        self,
        amount_cents: int,
        currency: str,
        description: str,
        reference_id: str,
        request_id: str,
    ) -> GatewayOrder: ...

    async def capture_order(self, order_id: str) -> GatewayCapture: ...

    async def verify_notification_signature(self, headers: Mapping[str, str], event: dict[str, Any]) -> bool: ...


def parse_amount_cents(value: Any) -> int:
    """Convert a gateway decimal string ("4.99") to integer cents.

    Raises ValueError for malformed values or sub-cent precision.
    """
    try:
        cents = Decimal(str(value)).scaleb(2)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    if not cents.is_finite() or cents != cents.to_integral_value():
        raise ValueError(f"Invalid amount: {value!r}")
    return int(cents)


def format_amount(amount_cents: int) -> str:
    """Format integer cents the way the gateway expects ("4.99")."""
    return f"{amount_cents // 100}.{amount_cents % 100:02d}"
