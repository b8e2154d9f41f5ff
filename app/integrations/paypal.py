"""PayPal REST integration: OAuth token, orders, captures and webhook verification.

All calls go through ``_request``, which applies a bounded timeout, retries
transport failures with tenacity and turns every failure into
``GatewayError``. Order creation and capture send ``PayPal-Request-Id`` so
a retried call cannot open or capture twice at PayPal.
"""

from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.core.config import Settings
from app.core.exceptions import GatewayError
from app.integrations.gateway import GatewayCapture, GatewayOrder, format_amount, parse_amount_cents

logger = structlog.get_logger(__name__)

API_BASE = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "production": "https://api-m.paypal.com",
}

# Refresh the cached token this long before PayPal says it expires
_TOKEN_SKEW = timedelta(seconds=60)


def _error_summary(response: httpx.Response) -> dict:
    """Loggable fields of a PayPal error body.

    Error bodies can echo the request, payer details included, so only
    PayPal's error identifiers are kept.
    """
    try:
        body = response.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return {"body_length": len(response.content)}

    details = body.get("details") if isinstance(body.get("details"), list) else []
    return {
        "error_name": body.get("name") or body.get("error"),
        "debug_id": body.get("debug_id"),
        "issues": [d.get("issue") for d in details if isinstance(d, dict)],
    }


class PayPalClient:
    """PaymentGateway implementation backed by the PayPal REST API."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        webhook_id: str,
        mode: str = "sandbox",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the PayPal client.

        Args:
            client_id: REST app client id
            client_secret: REST app secret
            webhook_id: Id of the registered webhook, required for signature verification
            mode: "sandbox" or "production"
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        if mode not in API_BASE:
            raise ValueError(f"Unknown PayPal mode: {mode}")
        self.base_url = API_BASE[mode]
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.timeout = timeout
        self._transport = transport
        self._access_token: str | None = None
        self._token_expires: datetime | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PayPalClient":
        return cls(
            client_id=settings.paypal_client_id,
            client_secret=settings.paypal_client_secret,
            webhook_id=settings.paypal_webhook_id,
            mode=settings.paypal_mode,
            timeout=settings.gateway_timeout_seconds,
        )

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "paypal_transport_error_retrying",
            attempt=rs.attempt_number,
            sleep_seconds=rs.next_action.sleep,
        ),
    )
    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            return await client.request(method, path, **kwargs)

    async def _request(self, method: str, path: str, action: str, **kwargs: Any) -> dict:
        """Send a request and return the decoded JSON body, or raise GatewayError."""
        try:
            response = await self._send(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("paypal_request_failed", action=action, error=str(exc), error_type=type(exc).__name__)
            raise GatewayError(f"PayPal {action} failed: {exc}") from exc

        if response.status_code >= 400:
            logger.error(
                "paypal_error_response",
                action=action,
                status_code=response.status_code,
                **_error_summary(response),
            )
            raise GatewayError(f"PayPal {action} failed with status {response.status_code}")

        try:
            return response.json()
        except ValueError as exc:
            raise GatewayError(f"PayPal {action} returned invalid JSON") from exc

    async def get_access_token(self) -> str:
        """Return a cached OAuth client-credentials token, fetching a new one when stale."""
        if self._access_token and self._token_expires and datetime.now(UTC) < self._token_expires:
            return self._access_token

        data = await self._request(
            "POST",
            "/v1/oauth2/token",
            "token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        token = data.get("access_token")
        if not token:
            raise GatewayError("PayPal token response missing access_token")

        expires_in = int(data.get("expires_in", 0))
        self._access_token = token
        self._token_expires = datetime.now(UTC) + timedelta(seconds=expires_in) - _TOKEN_SKEW
        return token

    async def _auth_headers(self, request_id: str | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {await self.get_access_token()}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    async def create_order(
        self,
        amount_cents: int,
        currency: str,
        description: str,
        reference_id: str,
        request_id: str,
    ) -> GatewayOrder:
        """Open a CAPTURE-intent order for a single purchase unit."""
        data = await self._request(
            "POST",
            "/v2/checkout/orders",
            "create_order",
            headers=await self._auth_headers(request_id),
            json={
                "intent": "CAPTURE",
                "purchase_units": [{
                    "reference_id": reference_id,
                    "custom_id": reference_id,
                    "description": description,
                    "amount": {
                        "currency_code": currency,
                        "value": format_amount(amount_cents),
                    },
                }],
            },
        )
        order_id = data.get("id")
        if not order_id:
            raise GatewayError("PayPal create_order response missing id")
        return GatewayOrder(order_id=order_id, status=data.get("status", ""))

    async def capture_order(self, order_id: str) -> GatewayCapture:
        """Capture an approved order and report what was actually charged."""
        data = await self._request(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            "capture_order",
            headers=await self._auth_headers(f"capture-{order_id}"),
        )
        return _parse_capture(data)

    async def verify_notification_signature(self, headers: Mapping[str, str], event: dict[str, Any]) -> bool:
        """Ask PayPal whether a webhook's transmission signature is genuine.

        Returns False on a failed verification and on verification API errors.
        """
        if not self.webhook_id:
            logger.error("paypal_webhook_id_missing")
            return False

        lowered = {k.lower(): v for k, v in headers.items()}
        try:
            data = await self._request(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                "verify_webhook_signature",
                headers=await self._auth_headers(),
                json={
                    "auth_algo": lowered.get("paypal-auth-algo"),
                    "cert_url": lowered.get("paypal-cert-url"),
                    "transmission_id": lowered.get("paypal-transmission-id"),
                    "transmission_sig": lowered.get("paypal-transmission-sig"),
                    "transmission_time": lowered.get("paypal-transmission-time"),
                    "webhook_id": self.webhook_id,
                    "webhook_event": event,
                },
            )
        except GatewayError:
            return False
        return data.get("verification_status") == "SUCCESS"


def _parse_capture(data: dict) -> GatewayCapture:
    """Extract the first capture from a PayPal capture-order response."""
    try:
        unit = data["purchase_units"][0]
        capture = unit["payments"]["captures"][0]
        amount = capture["amount"]
        return GatewayCapture(
            capture_id=capture["id"],
            amount_cents=parse_amount_cents(amount["value"]),
            currency=amount["currency_code"],
            status=capture.get("status", data.get("status", "")),
        )
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise GatewayError("PayPal capture response is malformed") from exc
