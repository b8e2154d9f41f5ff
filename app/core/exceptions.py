class FakeLiveError(Exception):
    """Base exception for the FakeLive payment core.

    Each subclass carries the HTTP status the API layer maps it to and a
    client-safe message.
    """

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.__doc__.strip().splitlines()[0]
        super().__init__(self.message)


class ValidationError(FakeLiveError):
    """Invalid request."""

    status_code = 400
    code = "validation_error"


class EmailNotVerifiedError(FakeLiveError):
    """Email verification required."""

    status_code = 403
    code = "email_not_verified"


class RateLimitedError(FakeLiveError):
    """Too many attempts. Please try again later."""

    status_code = 429
    code = "rate_limited"


class AlreadyEntitledError(FakeLiveError):
    """You already have active premium."""

    status_code = 409
    code = "already_entitled"


class NotFoundError(FakeLiveError):
    """Payment not found."""

    status_code = 404
    code = "not_found"


class AlreadyProcessedError(FakeLiveError):
    """Payment already processed."""

    status_code = 409
    code = "already_processed"

    def __init__(self, order, message: str | None = None):
        self.order = order
        super().__init__(message)


class AmountMismatchError(FakeLiveError):
    """Payment amount mismatch."""

    status_code = 400
    code = "amount_mismatch"


class GatewayError(FakeLiveError):
    """Payment provider error."""

    status_code = 502
    code = "gateway_error"


class InvalidNotificationError(FakeLiveError):
    """Invalid webhook notification."""

    status_code = 400
    code = "invalid_notification"


class WebhookSignatureError(FakeLiveError):
    """Invalid signature."""

    status_code = 401
    code = "invalid_signature"


class PaymentDeclinedError(FakeLiveError):
    """Payment was declined."""

    status_code = 402
    code = "payment_declined"
