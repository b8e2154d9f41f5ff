"""Re-export all models so Base.metadata sees them."""

from app.db.models.entitlement import Entitlement
from app.db.models.payment_order import PaymentOrder, PaymentStatus
from app.db.models.rate_limit_attempt import RateLimitAttempt
from app.db.models.user_stats import UserStats
from app.db.models.webhook_delivery import WebhookDelivery

__all__ = [
    "Entitlement",
    "PaymentOrder",
    "PaymentStatus",
    "RateLimitAttempt",
    "UserStats",
    "WebhookDelivery",
]
