from fastapi import APIRouter

from app.api.routes import health, live_streams, payments, webhooks

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
api_router.include_router(live_streams.router, prefix="/live-streams", tags=["live-streams"])

# Gateway callbacks live outside /api; PayPal's dashboard is registered with /webhooks/paypal
webhooks_router = APIRouter()

webhooks_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
