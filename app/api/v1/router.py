from fastapi import APIRouter
from app.api.v1 import webhooks, admin_webhooks, subscriptions, integrations

api_router = APIRouter(prefix="/api")
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(admin_webhooks.router, prefix="/admin/webhooks", tags=["admin-webhooks"])
api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
api_router.include_router(integrations.router, prefix="/integrations", tags=["integrations"])

legacy_router = webhooks.legacy_router
