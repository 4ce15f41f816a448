"""
API Version 1 Router
"""
from fastapi import APIRouter

from . import health, subscriptions, webhooks

router = APIRouter(prefix="/v1", tags=["v1"])

# Include all routers
router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
router.include_router(health.router, prefix="/health", tags=["health"])
