"""v1 版本路由集合。"""

from fastapi import APIRouter

from .entitlements import router as entitlements_router
from .health import router as health_router
from .subscription_events import router as subscription_events_router
from .verify_subscription import router as verify_subscription_router
from .webhooks import router as webhooks_router

v1_router = APIRouter()
v1_router.include_router(health_router)
v1_router.include_router(entitlements_router)
v1_router.include_router(verify_subscription_router)
v1_router.include_router(subscription_events_router)
v1_router.include_router(webhooks_router)

__all__ = ["v1_router"]
