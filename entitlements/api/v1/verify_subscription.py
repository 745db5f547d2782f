"""订阅核验端点：与支付服务商对账并回写。"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from entitlements.auth import AuthenticatedUser, get_current_user
from entitlements.core.exceptions import create_error_response
from entitlements.services.polar_client import PolarApiError
from entitlements.services.subscription_reconciler import SubscriptionReconciler
from entitlements.services.supabase_admin import SupabaseAdminError

router = APIRouter(tags=["verification"])
logger = logging.getLogger(__name__)


class VerifySubscriptionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    force_refresh: bool = Field(default=False, alias="forceRefresh")


def get_reconciler(request: Request) -> SubscriptionReconciler:
    return request.app.state.subscription_reconciler


@router.post("/verify-subscription", response_model=None)
async def verify_subscription(
    payload: VerifySubscriptionRequest | None = None,
    current_user: AuthenticatedUser = Depends(get_current_user),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
) -> Dict[str, Any] | JSONResponse:
    force_refresh = bool(payload and payload.force_refresh)
    try:
        result = await reconciler.verify(current_user.uid, force_refresh=force_refresh)
    except (PolarApiError, SupabaseAdminError) as exc:
        # 不回写；客户端保留旧判定
        logger.warning("verify-subscription failed user_id=%s code=%s", current_user.uid, exc.code)
        return create_error_response(
            status_code=502,
            code=exc.code,
            message="Subscription verification unavailable",
            hint=exc.hint,
            extra={"verified": False},
        )
    return result.to_dict()
