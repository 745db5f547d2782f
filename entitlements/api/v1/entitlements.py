"""Authoritative entitlement query endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request

from entitlements.auth import AuthenticatedUser, get_current_user
from entitlements.services.access_service import AccessService
from entitlements.services.access_types import AccessDecision, SubscriptionRecord

router = APIRouter(prefix="/entitlements", tags=["entitlements"])


def get_access_service(request: Request) -> AccessService:
    return request.app.state.access_service


def _snapshot(decision: AccessDecision, subscription: Optional[SubscriptionRecord]) -> Dict[str, Any]:
    return {
        "decision": decision.to_dict(),
        "subscription": subscription.to_row() if subscription is not None else None,
    }


@router.get("/can-record")
async def can_record(
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: AccessService = Depends(get_access_service),
) -> Dict[str, Any]:
    decision, subscription = await service.can_user_record(current_user.uid)
    return _snapshot(decision, subscription)


@router.get("/can-access-features")
async def can_access_features(
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: AccessService = Depends(get_access_service),
) -> Dict[str, Any]:
    decision, subscription = await service.can_access_features(current_user.uid)
    return _snapshot(decision, subscription)
