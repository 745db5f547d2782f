from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import status

from entitlements.services.access_types import VerificationResult
from entitlements.services.polar_client import PolarApiError
from entitlements.services.subscription_reconciler import SubscriptionReconciler
from entitlements.services.supabase_admin import SupabaseAdminError
from tests.conftest import NOW, authenticated_as, swapped_state


def _reconciler(result=None, error=None) -> MagicMock:
    reconciler = MagicMock(spec=SubscriptionReconciler)
    reconciler.verify = AsyncMock(return_value=result, side_effect=error)
    return reconciler


@pytest.mark.asyncio
async def test_verify_requires_authentication(async_client):
    resp = await async_client.post("/api/v1/verify-subscription", json={"forceRefresh": True})

    assert resp.status_code == status.HTTP_401_UNAUTHORIZED
    data = resp.json()
    assert data["code"] == "not_authenticated"
    assert "request_id" in data


@pytest.mark.asyncio
async def test_verify_returns_camel_case_result(async_client, mock_jwt_token: str):
    reconciler = _reconciler(
        VerificationResult(
            verified=True,
            status="canceled",
            status_changed=True,
            can_record=True,
            can_access_features=True,
            current_period_end=NOW,
            message="Subscription status updated from active to canceled",
            previous_status="active",
        )
    )

    with authenticated_as("user-1"), swapped_state(subscription_reconciler=reconciler):
        resp = await async_client.post(
            "/api/v1/verify-subscription",
            json={"forceRefresh": True},
            headers={"Authorization": f"Bearer {mock_jwt_token}"},
        )

    assert resp.status_code == status.HTTP_200_OK
    data = resp.json()
    assert data["verified"] is True
    assert data["statusChanged"] is True
    assert data["canRecord"] is True
    assert data["previousStatus"] == "active"
    assert data["currentPeriodEnd"] == NOW.isoformat()
    reconciler.verify.assert_awaited_once_with("user-1", force_refresh=True)


@pytest.mark.asyncio
async def test_verify_without_body_defaults_to_no_force(async_client, mock_jwt_token: str):
    reconciler = _reconciler(
        VerificationResult(
            verified=True,
            status="none",
            status_changed=False,
            can_record=False,
            can_access_features=False,
            current_period_end=None,
            message="No payment provider subscription to verify",
        )
    )

    with authenticated_as("user-1"), swapped_state(subscription_reconciler=reconciler):
        resp = await async_client.post(
            "/api/v1/verify-subscription",
            headers={"Authorization": f"Bearer {mock_jwt_token}"},
        )

    assert resp.status_code == status.HTTP_200_OK
    assert resp.json()["status"] == "none"
    reconciler.verify.assert_awaited_once_with("user-1", force_refresh=False)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        PolarApiError(code="polar_request_error", message="Polar request error"),
        SupabaseAdminError(code="supabase_update_failed", message="Supabase update failed", status_code=503),
    ],
)
async def test_verify_failure_is_502_with_verified_false(async_client, mock_jwt_token: str, error):
    with authenticated_as("user-1"), swapped_state(subscription_reconciler=_reconciler(error=error)):
        resp = await async_client.post(
            "/api/v1/verify-subscription",
            json={"forceRefresh": True},
            headers={"Authorization": f"Bearer {mock_jwt_token}"},
        )

    assert resp.status_code == status.HTTP_502_BAD_GATEWAY
    data = resp.json()
    assert data["verified"] is False
    assert data["code"] == error.code
    assert resp.headers["X-Request-Id"] == data["request_id"]


@pytest.mark.asyncio
async def test_verify_rejects_unknown_fields(async_client, mock_jwt_token: str):
    with authenticated_as("user-1"), swapped_state(subscription_reconciler=_reconciler()):
        resp = await async_client.post(
            "/api/v1/verify-subscription",
            json={"forceRefresh": True, "grant": "pro"},
            headers={"Authorization": f"Bearer {mock_jwt_token}"},
        )

    assert resp.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
    assert resp.json()["code"] == "validation_error"
