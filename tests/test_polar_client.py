from __future__ import annotations

import httpx
import pytest

from entitlements.services.access_types import CancellationReason, SubscriptionStatus
from entitlements.services.polar_client import PolarApiError, PolarClient, ProviderSubscription, map_polar_status
from entitlements.settings.config import Settings
from tests.conftest import NOW


def _settings(**overrides) -> Settings:
    values = dict(polar_access_token="polar-token", polar_api_base_url="https://polar.test", http_timeout_seconds=1.0)
    values.update(overrides)
    return Settings(**values)


def _payload(**overrides):
    payload = {
        "id": "sub_123",
        "status": "active",
        "current_period_start": "2025-03-01T12:00:00Z",
        "current_period_end": "2025-04-01T12:00:00Z",
        "canceled_at": None,
        "cancel_at_period_end": False,
        "customer_id": "cus_123",
        "metadata": {"user_id": "user-1"},
    }
    payload.update(overrides)
    return payload


def test_status_mapping():
    assert map_polar_status("active") is SubscriptionStatus.ACTIVE
    assert map_polar_status("incomplete_expired") is SubscriptionStatus.EXPIRED
    assert map_polar_status("unpaid") is SubscriptionStatus.BILLING_ISSUE
    with pytest.raises(PolarApiError):
        map_polar_status("paused")


def test_cancel_at_period_end_marks_user_requested():
    subscription = ProviderSubscription.from_payload(
        _payload(status="canceled", cancel_at_period_end=True, canceled_at=NOW.isoformat())
    )

    assert subscription.status is SubscriptionStatus.CANCELED
    assert subscription.cancellation_reason is CancellationReason.USER_REQUESTED
    assert subscription.canceled_at == NOW
    assert subscription.user_id == "user-1"


@pytest.mark.asyncio
async def test_get_subscription_sends_bearer_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json=_payload())

    client = PolarClient(_settings(), transport=httpx.MockTransport(handler))
    subscription = await client.get_subscription("sub_123")

    assert seen["url"] == "https://polar.test/v1/subscriptions/sub_123"
    assert seen["auth"] == "Bearer polar-token"
    assert subscription.status is SubscriptionStatus.ACTIVE
    assert subscription.customer_id == "cus_123"


@pytest.mark.asyncio
async def test_upstream_error_maps_to_502():
    client = PolarClient(_settings(), transport=httpx.MockTransport(lambda request: httpx.Response(503)))

    with pytest.raises(PolarApiError) as exc_info:
        await client.get_subscription("sub_123")

    assert exc_info.value.status_code == 502
    assert exc_info.value.code == "polar_request_failed"


@pytest.mark.asyncio
async def test_transport_error_maps_to_polar_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    client = PolarClient(_settings(), transport=httpx.MockTransport(handler))

    with pytest.raises(PolarApiError) as exc_info:
        await client.get_subscription("sub_123")
    assert exc_info.value.code == "polar_request_error"


@pytest.mark.asyncio
async def test_missing_token_fails_before_any_request():
    client = PolarClient(_settings(polar_access_token=None))

    with pytest.raises(PolarApiError) as exc_info:
        await client.get_subscription("sub_123")
    assert exc_info.value.code == "polar_not_configured"
