from __future__ import annotations

import json
import time
from datetime import timedelta

import pytest
from fastapi import status

from entitlements.services.polar_webhooks import (
    PolarWebhookHandler,
    WebhookVerificationError,
    compute_signature,
    verify_signature,
)
from entitlements.services.subscription_events import SubscriptionEventBroker
from tests.conftest import NOW, make_repository, subscription_row, swapped_state

SECRET = "test-webhook-secret"


def _event(event_type: str = "subscription.updated", **data_overrides) -> dict:
    data = {
        "id": "sub_123",
        "status": "active",
        "current_period_start": (NOW - timedelta(days=1)).isoformat(),
        "current_period_end": (NOW + timedelta(days=29)).isoformat(),
        "canceled_at": None,
        "cancel_at_period_end": False,
        "customer_id": "cus_123",
        "metadata": {"user_id": "user-1"},
        "product": {"name": "Unlimited Access"},
    }
    data.update(data_overrides)
    return {"type": event_type, "data": data}


def _signed_headers(body: bytes, *, secret: str = SECRET, msg_id: str = "msg_1", timestamp: int | None = None) -> dict:
    ts = str(timestamp if timestamp is not None else int(time.time()))
    return {
        "webhook-id": msg_id,
        "webhook-timestamp": ts,
        "webhook-signature": f"v1,{compute_signature(secret, msg_id, ts, body)}",
        "content-type": "application/json",
    }


def test_valid_signature_passes():
    body = b'{"type":"subscription.updated"}'
    verify_signature(SECRET, _signed_headers(body), body)


def test_any_matching_signature_in_list_is_accepted():
    body = b"{}"
    headers = _signed_headers(body)
    headers["webhook-signature"] = f"v1,bogus {headers['webhook-signature']}"
    verify_signature(SECRET, headers, body)


def test_tampered_body_is_rejected():
    headers = _signed_headers(b'{"a":1}')
    with pytest.raises(WebhookVerificationError) as exc_info:
        verify_signature(SECRET, headers, b'{"a":2}')
    assert exc_info.value.code == "webhook_signature_invalid"


def test_old_timestamp_is_rejected():
    body = b"{}"
    headers = _signed_headers(body, timestamp=int(time.time()) - 3600)
    with pytest.raises(WebhookVerificationError) as exc_info:
        verify_signature(SECRET, headers, body, tolerance_seconds=300)
    assert exc_info.value.code == "webhook_timestamp_out_of_range"


def test_missing_headers_are_rejected():
    with pytest.raises(WebhookVerificationError):
        verify_signature(SECRET, {}, b"{}")


def test_whsec_prefixed_secret_is_base64_decoded():
    import base64

    raw = b"raw-secret-bytes"
    secret = "whsec_" + base64.b64encode(raw).decode()
    body = b"{}"
    headers = _signed_headers(body, secret=secret)
    verify_signature(secret, headers, body)
    assert compute_signature(secret, "m", "1", body) == compute_signature(raw.decode(), "m", "1", body)


@pytest.mark.asyncio
async def test_handler_upserts_row_and_publishes_insert_event():
    repo = make_repository(None)
    broker = SubscriptionEventBroker()
    queue = await broker.subscribe("user-1")

    outcome = await PolarWebhookHandler(repo, broker).handle(_event("subscription.created"))

    assert outcome.applied is True
    values = repo.upsert_subscription.await_args.args[0]
    assert values["user_id"] == "user-1"
    assert values["status"] == "active"
    assert values["polar_subscription_id"] == "sub_123"
    assert values["polar_customer_id"] == "cus_123"
    event = queue.get_nowait()
    assert event.event_type == "INSERT"
    assert event.source == "webhook"
    await broker.unsubscribe("user-1", queue)


@pytest.mark.asyncio
async def test_revoked_event_ends_access_immediately():
    repo = make_repository(subscription_row())
    broker = SubscriptionEventBroker()

    await PolarWebhookHandler(repo, broker).handle(_event("subscription.revoked", status="canceled"))

    values = repo.upsert_subscription.await_args.args[0]
    assert values["status"] == "expired"
    assert values["canceled_at"] is not None


@pytest.mark.asyncio
async def test_user_is_found_by_provider_subscription_id_when_metadata_missing():
    repo = make_repository(subscription_row(user_id="user-9"))
    broker = SubscriptionEventBroker()

    outcome = await PolarWebhookHandler(repo, broker).handle(_event(metadata={}))

    assert outcome.user_id == "user-9"
    repo.get_subscription_by_polar_id.assert_awaited_once_with("sub_123")


@pytest.mark.asyncio
async def test_non_subscription_events_are_ignored():
    repo = make_repository(None)

    outcome = await PolarWebhookHandler(repo, SubscriptionEventBroker()).handle({"type": "order.created", "data": {}})

    assert outcome.applied is False
    repo.upsert_subscription.assert_not_awaited()


@pytest.mark.asyncio
async def test_webhook_endpoint_applies_signed_event(async_client):
    repo = make_repository(None)
    broker = SubscriptionEventBroker()
    body = json.dumps(_event()).encode()

    with swapped_state(webhook_handler=PolarWebhookHandler(repo, broker)):
        resp = await async_client.post("/api/v1/webhooks/polar", content=body, headers=_signed_headers(body))

    assert resp.status_code == status.HTTP_200_OK
    assert resp.json() == {"received": True, "applied": True, "type": "subscription.updated"}
    repo.upsert_subscription.assert_awaited_once()


@pytest.mark.asyncio
async def test_webhook_endpoint_rejects_bad_signature(async_client):
    repo = make_repository(None)
    body = json.dumps(_event()).encode()
    headers = _signed_headers(body)
    headers["webhook-signature"] = "v1,AAAA"

    with swapped_state(webhook_handler=PolarWebhookHandler(repo, SubscriptionEventBroker())):
        resp = await async_client.post("/api/v1/webhooks/polar", content=body, headers=headers)

    assert resp.status_code == status.HTTP_401_UNAUTHORIZED
    data = resp.json()
    assert data["code"] == "webhook_signature_invalid"
    assert "request_id" in data
    repo.upsert_subscription.assert_not_awaited()


def _stored_repository():
    """Repository whose reads see the rows its upserts wrote."""
    rows: dict[str, dict] = {}
    repo = make_repository(None)
    repo.get_subscription.side_effect = lambda user_id: rows.get(user_id)

    async def upsert(values):
        rows[values["user_id"]] = {**rows.get(values["user_id"], {}), **values}
        return rows[values["user_id"]]

    repo.upsert_subscription.side_effect = upsert
    return repo, rows


@pytest.mark.asyncio
async def test_older_delivery_after_revocation_is_skipped():
    repo, rows = _stored_repository()
    handler = PolarWebhookHandler(repo, SubscriptionEventBroker())
    revoked_at = NOW + timedelta(minutes=5)

    await handler.handle(_event("subscription.revoked", status="canceled", modified_at=revoked_at.isoformat()))
    late = await handler.handle(_event("subscription.updated", status="active", modified_at=NOW.isoformat()))

    assert late.applied is False
    assert late.detail == "stale"
    assert rows["user-1"]["status"] == "expired"
    assert rows["user-1"]["provider_modified_at"] == revoked_at.isoformat()


@pytest.mark.asyncio
async def test_redelivery_of_the_same_state_is_applied_again():
    repo, rows = _stored_repository()
    handler = PolarWebhookHandler(repo, SubscriptionEventBroker())
    event = _event("subscription.updated", modified_at=NOW.isoformat())

    await handler.handle(event)
    again = await handler.handle(event)

    assert again.applied is True
    assert repo.upsert_subscription.await_count == 2


@pytest.mark.asyncio
async def test_newer_subscription_replaces_row_regardless_of_old_timestamps():
    repo, rows = _stored_repository()
    handler = PolarWebhookHandler(repo, SubscriptionEventBroker())

    await handler.handle(_event("subscription.revoked", status="canceled", modified_at=(NOW + timedelta(days=1)).isoformat()))
    outcome = await handler.handle(_event("subscription.created", id="sub_456", modified_at=NOW.isoformat()))

    assert outcome.applied is True
    assert rows["user-1"]["polar_subscription_id"] == "sub_456"
    assert rows["user-1"]["status"] == "active"


@pytest.mark.asyncio
async def test_unknown_provider_status_is_acknowledged_without_write(async_client):
    repo = make_repository(None)
    body = json.dumps(_event(status="paused_forever")).encode()

    with swapped_state(webhook_handler=PolarWebhookHandler(repo, SubscriptionEventBroker())):
        resp = await async_client.post("/api/v1/webhooks/polar", content=body, headers=_signed_headers(body))

    assert resp.status_code == status.HTTP_200_OK
    assert resp.json() == {"received": True, "applied": False, "type": "subscription.updated"}
    repo.upsert_subscription.assert_not_awaited()
