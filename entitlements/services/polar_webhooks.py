"""Polar webhook verification (Standard Webhooks) and subscription event handling."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from entitlements.core.metrics import webhook_events
from entitlements.repositories.subscription_repo import SubscriptionRepository
from entitlements.services.access_types import SubscriptionStatus, format_timestamp, parse_timestamp, utcnow
from entitlements.services.polar_client import PolarApiError, ProviderSubscription
from entitlements.services.subscription_events import SubscriptionChangeEvent, SubscriptionEventBroker
from entitlements.services.subscription_reconciler import provider_row_values

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENT_TYPES = frozenset(
    {
        "subscription.created",
        "subscription.updated",
        "subscription.active",
        "subscription.canceled",
        "subscription.uncanceled",
        "subscription.revoked",
    }
)


class WebhookVerificationError(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def _secret_bytes(secret: str) -> bytes:
    # whsec_ 前缀的密钥是 base64；否则按原始字符串使用
    if secret.startswith("whsec_"):
        try:
            return base64.b64decode(secret[len("whsec_"):])
        except (binascii.Error, ValueError) as exc:
            raise WebhookVerificationError("webhook_secret_invalid", "Webhook secret is not valid base64") from exc
    return secret.encode("utf-8")


def compute_signature(secret: str, msg_id: str, timestamp: str, body: bytes) -> str:
    signed = f"{msg_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(_secret_bytes(secret), signed, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(
    secret: str,
    headers: Mapping[str, str],
    body: bytes,
    *,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> None:
    """Raise WebhookVerificationError unless one ``v1,`` signature matches."""
    msg_id = headers.get("webhook-id")
    timestamp = headers.get("webhook-timestamp")
    signature_header = headers.get("webhook-signature")
    if not msg_id or not timestamp or not signature_header:
        raise WebhookVerificationError("webhook_headers_missing", "Missing webhook signature headers")

    try:
        sent_at = int(timestamp)
    except ValueError as exc:
        raise WebhookVerificationError("webhook_timestamp_invalid", "Webhook timestamp is invalid") from exc

    current = time.time() if now is None else now
    if abs(current - sent_at) > tolerance_seconds:
        raise WebhookVerificationError("webhook_timestamp_out_of_range", "Webhook timestamp is outside tolerance")

    expected = compute_signature(secret, msg_id, timestamp, body)
    for candidate in signature_header.split():
        version, _, value = candidate.partition(",")
        if version == "v1" and hmac.compare_digest(value, expected):
            return
    raise WebhookVerificationError("webhook_signature_invalid", "Webhook signature does not match")


@dataclass(frozen=True)
class WebhookOutcome:
    event_type: str
    applied: bool
    user_id: Optional[str] = None
    detail: Optional[str] = None


def _is_stale_delivery(existing: Optional[Mapping[str, Any]], subscription: ProviderSubscription) -> bool:
    """True when the stored row already reflects a newer provider state of the same subscription."""
    if not existing or subscription.modified_at is None:
        return False
    if existing.get("polar_subscription_id") != subscription.id:
        return False
    try:
        stored = parse_timestamp(existing.get("provider_modified_at"))
    except (TypeError, ValueError):
        return False
    return stored is not None and subscription.modified_at < stored


class PolarWebhookHandler:
    """Applies subscription.* events to the store and announces the change."""

    def __init__(self, repository: SubscriptionRepository, broker: SubscriptionEventBroker) -> None:
        self._repo = repository
        self._broker = broker

    async def _resolve_user_id(self, subscription: ProviderSubscription, data: Mapping[str, Any]) -> Optional[str]:
        if subscription.user_id:
            return subscription.user_id
        customer = data.get("customer")
        if isinstance(customer, dict) and customer.get("external_id"):
            return str(customer["external_id"])
        existing = await self._repo.get_subscription_by_polar_id(subscription.id)
        if existing and existing.get("user_id"):
            return str(existing["user_id"])
        return None

    async def handle(self, payload: Mapping[str, Any]) -> WebhookOutcome:
        event_type = str(payload.get("type") or "")
        if event_type not in SUBSCRIPTION_EVENT_TYPES:
            webhook_events.labels(event_type=event_type or "unknown", outcome="ignored").inc()
            logger.debug("Ignoring Polar webhook type=%s", event_type)
            return WebhookOutcome(event_type=event_type, applied=False, detail="ignored")

        data = payload.get("data")
        if not isinstance(data, dict):
            data = {}
        try:
            subscription = ProviderSubscription.from_payload(data)
        except PolarApiError as exc:
            # 签名有效但内容无法解析：确认收到（2xx），避免服务商无限重投
            webhook_events.labels(event_type=event_type, outcome="ignored").inc()
            logger.warning("Unprocessable Polar webhook type=%s code=%s: %s", event_type, exc.code, exc)
            return WebhookOutcome(event_type=event_type, applied=False, detail=exc.code)
        user_id = await self._resolve_user_id(subscription, data)
        if user_id is None:
            webhook_events.labels(event_type=event_type, outcome="ignored").inc()
            logger.warning("Polar webhook without resolvable user subscription=%s type=%s", subscription.id, event_type)
            return WebhookOutcome(event_type=event_type, applied=False, detail="user_not_found")

        existing = await self._repo.get_subscription(user_id)
        if _is_stale_delivery(existing, subscription):
            webhook_events.labels(event_type=event_type, outcome="stale").inc()
            logger.info(
                "Skipping out-of-order Polar webhook type=%s user_id=%s modified_at=%s",
                event_type,
                user_id,
                format_timestamp(subscription.modified_at),
            )
            return WebhookOutcome(event_type=event_type, applied=False, user_id=user_id, detail="stale")

        values = provider_row_values(subscription, verified_at=utcnow())
        if event_type == "subscription.revoked":
            # 立即终止：不保留宽限期
            values["status"] = SubscriptionStatus.EXPIRED.value
            values["canceled_at"] = values["canceled_at"] or format_timestamp(utcnow())
        values.update(
            {
                "user_id": user_id,
                "polar_subscription_id": subscription.id,
                "polar_customer_id": subscription.customer_id,
            }
        )
        product = data.get("product")
        if isinstance(product, dict) and product.get("name"):
            values["plan_name"] = str(product["name"])

        await self._repo.upsert_subscription(values)
        await self._broker.publish(
            SubscriptionChangeEvent(
                user_id=user_id,
                event_type="UPDATE" if existing else "INSERT",
                source="webhook",
            )
        )
        webhook_events.labels(event_type=event_type, outcome="applied").inc()
        logger.info("Applied Polar webhook type=%s user_id=%s status=%s", event_type, user_id, values["status"])
        return WebhookOutcome(event_type=event_type, applied=True, user_id=user_id)
