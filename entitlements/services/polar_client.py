"""Polar (payment provider) API client: the external system of record for subscriptions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import httpx

from entitlements.services.access_types import (
    CancellationReason,
    SubscriptionStatus,
    parse_timestamp,
)
from entitlements.settings.config import Settings

logger = logging.getLogger(__name__)

# Polar 订阅状态 -> 本地状态
_POLAR_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "canceled": SubscriptionStatus.CANCELED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "unpaid": SubscriptionStatus.BILLING_ISSUE,
    "revoked": SubscriptionStatus.EXPIRED,
}


class PolarApiError(RuntimeError):
    def __init__(self, code: str, message: str, *, status_code: int = 502, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.hint = hint


def map_polar_status(raw_status: Any) -> SubscriptionStatus:
    status = _POLAR_STATUS_MAP.get(str(raw_status or "").strip().lower())
    if status is None:
        raise PolarApiError(
            code="polar_status_unknown",
            message=f"Unknown Polar subscription status {raw_status!r}",
        )
    return status


@dataclass(frozen=True)
class ProviderSubscription:
    """Provider-side view of a subscription, already mapped onto local enums."""

    id: str
    status: SubscriptionStatus
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    canceled_at: Optional[datetime]
    cancellation_reason: Optional[CancellationReason]
    customer_id: Optional[str]
    metadata: dict[str, Any]
    # 服务商侧最后修改时间；用于丢弃乱序到达的旧 webhook
    modified_at: Optional[datetime] = None

    @property
    def user_id(self) -> Optional[str]:
        value = self.metadata.get("user_id")
        return str(value) if value else None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "ProviderSubscription":
        if not isinstance(data, dict) or not data.get("id"):
            raise PolarApiError(code="polar_response_invalid", message="Polar subscription payload is invalid")

        status = map_polar_status(data.get("status"))
        reason: Optional[CancellationReason] = None
        if status == SubscriptionStatus.CANCELED or data.get("cancel_at_period_end"):
            reason = CancellationReason.USER_REQUESTED
        if str(data.get("status") or "") == "unpaid":
            reason = CancellationReason.PAYMENT_FAILED

        metadata = data.get("metadata")
        try:
            return cls(
                id=str(data["id"]),
                status=status,
                current_period_start=parse_timestamp(data.get("current_period_start")),
                current_period_end=parse_timestamp(data.get("current_period_end")),
                canceled_at=parse_timestamp(data.get("canceled_at")),
                cancellation_reason=reason,
                customer_id=data.get("customer_id"),
                metadata=dict(metadata) if isinstance(metadata, dict) else {},
                modified_at=parse_timestamp(data.get("modified_at") or data.get("created_at")),
            )
        except (TypeError, ValueError) as exc:
            raise PolarApiError(code="polar_response_invalid", message="Polar subscription timestamps are invalid") from exc


class PolarClient:
    """Thin async wrapper over the Polar REST API."""

    def __init__(self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._base_url = str(settings.polar_api_base_url).rstrip("/")
        self._access_token = settings.polar_access_token
        self._timeout = settings.http_timeout_seconds
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self._access_token)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
        }

    async def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        if not self.is_configured:
            raise PolarApiError(
                code="polar_not_configured",
                message="Polar access token is not configured",
                status_code=500,
                hint="Set POLAR_ACCESS_TOKEN",
            )

        url = f"{self._base_url}/v1/subscriptions/{subscription_id}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(url, headers=self._headers())
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = int(getattr(exc.response, "status_code", 0) or 0) or 502
            logger.warning("Polar subscription fetch failed id=%s status=%s", subscription_id, status)
            raise PolarApiError(
                code="polar_request_failed",
                message="Polar request failed",
                status_code=502,
                hint=f"upstream status {status}",
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("Polar subscription fetch error id=%s error=%s", subscription_id, type(exc).__name__)
            raise PolarApiError(code="polar_request_error", message="Polar request error") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise PolarApiError(code="polar_response_invalid", message="Polar response is not valid JSON") from exc
        return ProviderSubscription.from_payload(data)
