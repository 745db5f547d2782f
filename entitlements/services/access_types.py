"""Subscription, trial and access decision types shared by server and client."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from entitlements.errors import InconsistentRecordError


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    CANCELED = "canceled"
    EXPIRED = "expired"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    BILLING_ISSUE = "billing_issue"


ACTIVE_SUBSCRIPTION_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class CancellationReason(str, Enum):
    USER_REQUESTED = "user_requested"
    PAYMENT_FAILED = "payment_failed"
    TRIAL_ENDED = "trial_ended"
    ADMIN_REVOKED = "admin_revoked"


class AccessReason(str, Enum):
    ACTIVE_SUBSCRIPTION = "active_subscription"
    CANCELED_BUT_ACTIVE = "canceled_but_active"
    ACTIVE_TRIAL = "active_trial"
    TRIAL_EXPIRED = "trial_expired"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a PostgREST/JSON timestamp into an aware UTC datetime.

    Naive values are taken as UTC. Raises ValueError on garbage.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"unsupported timestamp value: {value!r}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


@dataclass(frozen=True)
class SubscriptionRecord:
    """One row of the subscriptions table (at most one per user)."""

    user_id: str
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    cancellation_reason: Optional[CancellationReason] = None
    last_verified_at: Optional[datetime] = None
    polar_subscription_id: Optional[str] = None
    polar_customer_id: Optional[str] = None
    plan_name: str = "Unlimited Access"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_SUBSCRIPTION_STATUSES

    def validate(self) -> None:
        if (
            self.current_period_start is not None
            and self.current_period_end is not None
            and self.current_period_end < self.current_period_start
        ):
            raise InconsistentRecordError(
                f"current_period_end precedes current_period_start for user {self.user_id}",
                field="current_period_end",
            )

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SubscriptionRecord":
        """Build from a PostgREST row; malformed rows raise InconsistentRecordError."""
        try:
            status = SubscriptionStatus(str(row.get("status") or "").strip().lower())
        except ValueError as exc:
            raise InconsistentRecordError(f"unknown subscription status {row.get('status')!r}", field="status") from exc

        raw_reason = row.get("cancellation_reason")
        try:
            reason = CancellationReason(raw_reason) if raw_reason else None
        except ValueError:
            reason = None

        timestamps: dict[str, Optional[datetime]] = {}
        for key in ("current_period_start", "current_period_end", "canceled_at", "last_verified_at"):
            try:
                timestamps[key] = parse_timestamp(row.get(key))
            except (TypeError, ValueError) as exc:
                raise InconsistentRecordError(f"invalid timestamp in {key}", field=key) from exc

        return cls(
            user_id=str(row.get("user_id") or ""),
            status=status,
            cancellation_reason=reason,
            polar_subscription_id=row.get("polar_subscription_id"),
            polar_customer_id=row.get("polar_customer_id"),
            plan_name=row.get("plan_name") or "Unlimited Access",
            **timestamps,
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "status": self.status.value,
            "current_period_start": format_timestamp(self.current_period_start),
            "current_period_end": format_timestamp(self.current_period_end),
            "canceled_at": format_timestamp(self.canceled_at),
            "cancellation_reason": self.cancellation_reason.value if self.cancellation_reason else None,
            "last_verified_at": format_timestamp(self.last_verified_at),
            "polar_subscription_id": self.polar_subscription_id,
            "polar_customer_id": self.polar_customer_id,
            "plan_name": self.plan_name,
        }


@dataclass(frozen=True)
class AccessDecision:
    """Canonical resolver output. can_record == can_access_features, both true unless trial_expired."""

    can_record: bool
    can_access_features: bool
    reason: AccessReason
    access_ends_at: Optional[datetime] = None
    days_until_access_ends: int = 0
    trial_days_remaining: int = 0
    has_active_trial: bool = False
    trial_started_at: Optional[datetime] = None
    trial_expires_at: Optional[datetime] = None
    has_subscription: bool = False
    subscription_status: Optional[SubscriptionStatus] = None
    is_canceling: bool = False
    canceled_at: Optional[datetime] = None
    cancellation_reason: Optional[CancellationReason] = None
    current_period_end: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "can_record": self.can_record,
            "can_access_features": self.can_access_features,
            "reason": self.reason.value,
            "access_ends_at": format_timestamp(self.access_ends_at),
            "days_until_access_ends": self.days_until_access_ends,
            "trial_days_remaining": self.trial_days_remaining,
            "has_active_trial": self.has_active_trial,
            "trial_started_at": format_timestamp(self.trial_started_at),
            "trial_expires_at": format_timestamp(self.trial_expires_at),
            "has_subscription": self.has_subscription,
            "subscription_status": self.subscription_status.value if self.subscription_status else None,
            "is_canceling": self.is_canceling,
            "canceled_at": format_timestamp(self.canceled_at),
            "cancellation_reason": self.cancellation_reason.value if self.cancellation_reason else None,
            "current_period_end": format_timestamp(self.current_period_end),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccessDecision":
        reason = AccessReason(data.get("reason") or AccessReason.TRIAL_EXPIRED.value)
        allowed = reason is not AccessReason.TRIAL_EXPIRED
        raw_status = data.get("subscription_status")
        raw_cancel = data.get("cancellation_reason")
        return cls(
            can_record=allowed,
            can_access_features=allowed,
            reason=reason,
            access_ends_at=parse_timestamp(data.get("access_ends_at")),
            days_until_access_ends=max(0, int(data.get("days_until_access_ends") or 0)),
            trial_days_remaining=max(0, int(data.get("trial_days_remaining") or 0)),
            has_active_trial=bool(data.get("has_active_trial")),
            trial_started_at=parse_timestamp(data.get("trial_started_at")),
            trial_expires_at=parse_timestamp(data.get("trial_expires_at")),
            has_subscription=bool(data.get("has_subscription")),
            subscription_status=SubscriptionStatus(raw_status) if raw_status else None,
            is_canceling=bool(data.get("is_canceling")),
            canceled_at=parse_timestamp(data.get("canceled_at")),
            cancellation_reason=CancellationReason(raw_cancel) if raw_cancel else None,
            current_period_end=parse_timestamp(data.get("current_period_end")),
        )


@dataclass(frozen=True)
class CachedEntitlement:
    decision: AccessDecision
    subscription: Optional[SubscriptionRecord]
    fetched_at: datetime
    stale: bool = False

    def invalidated(self) -> "CachedEntitlement":
        return replace(self, stale=True)


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of a reconciliation round trip. Serialised camelCase on the wire."""

    verified: bool
    status: str
    status_changed: bool
    can_record: bool
    can_access_features: bool
    current_period_end: Optional[datetime]
    message: str
    previous_status: Optional[str] = None
    from_cache: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "verified": self.verified,
            "status": self.status,
            "statusChanged": self.status_changed,
            "canRecord": self.can_record,
            "canAccessFeatures": self.can_access_features,
            "currentPeriodEnd": format_timestamp(self.current_period_end),
            "message": self.message,
            "fromCache": self.from_cache,
        }
        if self.previous_status is not None:
            payload["previousStatus"] = self.previous_status
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VerificationResult":
        if not isinstance(data, dict) or "verified" not in data or "status" not in data:
            raise ValueError("verification payload missing required fields")
        return cls(
            verified=bool(data["verified"]),
            status=str(data["status"]),
            status_changed=bool(data.get("statusChanged", False)),
            can_record=bool(data.get("canRecord", False)),
            can_access_features=bool(data.get("canAccessFeatures", False)),
            current_period_end=parse_timestamp(data.get("currentPeriodEnd")),
            message=str(data.get("message") or ""),
            previous_status=data.get("previousStatus"),
            from_cache=bool(data.get("fromCache", False)),
        )


@dataclass(frozen=True)
class GateResult:
    allowed: bool
    reason: str
    decision: Optional[AccessDecision] = None
    verification_unavailable: bool = False
    verification: Optional[VerificationResult] = None
