"""Authoritative access resolution: subscription row + trial start -> AccessDecision.

Pure: the only clock is the ``now`` argument.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from entitlements.errors import InconsistentRecordError
from entitlements.services.access_types import (
    AccessDecision,
    AccessReason,
    SubscriptionRecord,
    SubscriptionStatus,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

FREE_TRIAL_DAYS = 7
_DAY_SECONDS = 86400.0


def ceil_days(delta: timedelta) -> int:
    """Whole days remaining, rounded up, never negative."""
    seconds = delta.total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / _DAY_SECONDS)


def trial_expires_at(trial_started_at: Optional[datetime], free_trial_days: int = FREE_TRIAL_DAYS) -> Optional[datetime]:
    if trial_started_at is None:
        return None
    return trial_started_at + timedelta(days=free_trial_days)


def resolve(
    subscription: Optional[SubscriptionRecord],
    trial_started_at: Optional[datetime],
    now: datetime,
    *,
    free_trial_days: int = FREE_TRIAL_DAYS,
) -> AccessDecision:
    """Derive the access decision, first match wins.

    1. active/trialing subscription
    2. canceled subscription still inside its paid period
    3. running free trial
    4. nothing -> trial_expired

    Billing-issue and expired statuses fall through to the trial rules.
    """
    if subscription is not None:
        try:
            subscription.validate()
        except InconsistentRecordError as exc:
            logger.warning("Inconsistent subscription record user_id=%s: %s", subscription.user_id, exc.message)
            return _denied(subscription)

    try:
        trial_started_at = parse_timestamp(trial_started_at)
    except (TypeError, ValueError):
        logger.warning("Unparsable trial_started_at=%r", trial_started_at)
        return _denied(subscription)

    trial_expires = trial_expires_at(trial_started_at, free_trial_days)
    trial_days_remaining = ceil_days(trial_expires - now) if trial_expires is not None else 0
    trial_active = trial_expires is not None and trial_expires > now

    common = {
        "trial_days_remaining": trial_days_remaining,
        "has_active_trial": trial_active,
        "trial_started_at": trial_started_at,
        "trial_expires_at": trial_expires,
    }
    if subscription is not None:
        common.update(
            has_subscription=True,
            subscription_status=subscription.status,
            canceled_at=subscription.canceled_at,
            cancellation_reason=subscription.cancellation_reason,
            current_period_end=subscription.current_period_end,
        )

    if subscription is not None and subscription.is_active:
        period_end = subscription.current_period_end
        return AccessDecision(
            can_record=True,
            can_access_features=True,
            reason=AccessReason.ACTIVE_SUBSCRIPTION,
            access_ends_at=period_end,
            days_until_access_ends=ceil_days(period_end - now) if period_end is not None else 0,
            **common,
        )

    if (
        subscription is not None
        and subscription.status == SubscriptionStatus.CANCELED
        and subscription.current_period_end is not None
        and subscription.current_period_end > now
    ):
        return AccessDecision(
            can_record=True,
            can_access_features=True,
            reason=AccessReason.CANCELED_BUT_ACTIVE,
            access_ends_at=subscription.current_period_end,
            days_until_access_ends=ceil_days(subscription.current_period_end - now),
            is_canceling=True,
            **common,
        )

    if trial_active:
        return AccessDecision(
            can_record=True,
            can_access_features=True,
            reason=AccessReason.ACTIVE_TRIAL,
            **common,
        )

    return AccessDecision(can_record=False, can_access_features=False, reason=AccessReason.TRIAL_EXPIRED, **common)


def resolve_row(
    subscription_row: Optional[dict],
    trial_started_at: object,
    now: datetime,
    *,
    free_trial_days: int = FREE_TRIAL_DAYS,
) -> tuple[AccessDecision, Optional[SubscriptionRecord]]:
    """Resolve straight from stored rows; malformed input denies instead of raising."""
    try:
        subscription = SubscriptionRecord.from_row(subscription_row) if subscription_row else None
        started = parse_timestamp(trial_started_at)
    except InconsistentRecordError as exc:
        logger.warning("Inconsistent entitlement input: %s", exc.message)
        return _denied(None), None
    except (TypeError, ValueError) as exc:
        logger.warning("Unparsable trial_started_at=%r: %s", trial_started_at, exc)
        return _denied(None), None
    return resolve(subscription, started, now, free_trial_days=free_trial_days), subscription


def _denied(subscription: Optional[SubscriptionRecord]) -> AccessDecision:
    return AccessDecision(
        can_record=False,
        can_access_features=False,
        reason=AccessReason.TRIAL_EXPIRED,
        has_subscription=subscription is not None,
        subscription_status=subscription.status if subscription is not None else None,
    )
