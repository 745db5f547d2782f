"""Reconciles stored subscription rows with the payment provider."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from entitlements.core.metrics import verification_requests
from entitlements.errors import InconsistentRecordError
from entitlements.repositories.subscription_repo import SubscriptionRepository
from entitlements.services.access_resolver import FREE_TRIAL_DAYS, resolve
from entitlements.services.access_types import (
    SubscriptionRecord,
    VerificationResult,
    format_timestamp,
    parse_timestamp,
    utcnow,
)
from entitlements.services.polar_client import PolarApiError, PolarClient, ProviderSubscription
from entitlements.services.subscription_events import SubscriptionChangeEvent, SubscriptionEventBroker
from entitlements.services.supabase_admin import SupabaseAdminError

logger = logging.getLogger(__name__)

NO_SUBSCRIPTION_STATUS = "none"


def provider_row_values(provider: ProviderSubscription, *, verified_at: datetime) -> dict[str, Any]:
    """Columns written back from a provider subscription."""
    values = {
        "status": provider.status.value,
        "current_period_start": format_timestamp(provider.current_period_start),
        "current_period_end": format_timestamp(provider.current_period_end),
        "canceled_at": format_timestamp(provider.canceled_at),
        "cancellation_reason": provider.cancellation_reason.value if provider.cancellation_reason else None,
        "last_verified_at": format_timestamp(verified_at),
    }
    if provider.modified_at is not None:
        values["provider_modified_at"] = format_timestamp(provider.modified_at)
    return values


class SubscriptionReconciler:
    """Server half of verify-subscription.

    Reads the stored row, short-circuits when it was verified recently, otherwise
    re-reads the provider and writes back. Idempotent: with unchanged provider
    state only ``last_verified_at`` moves.
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        polar: PolarClient,
        broker: SubscriptionEventBroker,
        *,
        cache_window: timedelta = timedelta(minutes=5),
        free_trial_days: int = FREE_TRIAL_DAYS,
    ) -> None:
        self._repo = repository
        self._polar = polar
        self._broker = broker
        self._cache_window = cache_window
        self._free_trial_days = free_trial_days

    async def verify(
        self,
        user_id: str,
        *,
        force_refresh: bool = False,
        now: Optional[datetime] = None,
    ) -> VerificationResult:
        now = now or utcnow()
        try:
            rows = await self._repo.get_entitlement_rows(user_id)
        except SupabaseAdminError:
            verification_requests.labels(outcome="failed").inc()
            raise

        row = rows["subscription"]
        try:
            trial_started_at = parse_timestamp(rows["trial_started_at"])
        except ValueError:
            logger.warning("Unparsable trial_started_at for user_id=%s", user_id)
            trial_started_at = None

        record: Optional[SubscriptionRecord] = None
        if row:
            try:
                record = SubscriptionRecord.from_row(row)
            except InconsistentRecordError as exc:
                # the provider is still consulted below; it overwrites the bad row
                logger.warning("Stored subscription unreadable user_id=%s: %s", user_id, exc.message)

        previous_status = str(row.get("status")) if row else None
        polar_subscription_id = row.get("polar_subscription_id") if row else None

        if (
            not force_refresh
            and record is not None
            and record.last_verified_at is not None
            and now - record.last_verified_at < self._cache_window
        ):
            verification_requests.labels(outcome="cached").inc()
            return self._result(
                record,
                trial_started_at,
                now,
                status=record.status.value,
                previous_status=previous_status,
                status_changed=False,
                message="Subscription verified recently",
                from_cache=True,
            )

        if not polar_subscription_id:
            verification_requests.labels(outcome="no_subscription").inc()
            return self._result(
                record,
                trial_started_at,
                now,
                status=record.status.value if record is not None else NO_SUBSCRIPTION_STATUS,
                previous_status=previous_status,
                status_changed=False,
                message="No payment provider subscription to verify",
            )

        try:
            provider = await self._polar.get_subscription(str(polar_subscription_id))
        except PolarApiError:
            verification_requests.labels(outcome="failed").inc()
            logger.warning("Provider lookup failed user_id=%s subscription=%s", user_id, polar_subscription_id)
            raise

        status_changed = previous_status != provider.status.value
        values = provider_row_values(provider, verified_at=now)
        try:
            await self._repo.update_subscription(user_id, values)
        except SupabaseAdminError:
            verification_requests.labels(outcome="failed").inc()
            raise

        updated = SubscriptionRecord.from_row({**(row or {}), **values, "user_id": user_id})
        period_changed = record is None or record.current_period_end != updated.current_period_end
        if status_changed or period_changed:
            await self._broker.publish(SubscriptionChangeEvent(user_id=user_id, event_type="UPDATE", source="verifier"))

        if status_changed:
            logger.info(
                "Subscription status reconciled user_id=%s %s -> %s",
                user_id,
                previous_status,
                updated.status.value,
            )
            verification_requests.labels(outcome="changed").inc()
            message = f"Subscription status updated from {previous_status} to {updated.status.value}"
        else:
            verification_requests.labels(outcome="unchanged").inc()
            message = "Subscription status confirmed"

        return self._result(
            updated,
            trial_started_at,
            now,
            status=updated.status.value,
            previous_status=previous_status,
            status_changed=status_changed,
            message=message,
        )

    def _result(
        self,
        record: Optional[SubscriptionRecord],
        trial_started_at: Optional[datetime],
        now: datetime,
        *,
        status: str,
        previous_status: Optional[str],
        status_changed: bool,
        message: str,
        from_cache: bool = False,
    ) -> VerificationResult:
        decision = resolve(record, trial_started_at, now, free_trial_days=self._free_trial_days)
        return VerificationResult(
            verified=True,
            status=status,
            status_changed=status_changed,
            can_record=decision.can_record,
            can_access_features=decision.can_access_features,
            current_period_end=record.current_period_end if record is not None else None,
            message=message,
            previous_status=previous_status,
            from_cache=from_cache,
        )

