from __future__ import annotations

from datetime import timedelta

from entitlements.services.access_resolver import ceil_days, resolve, resolve_row
from entitlements.services.access_types import AccessReason, SubscriptionRecord, SubscriptionStatus
from tests.conftest import NOW, subscription_row


def _record(status: SubscriptionStatus, **kwargs) -> SubscriptionRecord:
    kwargs.setdefault("current_period_start", NOW - timedelta(days=10))
    kwargs.setdefault("current_period_end", NOW + timedelta(days=20))
    return SubscriptionRecord(user_id="user-1", status=status, **kwargs)


def test_active_subscription_grants_access():
    decision = resolve(_record(SubscriptionStatus.ACTIVE), None, NOW)

    assert decision.reason is AccessReason.ACTIVE_SUBSCRIPTION
    assert decision.can_record is True
    assert decision.can_access_features is True
    assert decision.access_ends_at == NOW + timedelta(days=20)
    assert decision.days_until_access_ends == 20


def test_canceled_inside_grace_window_keeps_access():
    subscription = _record(
        SubscriptionStatus.CANCELED,
        current_period_end=NOW + timedelta(days=3, hours=2),
        canceled_at=NOW - timedelta(days=1),
    )

    decision = resolve(subscription, None, NOW)

    assert decision.reason is AccessReason.CANCELED_BUT_ACTIVE
    assert decision.can_record is True
    assert decision.days_until_access_ends == 4
    assert decision.is_canceling is True


def test_canceled_after_period_end_without_trial_is_expired():
    subscription = _record(SubscriptionStatus.CANCELED, current_period_end=NOW - timedelta(seconds=1))

    decision = resolve(subscription, None, NOW)

    assert decision.reason is AccessReason.TRIAL_EXPIRED
    assert decision.can_record is False
    assert decision.can_access_features is False


def test_canceled_period_end_exactly_now_is_not_a_grace_window():
    subscription = _record(SubscriptionStatus.CANCELED, current_period_end=NOW)

    assert resolve(subscription, None, NOW).reason is AccessReason.TRIAL_EXPIRED


def test_trialing_subscription_beats_running_trial():
    decision = resolve(_record(SubscriptionStatus.TRIALING), NOW - timedelta(days=1), NOW)

    assert decision.reason is AccessReason.ACTIVE_SUBSCRIPTION
    assert decision.has_active_trial is True


def test_no_subscription_trial_started_eight_days_ago_is_expired():
    decision = resolve(None, NOW - timedelta(days=8), NOW)

    assert decision.reason is AccessReason.TRIAL_EXPIRED
    assert decision.can_record is False
    assert decision.trial_days_remaining == 0


def test_trial_days_are_ceiled():
    decision = resolve(None, NOW - timedelta(days=2, hours=12), NOW)

    assert decision.reason is AccessReason.ACTIVE_TRIAL
    assert decision.trial_days_remaining == 5
    assert decision.trial_expires_at == NOW + timedelta(days=4, hours=12)


def test_trial_days_remaining_is_monotone_and_reaches_zero_at_expiry():
    started = NOW
    expires = started + timedelta(days=7)
    previous = None
    instant = started
    while instant <= expires + timedelta(hours=6):
        remaining = resolve(None, started, instant).trial_days_remaining
        assert remaining >= 0
        if previous is not None:
            assert remaining <= previous
        previous = remaining
        instant += timedelta(hours=6)

    at_expiry = resolve(None, started, expires)
    assert at_expiry.trial_days_remaining == 0
    assert at_expiry.reason is AccessReason.TRIAL_EXPIRED


def test_billing_issue_statuses_fall_back_to_trial_rules():
    for status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.INCOMPLETE, SubscriptionStatus.BILLING_ISSUE):
        expired = resolve(_record(status), None, NOW)
        assert expired.reason is AccessReason.TRIAL_EXPIRED
        assert expired.subscription_status is status

        in_trial = resolve(_record(status), NOW - timedelta(days=1), NOW)
        assert in_trial.reason is AccessReason.ACTIVE_TRIAL


def test_can_record_always_equals_can_access_features():
    cases = [
        (_record(SubscriptionStatus.ACTIVE), None),
        (_record(SubscriptionStatus.EXPIRED), NOW - timedelta(days=3)),
        (_record(SubscriptionStatus.CANCELED, current_period_end=NOW + timedelta(days=1)), None),
        (None, None),
        (None, NOW - timedelta(days=30)),
    ]
    for subscription, trial_started_at in cases:
        decision = resolve(subscription, trial_started_at, NOW)
        assert decision.can_record == decision.can_access_features
        assert decision.can_record == (decision.reason is not AccessReason.TRIAL_EXPIRED)


def test_period_end_before_start_resolves_as_expired():
    subscription = _record(
        SubscriptionStatus.ACTIVE,
        current_period_start=NOW,
        current_period_end=NOW - timedelta(days=1),
    )

    decision = resolve(subscription, NOW - timedelta(days=1), NOW)

    assert decision.reason is AccessReason.TRIAL_EXPIRED
    assert decision.can_record is False


def test_resolve_row_with_unknown_status_denies_instead_of_raising():
    decision, subscription = resolve_row(subscription_row(status="paused"), None, NOW)

    assert subscription is None
    assert decision.reason is AccessReason.TRIAL_EXPIRED


def test_resolve_row_with_garbage_trial_timestamp_denies():
    decision, _ = resolve_row(None, "not-a-date", NOW)

    assert decision.can_record is False


def test_resolve_row_parses_stored_rows():
    decision, subscription = resolve_row(
        subscription_row(status="canceled", period_end=NOW + timedelta(hours=1)),
        (NOW - timedelta(days=30)).isoformat(),
        NOW,
    )

    assert subscription is not None
    assert subscription.status is SubscriptionStatus.CANCELED
    assert decision.reason is AccessReason.CANCELED_BUT_ACTIVE
    assert decision.days_until_access_ends == 1


def test_resolve_is_deterministic():
    subscription = _record(SubscriptionStatus.CANCELED, current_period_end=NOW + timedelta(days=2))
    assert resolve(subscription, None, NOW) == resolve(subscription, None, NOW)


def test_ceil_days_never_negative():
    assert ceil_days(timedelta(seconds=-5)) == 0
    assert ceil_days(timedelta(0)) == 0
    assert ceil_days(timedelta(seconds=1)) == 1
    assert ceil_days(timedelta(days=1)) == 1
    assert ceil_days(timedelta(days=1, seconds=1)) == 2
