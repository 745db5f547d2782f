"""Prometheus 指标定义。"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

verification_requests = Counter(
    "entitlement_verifications_total",
    "Subscription verification round trips by outcome",
    ["outcome"],  # cached | unchanged | changed | no_subscription | failed
)

webhook_events = Counter(
    "entitlement_webhook_events_total",
    "Payment provider webhook deliveries",
    ["event_type", "outcome"],  # outcome: applied | ignored | stale | rejected | failed
)

change_subscribers = Gauge(
    "entitlement_change_subscribers",
    "Open subscription change streams",
)


__all__ = ["change_subscribers", "verification_requests", "webhook_events"]
