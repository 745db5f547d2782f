"""Freshness policy for cached access decisions."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from entitlements.services.access_types import CachedEntitlement

FRESHNESS_THRESHOLD = timedelta(minutes=5)


def is_fresh(
    cached_at: Optional[datetime],
    now: datetime,
    *,
    last_verified_at: Optional[datetime] = None,
    threshold: timedelta = FRESHNESS_THRESHOLD,
) -> bool:
    """True iff the decision is younger than ``threshold``.

    A server-side ``last_verified_at`` newer than the local fetch time takes
    over as the reference point. No cached decision is always stale.
    """
    if cached_at is None:
        return False
    reference = cached_at
    if last_verified_at is not None and last_verified_at > cached_at:
        reference = last_verified_at
    return now - reference < threshold


def is_cache_fresh(
    cache: Optional[CachedEntitlement],
    now: datetime,
    *,
    threshold: timedelta = FRESHNESS_THRESHOLD,
) -> bool:
    if cache is None or cache.stale:
        return False
    last_verified_at = cache.subscription.last_verified_at if cache.subscription is not None else None
    return is_fresh(cache.fetched_at, now, last_verified_at=last_verified_at, threshold=threshold)
