"""Authoritative entitlement queries (can_user_record / can_access_features)."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from entitlements.repositories.subscription_repo import SubscriptionRepository
from entitlements.services.access_resolver import FREE_TRIAL_DAYS, resolve_row
from entitlements.services.access_types import AccessDecision, SubscriptionRecord, utcnow


class AccessService:
    """Always reads the store; no server-side decision cache."""

    def __init__(self, repository: SubscriptionRepository, *, free_trial_days: int = FREE_TRIAL_DAYS) -> None:
        self._repo = repository
        self._free_trial_days = free_trial_days

    async def can_user_record(
        self,
        user_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> tuple[AccessDecision, Optional[SubscriptionRecord]]:
        rows = await self._repo.get_entitlement_rows(user_id)
        return resolve_row(
            rows["subscription"],
            rows["trial_started_at"],
            now or utcnow(),
            free_trial_days=self._free_trial_days,
        )

    async def can_access_features(
        self,
        user_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> tuple[AccessDecision, Optional[SubscriptionRecord]]:
        # same rule as recording today
        return await self.can_user_record(user_id, now=now)
