"""Entitlement record store backed by Supabase (service role reads/writes)."""

from __future__ import annotations

import asyncio
from typing import Any, Optional, TypedDict

from entitlements.services.supabase_admin import SupabaseAdminClient


class EntitlementRows(TypedDict):
    subscription: Optional[dict[str, Any]]
    trial_started_at: Optional[str]


class SubscriptionRepository:
    """Reads the rows entitlement logic depends on; writes only verifier/webhook changes."""

    def __init__(
        self,
        supabase: SupabaseAdminClient,
        *,
        subscriptions_table: str = "subscriptions",
        profiles_table: str = "profiles",
    ) -> None:
        self._supabase = supabase
        self._subscriptions_table = subscriptions_table
        self._profiles_table = profiles_table

    async def get_subscription(self, user_id: str) -> Optional[dict[str, Any]]:
        return await self._supabase.fetch_one_by_user_id(table=self._subscriptions_table, user_id=user_id)

    async def get_subscription_by_polar_id(self, polar_subscription_id: str) -> Optional[dict[str, Any]]:
        return await self._supabase.fetch_one(
            table=self._subscriptions_table,
            column="polar_subscription_id",
            value=polar_subscription_id,
        )

    async def get_trial_started_at(self, user_id: str) -> Optional[str]:
        profile = await self._supabase.fetch_one(
            table=self._profiles_table,
            column="id",
            value=user_id,
            select="id,trial_started_at",
        )
        if not isinstance(profile, dict):
            return None
        return profile.get("trial_started_at")

    async def get_entitlement_rows(self, user_id: str) -> EntitlementRows:
        """Return the subscription row and trial start together (no caching, always store truth)."""
        subscription, trial_started_at = await asyncio.gather(
            self.get_subscription(user_id),
            self.get_trial_started_at(user_id),
        )
        return {"subscription": subscription, "trial_started_at": trial_started_at}

    async def update_subscription(self, user_id: str, values: dict[str, Any]) -> Optional[dict[str, Any]]:
        return await self._supabase.update_one_by_user_id(
            table=self._subscriptions_table,
            user_id=user_id,
            values=values,
        )

    async def upsert_subscription(self, values: dict[str, Any]) -> Optional[dict[str, Any]]:
        return await self._supabase.upsert_one(table=self._subscriptions_table, values=values, on_conflict="user_id")
