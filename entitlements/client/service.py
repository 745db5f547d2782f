"""Client-side entitlement facade: sessions, cache lifecycle, gating and sync."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import httpx

from entitlements.client.api_client import EntitlementApiClient
from entitlements.client.change_listener import ChangeCallback, SubscriptionChangeListener
from entitlements.client.context import EntitlementContext, EntitlementSession
from entitlements.client.gate import EntitlementGate
from entitlements.client.verifier import SubscriptionVerifier, no_user_result
from entitlements.errors import NotAuthenticatedError
from entitlements.services.access_resolver import resolve as resolve_access
from entitlements.services.access_types import (
    AccessDecision,
    CachedEntitlement,
    GateResult,
    SubscriptionRecord,
    VerificationResult,
    utcnow,
)
from entitlements.settings.config import Settings, get_settings

logger = logging.getLogger(__name__)


class EntitlementService:
    """每个客户端进程一个实例；每个登录用户一个 EntitlementContext（由调用方持有）。"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        api: Optional[EntitlementApiClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._api = api or EntitlementApiClient(
            self._settings.entitlement_api_base_url,
            timeout=self._settings.verify_timeout_seconds,
            transport=transport,
        )
        self._verifier = SubscriptionVerifier(
            self._api,
            timeout_seconds=self._settings.verify_timeout_seconds,
            background_timeout_seconds=self._settings.background_verify_timeout_seconds,
        )
        self._gate = EntitlementGate(
            self._api,
            self._verifier,
            freshness_threshold=timedelta(seconds=self._settings.freshness_threshold_seconds),
        )
        self._listeners: dict[int, SubscriptionChangeListener] = {}
        self._background: dict[int, asyncio.Task[Any]] = {}

    @property
    def gate(self) -> EntitlementGate:
        return self._gate

    def _listener_for(self, ctx: EntitlementContext) -> SubscriptionChangeListener:
        listener = self._listeners.get(id(ctx))
        if listener is None:
            listener = SubscriptionChangeListener(
                self._api,
                ctx,
                initial_backoff_seconds=self._settings.channel_reconnect_initial_seconds,
                max_backoff_seconds=self._settings.channel_reconnect_max_seconds,
            )
            self._listeners[id(ctx)] = listener
        return listener

    async def _cancel_background(self, ctx: EntitlementContext) -> None:
        task = self._background.pop(id(ctx), None)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _warm_cache(
        self,
        ctx: EntitlementContext,
        session: EntitlementSession,
        listener: SubscriptionChangeListener,
    ) -> None:
        # ready 会使之前的缓存失效；先等通道连上，超时则照常预热
        await listener.wait_connected(timeout=self._settings.background_verify_timeout_seconds)
        async with ctx.lock:
            if ctx.session != session:
                return
            await self._gate.refresh(ctx, session, force_refresh=False, background=True)

    async def open_session(
        self,
        user_id: str,
        access_token: str,
        *,
        ctx: Optional[EntitlementContext] = None,
        warm: bool = True,
    ) -> EntitlementContext:
        """Bind a signed-in user to a context, open its change channel and warm the cache."""
        ctx = ctx or EntitlementContext()
        if ctx.session is not None:
            await self.sign_out(ctx)
        session = EntitlementSession(user_id=user_id, access_token=access_token)
        ctx.session = session
        listener = self._listener_for(ctx)
        await listener.start(session)
        if warm:
            self._background[id(ctx)] = asyncio.create_task(self._warm_cache(ctx, session, listener))
        logger.info("Entitlement session opened user_id=%s", user_id)
        return ctx

    async def switch_user(self, ctx: EntitlementContext, user_id: str, access_token: str) -> EntitlementContext:
        """Close the old user's channel and cache before binding the new one."""
        return await self.open_session(user_id, access_token, ctx=ctx)

    async def sign_out(self, ctx: EntitlementContext) -> None:
        await self._cancel_background(ctx)
        listener = self._listeners.pop(id(ctx), None)
        if listener is not None:
            await listener.stop()
        user_id = ctx.user_id
        ctx.clear()
        if user_id is not None:
            logger.info("Entitlement session closed user_id=%s", user_id)

    @staticmethod
    def resolve(
        subscription: Optional[SubscriptionRecord],
        trial_started_at: Optional[datetime],
        now: Optional[datetime] = None,
        *,
        free_trial_days: Optional[int] = None,
    ) -> AccessDecision:
        settings = get_settings()
        return resolve_access(
            subscription,
            trial_started_at,
            now or utcnow(),
            free_trial_days=free_trial_days if free_trial_days is not None else settings.free_trial_days,
        )

    def cached_decision(self, ctx: EntitlementContext) -> Optional[AccessDecision]:
        return ctx.cache.decision if ctx.cache is not None else None

    async def can_user_record(self, ctx: EntitlementContext) -> AccessDecision:
        """Authoritative read; replaces the cache on success."""
        session = ctx.session
        if session is None:
            raise NotAuthenticatedError()
        async with ctx.lock:
            generation = ctx.generation
            decision, subscription = await self._api.can_user_record(session)
            if ctx.session == session:
                ctx.replace_cache(
                    CachedEntitlement(decision=decision, subscription=subscription, fetched_at=utcnow()),
                    generation=generation,
                )
        return decision

    async def verify(
        self,
        ctx: EntitlementContext,
        *,
        force_refresh: bool = False,
        background: bool = False,
    ) -> VerificationResult:
        """Bare verification round trip; a reported status change invalidates the cache."""
        if ctx.session is None:
            return no_user_result("No authenticated user")
        result = await self._verifier.verify(
            ctx.session,
            force_refresh=force_refresh,
            previous=ctx.cache,
            background=background,
        )
        if result.verified and result.status_changed:
            ctx.invalidate()
        return result

    async def sync(self, ctx: EntitlementContext) -> GateResult:
        """Forced reconciliation for "manage subscription" / "sync" actions."""
        session = ctx.session
        if session is None:
            return GateResult(allowed=False, reason="not_authenticated", verification=no_user_result("No authenticated user"))
        async with ctx.lock:
            return await self._gate.refresh(ctx, session, force_refresh=True)

    async def can_perform_gated_action(self, ctx: EntitlementContext) -> GateResult:
        return await self._gate.can_perform_gated_action(ctx)

    def subscribe_to_changes(self, ctx: EntitlementContext, callback: ChangeCallback) -> Callable[[], None]:
        """Extra hook on change events (after invalidation); returns an unsubscribe function."""
        return self._listener_for(ctx).add_callback(callback)

    async def aclose(self) -> None:
        for task in list(self._background.values()):
            task.cancel()
        await asyncio.gather(*self._background.values(), return_exceptions=True)
        self._background.clear()
        for listener in list(self._listeners.values()):
            await listener.stop()
        self._listeners.clear()
        await self._api.aclose()
