"""Gating decision engine: the single call feature code makes before a gated action."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from entitlements.client.api_client import EntitlementApiClient
from entitlements.client.context import EntitlementContext, EntitlementSession
from entitlements.client.verifier import NO_USER_STATUS, SubscriptionVerifier
from entitlements.errors import NotAuthenticatedError, VerificationUnavailableError
from entitlements.services.access_types import CachedEntitlement, GateResult, VerificationResult, utcnow
from entitlements.services.freshness import FRESHNESS_THRESHOLD, is_cache_fresh

logger = logging.getLogger(__name__)

NOT_AUTHENTICATED = "not_authenticated"
VERIFICATION_UNAVAILABLE = "verification_unavailable"


class EntitlementGate:
    def __init__(
        self,
        api: EntitlementApiClient,
        verifier: SubscriptionVerifier,
        *,
        freshness_threshold: timedelta = FRESHNESS_THRESHOLD,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._api = api
        self._verifier = verifier
        self._threshold = freshness_threshold
        self._clock = clock

    def fast_path(self, ctx: EntitlementContext) -> Optional[GateResult]:
        """Cached grant usable without any I/O, or None.

        Requires a connected change channel: while disconnected no cached
        grant is trusted.
        """
        cache = ctx.cache
        if not ctx.channel_connected or cache is None:
            return None
        if not is_cache_fresh(cache, self._clock(), threshold=self._threshold):
            return None
        if not cache.decision.can_record:
            return None
        return GateResult(allowed=True, reason=cache.decision.reason.value, decision=cache.decision)

    async def can_perform_gated_action(self, ctx: EntitlementContext) -> GateResult:
        if ctx.session is None:
            return GateResult(allowed=False, reason=NOT_AUTHENTICATED)

        fast = self.fast_path(ctx)
        if fast is not None:
            return fast

        async with ctx.lock:
            session = ctx.session
            if session is None:
                return GateResult(allowed=False, reason=NOT_AUTHENTICATED)
            # 另一个调用可能刚刷新完
            fast = self.fast_path(ctx)
            if fast is not None:
                return fast
            return await self.refresh(ctx, session)

    async def refresh(
        self,
        ctx: EntitlementContext,
        session: EntitlementSession,
        *,
        force_refresh: bool = True,
        background: bool = False,
    ) -> GateResult:
        """Verify, re-read the authoritative decision and replace the cache.

        Caller holds ``ctx.lock``. On any failure the cache is left untouched and
        the previous decision is returned as-is.
        """
        generation = ctx.generation
        previous = ctx.cache

        result = await self._verifier.verify(
            session,
            force_refresh=force_refresh,
            previous=previous,
            background=background,
        )
        if result.status == NO_USER_STATUS:
            return GateResult(allowed=False, reason=NOT_AUTHENTICATED, verification=result)
        if not result.verified:
            return self._unavailable(previous, result)

        try:
            decision, subscription = await self._api.can_user_record(session)
        except NotAuthenticatedError:
            return GateResult(allowed=False, reason=NOT_AUTHENTICATED)
        except VerificationUnavailableError as exc:
            log = logger.debug if background else logger.warning
            log("Authoritative entitlement read failed user_id=%s: %s", session.user_id, exc.message)
            return self._unavailable(previous, result)

        if ctx.session != session:
            # 用户已切换，结果不写入新用户的缓存
            logger.debug("Discarding entitlement refresh for signed-out user_id=%s", session.user_id)
            return GateResult(allowed=False, reason=NOT_AUTHENTICATED)

        ctx.replace_cache(
            CachedEntitlement(decision=decision, subscription=subscription, fetched_at=self._clock()),
            generation=generation,
        )
        return GateResult(
            allowed=decision.can_record,
            reason=decision.reason.value,
            decision=decision,
            verification=result,
        )

    @staticmethod
    def _unavailable(
        previous: Optional[CachedEntitlement],
        verification: Optional[VerificationResult] = None,
    ) -> GateResult:
        if previous is None:
            return GateResult(
                allowed=False,
                reason=VERIFICATION_UNAVAILABLE,
                verification_unavailable=True,
                verification=verification,
            )
        decision = previous.decision
        return GateResult(
            allowed=decision.can_record,
            reason=decision.reason.value,
            decision=decision,
            verification_unavailable=True,
            verification=verification,
        )
