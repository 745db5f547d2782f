"""Client half of the verification protocol."""

from __future__ import annotations

import logging
from typing import Optional

from entitlements.client.api_client import EntitlementApiClient
from entitlements.client.context import EntitlementSession
from entitlements.errors import EntitlementError, NotAuthenticatedError
from entitlements.services.access_types import CachedEntitlement, VerificationResult

logger = logging.getLogger(__name__)

NO_USER_STATUS = "no_user"


def fallback_result(previous: Optional[CachedEntitlement], message: str) -> VerificationResult:
    """verified=False carrying whatever we believed before the failed call."""
    if previous is None:
        return VerificationResult(
            verified=False,
            status="unknown",
            status_changed=False,
            can_record=False,
            can_access_features=False,
            current_period_end=None,
            message=message,
        )
    subscription = previous.subscription
    status = subscription.status.value if subscription is not None else "none"
    return VerificationResult(
        verified=False,
        status=status,
        status_changed=False,
        can_record=previous.decision.can_record,
        can_access_features=previous.decision.can_access_features,
        current_period_end=previous.decision.current_period_end,
        message=message,
        previous_status=status,
    )


def no_user_result(message: str) -> VerificationResult:
    return VerificationResult(
        verified=False,
        status=NO_USER_STATUS,
        status_changed=False,
        can_record=False,
        can_access_features=False,
        current_period_end=None,
        message=message,
    )


class SubscriptionVerifier:
    """Never raises for transport/provider trouble and never touches the cache."""

    def __init__(
        self,
        api: EntitlementApiClient,
        *,
        timeout_seconds: float = 10.0,
        background_timeout_seconds: float = 5.0,
    ) -> None:
        self._api = api
        self._timeout = timeout_seconds
        self._background_timeout = background_timeout_seconds

    async def verify(
        self,
        session: Optional[EntitlementSession],
        *,
        force_refresh: bool = False,
        previous: Optional[CachedEntitlement] = None,
        background: bool = False,
    ) -> VerificationResult:
        if session is None:
            return no_user_result("No authenticated user")

        timeout = self._background_timeout if background else self._timeout
        try:
            result = await self._api.verify_subscription(session, force_refresh=force_refresh, timeout=timeout)
        except NotAuthenticatedError as exc:
            logger.warning("Verification rejected session user_id=%s", session.user_id)
            return no_user_result(exc.message)
        except EntitlementError as exc:
            log = logger.debug if background else logger.warning
            log("Subscription verification failed user_id=%s: %s", session.user_id, exc.message)
            return fallback_result(previous, exc.message)

        if result.status_changed:
            logger.info(
                "Subscription status changed user_id=%s %s -> %s",
                session.user_id,
                result.previous_status,
                result.status,
            )
        return result
