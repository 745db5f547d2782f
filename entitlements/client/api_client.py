"""HTTP client for the entitlement service endpoints."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx

from entitlements.client.context import EntitlementSession
from entitlements.errors import InconsistentRecordError, NotAuthenticatedError, VerificationUnavailableError
from entitlements.services.access_types import AccessDecision, SubscriptionRecord, VerificationResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServerEvent:
    event: str
    data: dict[str, Any]


class EntitlementApiClient:
    """Thin async wrapper; every failure surfaces as a typed entitlement error."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "EntitlementApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _request_json(
        self,
        method: str,
        path: str,
        session: EntitlementSession,
        *,
        json_body: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"headers": session.auth_headers()}
        if json_body is not None:
            kwargs["json"] = json_body
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise VerificationUnavailableError(f"{path} timed out", cause=exc) from exc
        except httpx.HTTPError as exc:
            raise VerificationUnavailableError(f"{path} request failed: {type(exc).__name__}", cause=exc) from exc

        if response.status_code == 401:
            raise NotAuthenticatedError("Session rejected by entitlement service")
        if response.status_code >= 400:
            raise VerificationUnavailableError(
                f"{path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise VerificationUnavailableError(f"{path} returned a non-JSON body", cause=exc) from exc
        if not isinstance(data, dict):
            raise VerificationUnavailableError(f"{path} returned a non-object body")
        return data

    async def verify_subscription(
        self,
        session: EntitlementSession,
        *,
        force_refresh: bool = False,
        timeout: Optional[float] = None,
    ) -> VerificationResult:
        data = await self._request_json(
            "POST",
            "/api/v1/verify-subscription",
            session,
            json_body={"forceRefresh": force_refresh},
            timeout=timeout,
        )
        try:
            return VerificationResult.from_dict(data)
        except (TypeError, ValueError) as exc:
            raise VerificationUnavailableError("verify-subscription returned a malformed body", cause=exc) from exc

    async def _snapshot(
        self,
        path: str,
        session: EntitlementSession,
        timeout: Optional[float],
    ) -> tuple[AccessDecision, Optional[SubscriptionRecord]]:
        data = await self._request_json("GET", path, session, timeout=timeout)
        try:
            decision = AccessDecision.from_dict(data["decision"])
            row = data.get("subscription")
            subscription = SubscriptionRecord.from_row(row) if isinstance(row, dict) else None
        except (KeyError, TypeError, ValueError, InconsistentRecordError) as exc:
            raise VerificationUnavailableError(f"{path} returned a malformed body", cause=exc) from exc
        return decision, subscription

    async def can_user_record(
        self,
        session: EntitlementSession,
        *,
        timeout: Optional[float] = None,
    ) -> tuple[AccessDecision, Optional[SubscriptionRecord]]:
        return await self._snapshot("/api/v1/entitlements/can-record", session, timeout)

    async def can_access_features(
        self,
        session: EntitlementSession,
        *,
        timeout: Optional[float] = None,
    ) -> tuple[AccessDecision, Optional[SubscriptionRecord]]:
        return await self._snapshot("/api/v1/entitlements/can-access-features", session, timeout)

    async def iter_change_events(self, session: EntitlementSession) -> AsyncIterator[ServerEvent]:
        """Yield server-sent events until the stream ends; read timeout is disabled."""
        headers = {**session.auth_headers(), "Accept": "text/event-stream"}
        timeout = httpx.Timeout(self._client.timeout.connect, read=None)
        async with self._client.stream("GET", "/api/v1/subscriptions/events", headers=headers, timeout=timeout) as response:
            if response.status_code == 401:
                raise NotAuthenticatedError("Session rejected by change channel")
            response.raise_for_status()

            event_name = "message"
            data_lines: list[str] = []
            async for line in response.aiter_lines():
                if line == "":
                    if data_lines:
                        yield ServerEvent(event=event_name, data=_decode_data("\n".join(data_lines)))
                    event_name, data_lines = "message", []
                    continue
                if line.startswith(":"):
                    continue
                field_name, _, value = line.partition(":")
                value = value[1:] if value.startswith(" ") else value
                if field_name == "event":
                    event_name = value
                elif field_name == "data":
                    data_lines.append(value)


def _decode_data(raw: str) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except ValueError:
        logger.debug("Non-JSON SSE data ignored: %r", raw[:80])
        return {}
    return data if isinstance(data, dict) else {}
